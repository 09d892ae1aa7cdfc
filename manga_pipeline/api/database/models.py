"""SQLAlchemy table declaration for the entity store.

One table holds every entity type. The primary key and both secondary
indexes mirror the key layout in keys.py; the entity body lives in ``data``.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class Entity(Base):
    """A stored entity: Story, Episode, GenerationRequest, etc."""

    __tablename__ = "entities"

    pk: Mapped[str] = mapped_column(String(256), primary_key=True)
    sk: Mapped[str] = mapped_column(String(256), primary_key=True)
    gsi1pk: Mapped[Optional[str]] = mapped_column(String(256))
    gsi1sk: Mapped[Optional[str]] = mapped_column(String(256))
    gsi2pk: Mapped[Optional[str]] = mapped_column(String(256))
    gsi2sk: Mapped[Optional[str]] = mapped_column(String(256))
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("idx_entities_gsi1", "gsi1pk", "gsi1sk"),
        Index("idx_entities_gsi2", "gsi2pk", "gsi2sk"),
        Index("idx_entities_type", "entity_type"),
    )
