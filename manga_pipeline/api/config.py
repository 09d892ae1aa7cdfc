"""API configuration constants.

Single source of truth for paths and settings used across the service.
Values are read from the environment once at import time.
"""

import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

load_dotenv(find_dotenv())

# Base directories
API_DIR = Path(__file__).parent
PACKAGE_DIR = API_DIR.parent
PROJECT_DIR = PACKAGE_DIR.parent
DATA_DIR = PROJECT_DIR / "data"

# Content store root (stories/, episodes/, images/ live under it)
CONTENT_DIR = Path(os.getenv("CONTENT_DIR", str(DATA_DIR / "content")))

# Entity store. Empty means the in-process memory store is used.
DATABASE_URL = os.getenv("DATABASE_URL", "")

# Event bus substrate
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

# Deployment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
SERVICE_NAME = os.getenv("SERVICE_NAME", "manga-pipeline")
IS_PRODUCTION = ENVIRONMENT == "production"

# Logging
LOG_JSON = os.getenv("LOG_JSON", "true").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Cultural-insight collaborator
QLOO_API_URL = os.getenv("QLOO_API_URL", "")
QLOO_API_KEY = os.getenv("QLOO_API_KEY", "")
QLOO_TIMEOUT = float(os.getenv("QLOO_TIMEOUT", "10"))

# Estimated generation time shown to callers (minutes)
STORY_ESTIMATE_MINUTES = 3
EPISODE_ESTIMATE_MINUTES = 2

# Generation requests stuck in PROCESSING longer than this are failed by the sweeper
STALE_REQUEST_MINUTES = 15

# Batch workflow limits
MAX_STORIES_PER_WORKFLOW = 10

# Bearer token verification (HS256)
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-in-production")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 30
