"""Key builders for the single-table entity layout.

Primary key (PK, SK) groups items under their owner, GSI1 gives direct
lookup by an entity's own id and GSI2 indexes items by status, newest first.
"""

PK = "PK"
SK = "SK"
GSI1PK = "GSI1PK"
GSI1SK = "GSI1SK"
GSI2PK = "GSI2PK"
GSI2SK = "GSI2SK"

GSI1 = "GSI1"
GSI2 = "GSI2"

PROFILE_SK = "PROFILE"
METADATA_SK = "METADATA"
REQUEST_STATUS_SK = "STATUS"

PREFERENCES_PREFIX = "PREFERENCES#"
STORY_PREFIX = "STORY#"
EPISODE_PREFIX = "EPISODE#"
REQUEST_PREFIX = "REQUEST#"
WORKFLOW_PREFIX = "WORKFLOW#"
CONTINUATION_PREFIX = "CONTINUATION#"

# Episode numbers are zero-padded so lexicographic SK order matches numeric order
EPISODE_NUMBER_WIDTH = 3


def user_pk(user_id: str) -> str:
    return f"USER#{user_id}"


def preferences_sk(timestamp: str) -> str:
    return f"{PREFERENCES_PREFIX}{timestamp}"


def story_key(story_id: str) -> str:
    return f"{STORY_PREFIX}{story_id}"


def episode_sk(episode_number: int) -> str:
    return f"{EPISODE_PREFIX}{episode_number:0{EPISODE_NUMBER_WIDTH}d}"


def episode_key(episode_id: str) -> str:
    return f"{EPISODE_PREFIX}{episode_id}"


def request_key(request_id: str) -> str:
    return f"{REQUEST_PREFIX}{request_id}"


def workflow_key(workflow_id: str) -> str:
    return f"{WORKFLOW_PREFIX}{workflow_id}"


def continuation_key(continuation_id: str) -> str:
    return f"{CONTINUATION_PREFIX}{continuation_id}"


def status_key(status: str) -> str:
    return f"STATUS#{status}"


def parse_episode_number(sk: str) -> int:
    """Inverse of episode_sk."""
    if not sk.startswith(EPISODE_PREFIX):
        raise ValueError(f"Not an episode sort key: {sk}")
    return int(sk[len(EPISODE_PREFIX):])
