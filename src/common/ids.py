import secrets
import uuid
from datetime import datetime, timezone


def generate_id() -> str:
    return str(uuid.uuid4())[:8]


def generate_session_id(now: datetime | None = None) -> str:
    # Timestamp prefix keeps ids sortable; the random suffix avoids collisions
    # between sessions created in the same microsecond.
    now = now or datetime.now(timezone.utc)
    return f"{now.strftime('%Y%m%d-%H%M%S-%f')}-{secrets.token_hex(4)}"
