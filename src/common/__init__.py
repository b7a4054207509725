from common.ids import generate_id, generate_session_id
from common.jsonio import atomic_write_json, read_json

__all__ = [
    "generate_id",
    "generate_session_id",
    "atomic_write_json",
    "read_json",
]
