# SessionGate Models
from sessiongate.models.session import SessionRecord

__all__ = [
    "SessionRecord",
]
