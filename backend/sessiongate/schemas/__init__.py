# SessionGate Schemas
from sessiongate.schemas.auth import (
    LogoutResponse,
    SessionCreateRequest,
    SessionCreateResponse,
    VerifyResponse,
)

__all__ = [
    "LogoutResponse",
    "SessionCreateRequest",
    "SessionCreateResponse",
    "VerifyResponse",
]
