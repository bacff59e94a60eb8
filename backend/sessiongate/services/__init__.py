# SessionGate Services
from sessiongate.services.identity import (
    IdentityAuthority,
    IdentityAuthorityUnavailable,
    IdentityClaims,
    IdentityError,
    IdentityTokenRejected,
    JWKSIdentityAuthority,
    get_identity_authority,
)
from sessiongate.services.route_gate import (
    GateAction,
    GateDecision,
    HttpSessionVerifier,
    LocalSessionVerifier,
    RouteGate,
)
from sessiongate.services.session_store import (
    CredentialInvalid,
    IdentityUnavailable,
    IssuedSession,
    RevokeFailure,
    SessionError,
    SessionInvalid,
    SessionStore,
    SubjectClaims,
    cleanup_expired_sessions,
)

__all__ = [
    "IdentityAuthority",
    "IdentityAuthorityUnavailable",
    "IdentityClaims",
    "IdentityError",
    "IdentityTokenRejected",
    "JWKSIdentityAuthority",
    "get_identity_authority",
    "GateAction",
    "GateDecision",
    "HttpSessionVerifier",
    "LocalSessionVerifier",
    "RouteGate",
    "CredentialInvalid",
    "IdentityUnavailable",
    "IssuedSession",
    "RevokeFailure",
    "SessionError",
    "SessionInvalid",
    "SessionStore",
    "SubjectClaims",
    "cleanup_expired_sessions",
]
