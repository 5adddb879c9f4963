from fileflow.auth.token import (
    JWTDecoder,
    TokenPayload,
    get_current_owner,
    get_current_user,
    jwks_cache,
    resolve_owner_optional,
    verify_token,
)
from fileflow.auth.dependencies import CurrentOwner, Ingestion, Notifier, OptionalOwner, Store

__all__ = [
    "TokenPayload", "JWTDecoder", "jwks_cache", "verify_token",
    "get_current_user", "get_current_owner", "resolve_owner_optional",
    "CurrentOwner", "OptionalOwner", "Store", "Notifier", "Ingestion",
]
