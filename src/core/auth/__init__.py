from src.core.auth.jwt import create_access_token, decode_token
from src.core.auth.permissions import Permission
from src.core.auth.dependencies import (
    CurrentPrincipal,
    Principal,
    get_principal,
    require_cron_secret,
    require_permission,
)

__all__ = [
    "create_access_token",
    "decode_token",
    "Permission",
    "CurrentPrincipal",
    "Principal",
    "get_principal",
    "require_cron_secret",
    "require_permission",
]
