from .jwt import create_access_token, verify_token, get_current_user, get_current_user_optional, CurrentUser
from .routes import router

__all__ = [
    "create_access_token",
    "verify_token",
    "get_current_user",
    "get_current_user_optional",
    "CurrentUser",
    "router",
]
