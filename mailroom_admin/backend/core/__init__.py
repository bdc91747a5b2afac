"""Core module for the admin backend."""
from mailroom_admin.backend.core.config import get_web_settings, WebSettings
from mailroom_admin.backend.core.security import create_access_token, decode_token

__all__ = [
    "get_web_settings",
    "WebSettings",
    "create_access_token",
    "decode_token",
]
