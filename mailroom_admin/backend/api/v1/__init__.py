"""API v1 routers."""
from mailroom_admin.backend.api.v1 import ip_whitelist

__all__ = ["ip_whitelist"]
