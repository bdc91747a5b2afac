"""Admin activity log (audit sink).

Writes one ``admin_audit_log`` row per recorded action. Callers treat
recording as best-effort: a failure here must never fail the action itself.
"""
import json
import logging
from typing import Any, Dict, Optional

from mailroom_admin.backend.core.database import DatabaseService

logger = logging.getLogger(__name__)

ACTIVITY_TYPE_ADMIN_ACTION = "ADMIN_ACTION"

# Fields that must never end up in audit details
_SENSITIVE_FIELDS = {"password", "password_hash", "token", "secret", "api_key"}


def _clean_details(details: Optional[Dict[str, Any]]) -> Optional[str]:
    if not details:
        return None
    cleaned = {k: v for k, v in details.items() if k.lower() not in _SENSITIVE_FIELDS}
    return json.dumps(cleaned, ensure_ascii=False, default=str)


class AuditSink:
    """Records admin actions in the audit log table."""

    def __init__(self, db: DatabaseService):
        self._db = db

    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Write an entry to the audit log. Raises on database errors."""
        if not self._db.is_connected:
            logger.debug("Audit log skipped (no database): %s %s %s", action, entity_type, entity_id)
            return
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO admin_audit_log
                    (user_id, action, activity_type, entity_type, entity_id, details, ip_address)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                actor_id,
                action,
                ACTIVITY_TYPE_ADMIN_ACTION,
                entity_type,
                entity_id,
                _clean_details(details),
                ip_address,
            )
