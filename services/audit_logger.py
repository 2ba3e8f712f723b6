"""
Comprehensive Audit Logging System
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from models import AuditLog, utcnow
from utils.authorization import Principal

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


class AuditLogger:
    """Service for comprehensive audit logging"""

    def __init__(self):
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)

        if Config.AUDIT_LOG_FILE and not self.audit_logger.handlers:
            audit_handler = logging.FileHandler(Config.AUDIT_LOG_FILE)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
            self.audit_logger.addHandler(audit_handler)

    @staticmethod
    def build_diff(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Keys whose values differ between before and after"""
        before = before or {}
        after = after or {}
        diff = {}
        for key in set(before) | set(after):
            if before.get(key) != after.get(key):
                diff[key] = {'before': before.get(key), 'after': after.get(key)}
        return diff

    def log(
        self,
        session: Optional[Session],
        action: str,
        entity_type: str,
        entity_id: Optional[Any] = None,
        actor: Optional[Principal] = None,
        target_user_id: Optional[int] = None,
        target_email: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        success: bool = True,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """
        Record an audit entry in the caller's unit of work and the audit log stream.

        Audit failures are logged and never interrupt the audited operation.
        """
        try:
            before = _jsonable(before) if before is not None else None
            after = _jsonable(after) if after is not None else None
            diff = self.build_diff(before, after)

            audit_entry = {
                'timestamp': utcnow().isoformat(),
                'action': action,
                'actor': actor.to_dict() if actor else None,
                'target': {
                    'entityType': entity_type,
                    'entityId': str(entity_id) if entity_id is not None else None,
                    'userId': target_user_id,
                    'email': target_email,
                },
                'changes': {'before': before, 'after': after, 'diff': diff},
                'outcome': {'success': success, 'message': message, 'error': error},
            }
            self.audit_logger.info(json.dumps(audit_entry))

            entry = None
            if session is not None:
                entry = AuditLog(
                    action=action,
                    actor_id=actor.account_id if actor else None,
                    actor_email=actor.email if actor else None,
                    actor_is_admin=bool(actor.is_admin) if actor else False,
                    entity_type=entity_type,
                    entity_id=str(entity_id) if entity_id is not None else None,
                    target_user_id=target_user_id,
                    before=before,
                    after=after,
                    diff=diff,
                    success=success,
                    message=message,
                    error=error,
                )
                session.add(entry)

            if actor and actor.is_admin:
                logger.info(
                    f"🛡️ ADMIN ACTION: {actor.account_id} performed '{action}' on {entity_type} {entity_id or ''}"
                )
            return entry

        except Exception as e:
            logger.error(f"Error logging audit action {action}: {e}")
            return None


# Global audit logger instance
audit_logger = AuditLogger()
