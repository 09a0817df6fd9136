import logging
from typing import Optional

from order_engine.database import session_scope
from order_engine.models import AuditLog

logger = logging.getLogger(__name__)


class AuditSink:
    def record(self, action, entity: str, entity_id: str, actor_id: Optional[str] = None,
               old_value: Optional[dict] = None, new_value: Optional[dict] = None,
               metadata: Optional[dict] = None) -> None:
        raise NotImplementedError


class DatabaseAuditSink(AuditSink):
    """Appends audit rows in a session of their own, after the audited commit."""

    def __init__(self, session_factory=session_scope):
        self._session_factory = session_factory

    def record(self, action, entity, entity_id, actor_id=None, old_value=None, new_value=None, metadata=None):
        with self._session_factory() as session:
            session.add(AuditLog(
                actor_id=actor_id,
                action=getattr(action, "value", action),
                entity=entity,
                entity_id=entity_id,
                old_values=old_value,
                new_values=new_value,
                details=metadata,
            ))
