# caseflow/services/audit_service.py

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from caseflow.core.logger import logger
from caseflow.db.models import Event, EventType


class AuditService:
    """
    Append-only case event trail. Events are added to the caller's session
    and committed together with the state change they describe.
    """

    def record(
        self,
        db: Session,
        case_id: str,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Event:
        event = Event(case_id=case_id, type=event_type, payload=dict(payload or {}))
        db.add(event)
        logger.info("Case %s event=%s payload_keys=%s", case_id, event_type.value, sorted(event.payload))
        return event

    def list_for_case(self, db: Session, case_id: str, limit: int = 200) -> List[Event]:
        return (
            db.query(Event)
            .filter(Event.case_id == case_id)
            .order_by(Event.created_at.asc())
            .limit(limit)
            .all()
        )


audit_service = AuditService()
