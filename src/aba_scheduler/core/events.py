"""
Construction of schedule audit events
"""
from datetime import datetime
from typing import Any, Dict, Optional

from ..models import ScheduleEvent, ScheduleEventType, Session
from ..utils.helpers import generate_id


def session_event(
    event_type: ScheduleEventType,
    session: Session,
    created_by: str,
    created_at: datetime,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> ScheduleEvent:
    """Event attached to a single session, tagged with its client and caregiver"""
    return ScheduleEvent(
        id=generate_id("evt"),
        event_type=event_type,
        session_id=session.id,
        client_id=session.client_id,
        rbt_id=session.rbt_id,
        old_values=old_values,
        new_values=new_values,
        reason=reason,
        metadata=metadata or {},
        created_by=created_by,
        created_at=created_at,
    )
