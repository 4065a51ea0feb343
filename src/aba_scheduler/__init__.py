"""
ABA Session Scheduler

Scheduling engine for applied behavior analysis therapy practices.

Features:
- Three-hour sessions validated against business hours, weekdays and caregiver load
- Caregiver and client double-booking detection under per-key locking
- Continuity-first caregiver selection from the client's team
- Cancellation with alternative and reschedule opportunity search
- Caregiver unavailability with automatic reassignment
- Disruption reports and audit trails from the schedule event log
- FastAPI REST API over in-memory or PostgreSQL storage

Example:
    Direct usage with the service layer:

    ```python
    from aba_scheduler.core import SchedulingServices
    from aba_scheduler.database import InMemoryDatabase
    from aba_scheduler.models import ScheduleSessionRequest

    services = SchedulingServices.build(InMemoryDatabase())
    result = await services.scheduler.schedule_session(
        ScheduleSessionRequest(client_id="client_1", start_time=start, created_by="admin")
    )
    ```
"""

__version__ = "1.0.0"
__author__ = "ABA Scheduler Team"

__all__ = ["__version__"]
