"""
Disruption reporting, continuity and audit trail API routes
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from ...core.services import SchedulingServices
from ...models import (
    AuditTrail,
    CancellationStats,
    ClientDisruptionProfile,
    ContinuityMetrics,
    DisruptionFrequencyReport,
    EntityType,
    RbtDisruptionProfile,
)
from ..dependencies import get_services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Reports"])


@router.get("/reports/disruptions", response_model=DisruptionFrequencyReport)
async def get_disruption_report(
    start_date: datetime,
    end_date: datetime,
    services: SchedulingServices = Depends(get_services),
) -> DisruptionFrequencyReport:
    """Practice-wide disruption frequency, impact and reasons"""
    return await services.analytics.generate_disruption_frequency_report(start_date, end_date)


@router.get("/reports/clients/{client_id}", response_model=ClientDisruptionProfile)
async def get_client_disruption_profile(
    client_id: str,
    start_date: datetime,
    end_date: datetime,
    services: SchedulingServices = Depends(get_services),
) -> ClientDisruptionProfile:
    return await services.analytics.generate_client_disruption_profile(client_id, start_date, end_date)


@router.get("/reports/rbts/{rbt_id}", response_model=RbtDisruptionProfile)
async def get_rbt_disruption_profile(
    rbt_id: str,
    start_date: datetime,
    end_date: datetime,
    services: SchedulingServices = Depends(get_services),
) -> RbtDisruptionProfile:
    return await services.analytics.generate_rbt_disruption_profile(rbt_id, start_date, end_date)


@router.get("/reports/cancellations", response_model=CancellationStats)
async def get_cancellation_stats(
    start_date: datetime,
    end_date: datetime,
    rbt_id: Optional[str] = None,
    client_id: Optional[str] = None,
    services: SchedulingServices = Depends(get_services),
) -> CancellationStats:
    """Cancellation counts by reason, caregiver and client"""
    return await services.cancellation.get_cancellation_stats(
        start_date, end_date, rbt_id=rbt_id, client_id=client_id
    )


@router.get("/clients/{client_id}/continuity", response_model=ContinuityMetrics)
async def get_client_continuity(
    client_id: str,
    services: SchedulingServices = Depends(get_services),
) -> ContinuityMetrics:
    """Continuity summary of a client across the caregivers who served them"""
    now = services.clock.now()
    history = await services.database.sessions.find_by_client_id(client_id)
    team = await services.database.teams.find_active_team_for_client(client_id, at=now)
    team_members = team.rbt_ids if team is not None else []
    return services.scorer.generate_continuity_metrics(client_id, history, team_members, reference_date=now)


@router.get("/audit/{entity_type}/{entity_id}", response_model=AuditTrail)
async def get_audit_trail(
    entity_type: EntityType,
    entity_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    services: SchedulingServices = Depends(get_services),
) -> AuditTrail:
    """Schedule changes for a session, caregiver or client, oldest first"""
    return await services.analytics.get_schedule_change_audit_trail(entity_type, entity_id, start_date, end_date)
