from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..deps import get_clock, get_notifier, get_repositories, get_session, require_cron_secret
from ..domain.gateways import Notifier
from ..infrastructure.notifications import dispatch_notifications
from ..models import ReservationState
from ..schemas import SweepRead
from ..usecases import sweeper as sweeper_usecase
from ..utils.audit_log import emit_audit_log
from ..utils.time import Clock

router = APIRouter(prefix="/internal/sweeps", tags=["sweeps"], dependencies=[Depends(require_cron_secret)])


@router.post("/expired-reservations", response_model=SweepRead)
async def sweep_expired_reservations(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> SweepRead:
    """Called by the scheduler every `SWEEP_INTERVAL_MINUTES`."""
    repos = get_repositories(session, settings)
    async with session.begin():
        result = await sweeper_usecase.sweep_expired(repos.reservations, now=clock.now())

    await dispatch_notifications(notifier, result.notifications)
    try:
        for reservation in result.expired:
            emit_audit_log(
                action="reservation.expired",
                initiator="system",
                reservation_id=reservation.id,
                provider_id=reservation.provider_id,
                payment_correlation_id=reservation.payment_correlation_id,
                status_from=ReservationState.RESERVED,
                status_to=ReservationState.EXPIRED,
            )
        for reservation in result.deduplicated:
            emit_audit_log(
                action="reservation.deduplicated",
                initiator="system",
                reservation_id=reservation.id,
                provider_id=reservation.provider_id,
                status_from=ReservationState.RESERVED,
                status_to=ReservationState.EXPIRED,
                message="duplicate reservation for the same slot",
            )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failure")

    return SweepRead(expired=len(result.expired), deduplicated=len(result.deduplicated), count=result.count)
