from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..deps import claim_granularity, default_minimum_notice, get_clock, get_repositories, get_session, window_policy
from ..domain.errors import (
    ConflictError,
    InvalidReservationStateError,
    InvalidTimeRangeError,
    ProviderNotFoundError,
    ReservationNotFoundError,
    SlotTakenError,
)
from ..domain.services import TimeRange, conflict_explanation
from ..models import ReservationState
from ..schemas import PaymentAttach, ReservationCreate, ReservationRead
from ..usecases import reservations as reservation_usecase
from ..utils.audit_log import emit_audit_log
from ..utils.time import Clock, to_utc_naive

router = APIRouter(prefix="/reservations", tags=["reservations"])


def _audit(**kwargs: Any) -> None:
    try:
        emit_audit_log(**kwargs)
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failure")


@router.post("", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> ReservationRead:
    if payload.starts_at.tzinfo is None or payload.ends_at.tzinfo is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="starts_at/ends_at must have timezone")
    try:
        time_range = TimeRange(to_utc_naive(payload.starts_at), to_utc_naive(payload.ends_at))
    except InvalidTimeRangeError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    repos = get_repositories(session, settings)
    async with session.begin():
        try:
            reservation = await reservation_usecase.create_reservation(
                repos,
                provider_id=payload.provider_id,
                time_range=time_range,
                client_email=payload.client_email,
                client_name=payload.client_name,
                timezone=payload.timezone,
                now=clock.now(),
                window_policy=window_policy(settings),
                default_minimum_notice=default_minimum_notice(settings),
                claim_granularity=claim_granularity(settings),
            )
        except ProviderNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="provider not found")
        except InvalidTimeRangeError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
        except ConflictError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "code": exc.result.conflict_type.value,
                    "message": conflict_explanation(exc.result.conflict_type),
                },
            )
        except SlotTakenError:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "slot_taken", "message": "slot no longer available, please pick another time"},
            )

    _audit(
        action="reservation.created",
        initiator="client",
        reservation_id=reservation.id,
        provider_id=reservation.provider_id,
        status_to=ReservationState.RESERVED,
        extra={"payment_window": reservation.payment_window, "expires_at": reservation.expires_at.isoformat()},
    )
    return ReservationRead.from_db(reservation=reservation)


@router.get("/{reservation_id}", response_model=ReservationRead)
async def get_reservation(
    reservation_id: str = Path(..., min_length=1, max_length=32),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ReservationRead:
    repos = get_repositories(session, settings)
    reservation = await reservation_usecase.get_reservation(repos, reservation_id=reservation_id)
    if reservation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reservation not found")
    return ReservationRead.from_db(reservation=reservation)


@router.post("/{reservation_id}/payment", response_model=ReservationRead)
async def attach_payment(
    payload: PaymentAttach,
    reservation_id: str = Path(..., min_length=1, max_length=32),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> ReservationRead:
    repos = get_repositories(session, settings)
    async with session.begin():
        try:
            reservation = await reservation_usecase.attach_payment(
                repos,
                reservation_id=reservation_id,
                payment_correlation_id=payload.payment_correlation_id,
                amount=payload.amount,
                now=clock.now(),
            )
        except ReservationNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reservation not found")
        except InvalidReservationStateError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    _audit(
        action="reservation.payment_attached",
        initiator="client",
        reservation_id=reservation.id,
        provider_id=reservation.provider_id,
        payment_correlation_id=reservation.payment_correlation_id,
        extra={"amount": reservation.amount},
    )
    return ReservationRead.from_db(reservation=reservation)
