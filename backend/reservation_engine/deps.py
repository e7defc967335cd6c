import secrets
from datetime import timedelta
from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .database import get_sessionmaker
from .domain.gateways import Notifier, PaymentGateway
from .domain.repositories import Repositories
from .domain.services import PaymentWindowPolicy
from .infrastructure.notifications import LoggingNotifier
from .infrastructure.repositories import build_repositories
from .infrastructure.stripe_gateway import StripePaymentGateway
from .utils.time import Clock, SystemClock


async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_sessionmaker()() as session:
        yield session


def claim_granularity(settings: Settings) -> timedelta:
    return timedelta(minutes=settings.slot_claim_granularity_minutes)


def get_repositories(session: AsyncSession, settings: Settings) -> Repositories:
    return build_repositories(session, claim_granularity=claim_granularity(settings))


def window_policy(settings: Settings) -> PaymentWindowPolicy:
    return PaymentWindowPolicy(
        immediate_window=timedelta(hours=settings.immediate_window_hours),
        immediate_expiry=timedelta(minutes=settings.immediate_expiry_minutes),
        delayed_expiry=timedelta(hours=settings.delayed_expiry_hours),
        instant_methods=tuple(settings.instant_payment_methods),
        delayed_methods=tuple(settings.delayed_payment_methods),
    )


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    settings = get_settings()
    return StripePaymentGateway(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )


@lru_cache
def get_notifier() -> Notifier:
    return LoggingNotifier()


def get_clock() -> Clock:
    return SystemClock()


async def get_raw_body(request: Request) -> bytes:
    return await request.body()


async def require_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.cron_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="cron secret not configured")
    if x_cron_secret is None or not secrets.compare_digest(x_cron_secret, settings.cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid cron secret")


def default_minimum_notice(settings: Settings) -> timedelta:
    return timedelta(minutes=settings.default_minimum_notice_minutes)
