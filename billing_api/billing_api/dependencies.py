"""FastAPI dependency injection for settings, database sessions, and billing services."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_core.catalog.features import FeatureMap
from billing_core.catalog.plans import PlanCatalog, build_default_catalog, load_plan_catalog
from billing_core.catalog.resolver import PlanResolver
from billing_core.state.database import get_engine, get_session_factory as build_session_factory
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings, load_api_settings
from billing_api.services.billing_service import BillingService
from billing_api.services.checkout_line_items import StripeLineItemSource
from billing_api.services.digest_scheduler import DigestScheduler
from billing_api.services.email_templates import EmailRenderer
from billing_api.services.mailer import HttpMailer, LoggingMailer, build_mailer
from billing_api.services.side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = build_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by the billing services and the digest scheduler, which open
    their own sessions per transition, per side effect, and per user.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Catalog and feature map
# ---------------------------------------------------------------------------


def build_plan_catalog(settings: APISettings) -> PlanCatalog:
    """Load the catalog file when configured, else build the default catalog from price ids."""
    if settings.plan_catalog_path:
        return load_plan_catalog(settings.plan_catalog_path)
    return build_default_catalog(
        hobby_price_id=settings.stripe_price_id_hobby,
        pro_price_id=settings.stripe_price_id_pro,
        credits_price_id=settings.stripe_price_id_credits,
        credits_amount=settings.credits_pack_amount,
    )


# ---------------------------------------------------------------------------
# Billing services
# ---------------------------------------------------------------------------

_mailer: HttpMailer | LoggingMailer | None = None
_billing_service: BillingService | None = None
_digest_scheduler: DigestScheduler | None = None


def init_billing(settings: APISettings, session_factory: async_sessionmaker[AsyncSession]) -> BillingService:
    """Build the plan catalog, mailer and billing service singletons."""
    global _mailer, _billing_service  # noqa: PLW0603
    catalog = build_plan_catalog(settings)
    feature_map = FeatureMap()
    feature_map.check_catalog(catalog)
    renderer = EmailRenderer(web_client_url=settings.web_client_url)
    _mailer = build_mailer(settings)
    dispatcher = SideEffectDispatcher(session_factory, mailer=_mailer, renderer=renderer)
    _billing_service = BillingService(
        session_factory,
        PlanResolver(catalog),
        feature_map,
        dispatcher,
        StripeLineItemSource(settings.stripe_secret_key.get_secret_value()),
    )
    logger.info(
        "Billing initialised: %d plan(s), purchasable=%s",
        len(catalog.plans),
        ",".join(p.plan_id for p in catalog.plans if p.price_id) or "-",
    )
    return _billing_service


def init_digest_scheduler(
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
) -> DigestScheduler:
    """Create the digest scheduler singleton.  Call after :func:`init_billing`."""
    global _digest_scheduler  # noqa: PLW0603
    if _mailer is None:
        raise RuntimeError("init_billing() must run before init_digest_scheduler()")
    _digest_scheduler = DigestScheduler(
        session_factory,
        mailer=_mailer,
        renderer=EmailRenderer(web_client_url=settings.web_client_url),
        poll_interval_seconds=settings.digest_poll_interval_seconds,
        max_concurrency=settings.digest_max_concurrency,
        max_items_per_group=settings.digest_max_items_per_group,
    )
    return _digest_scheduler


async def dispose_billing() -> None:
    """Stop the scheduler and close the mailer (call during shutdown)."""
    global _mailer, _billing_service, _digest_scheduler  # noqa: PLW0603
    if _digest_scheduler is not None:
        await _digest_scheduler.stop()
        _digest_scheduler = None
    if _mailer is not None:
        await _mailer.close()
        _mailer = None
    _billing_service = None


def get_billing_service() -> BillingService:
    """Return the billing service singleton."""
    if _billing_service is None:
        raise RuntimeError("Billing service not initialised. Ensure init_billing() is called during startup.")
    return _billing_service


BillingServiceDep = Annotated[BillingService, Depends(get_billing_service)]

# ---------------------------------------------------------------------------
# Admin authentication
# ---------------------------------------------------------------------------


def require_admin_token(request: Request, settings: SettingsDep) -> None:
    """Reject requests without the configured admin bearer token."""
    expected = settings.admin_api_token.get_secret_value()
    if not expected:
        raise HTTPException(status_code=403, detail="Admin endpoints are disabled")

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")
