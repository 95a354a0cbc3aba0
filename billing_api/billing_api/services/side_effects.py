"""Best-effort side effects of committed billing transitions.

After a subscription transition commits, the dispatcher writes an audit
entry, creates in-app notifications for the tenant's members and sends a
transactional email to the tenant's owners.  Each effect runs in its own
session and its own ``try / except``: a failing effect is logged and
reported, never raised, so nothing here can undo or block the committed
state change.

Usage::

    report = await dispatcher.emit(
        tenant_id,
        "invoice.payment_failed",
        data={"event_id": event.event_id},
        audit=AuditSpec(action=AuditAction.PAYMENT_FAILED, ...),
        notification=NotificationSpec(type=NotificationType.ERROR, title="Payment failed"),
    )
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from billing_core.models.notification import MemberRole, NotificationType
from billing_core.state.repository import (
    NotificationPreferenceRepository,
    NotificationRepository,
    TenantMemberRepository,
)

from billing_api.services.audit_service import AuditService
from billing_api.services.email_templates import EmailRenderer
from billing_api.services.mailer import Mailer

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Effect descriptions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditSpec:
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationSpec:
    type: NotificationType
    title: str
    message: str | None = None
    link: str | None = None


@dataclass(frozen=True)
class EmailSpec:
    """Transactional email sent to the tenant's owners."""

    template_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    roles: tuple[str, ...] = (MemberRole.OWNER.value,)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EffectOk:
    effect: str
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class EffectFailed:
    effect: str
    reason: str

    @property
    def ok(self) -> bool:
        return False


EffectResult = EffectOk | EffectFailed


@dataclass(frozen=True)
class SideEffectReport:
    """One result per attempted effect, in execution order."""

    tenant_id: str
    event_type: str
    results: tuple[EffectResult, ...]

    @property
    def failures(self) -> list[EffectFailed]:
        return [r for r in self.results if isinstance(r, EffectFailed)]

    @property
    def all_ok(self) -> bool:
        return not self.failures

    def result_for(self, effect: str) -> EffectResult | None:
        for result in self.results:
            if result.effect == effect:
                return result
        return None


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class SideEffectDispatcher:
    """Run audit, notification and email effects in isolation.

    Parameters
    ----------
    session_factory:
        Async session factory; each effect gets a fresh session.
    mailer:
        Mail collaborator used for transactional emails.
    renderer:
        Email template renderer.
    actor:
        Actor recorded on audit entries.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        mailer: Mailer,
        renderer: EmailRenderer,
        actor: str = "system:billing",
    ) -> None:
        self._session_factory = session_factory
        self._mailer = mailer
        self._renderer = renderer
        self._actor = actor

    async def emit(
        self,
        tenant_id: str,
        event_type: str,
        data: dict[str, Any],
        audit: AuditSpec,
        notification: NotificationSpec | None = None,
        email: EmailSpec | None = None,
    ) -> SideEffectReport:
        """Run the requested effects for *tenant_id*.

        The audit entry is always attempted; notification and email only
        when given.  Never raises.

        Parameters
        ----------
        tenant_id:
            Tenant the committed transition belongs to.
        event_type:
            Processor event type that caused the transition.
        data:
            Event context (event id, account reference) merged into the
            audit metadata.
        """
        results: list[EffectResult] = [
            await self._safe_call("audit", tenant_id, event_type, lambda: self._write_audit(tenant_id, data, audit))
        ]
        if notification is not None:
            results.append(
                await self._safe_call(
                    "notification",
                    tenant_id,
                    event_type,
                    lambda: self._create_notifications(tenant_id, event_type, notification),
                )
            )
        if email is not None:
            results.append(
                await self._safe_call(
                    "email",
                    tenant_id,
                    event_type,
                    lambda: self._send_email(tenant_id, email),
                )
            )

        report = SideEffectReport(tenant_id=tenant_id, event_type=event_type, results=tuple(results))
        if not report.all_ok:
            logger.warning(
                "Side effects for %s (tenant=%s) finished with %d failure(s)",
                event_type,
                tenant_id,
                len(report.failures),
            )
        return report

    async def _safe_call(
        self,
        effect: str,
        tenant_id: str,
        event_type: str,
        call: Callable[[], Awaitable[str | None]],
    ) -> EffectResult:
        try:
            detail = await call()
        except Exception as exc:
            logger.exception(
                "Side effect %s failed for event %s (tenant=%s)",
                effect,
                event_type,
                tenant_id,
            )
            return EffectFailed(effect=effect, reason=str(exc) or type(exc).__name__)
        return EffectOk(effect=effect, detail=detail)

    async def _write_audit(self, tenant_id: str, data: dict[str, Any], spec: AuditSpec) -> str:
        async with self._session_factory() as session:
            service = AuditService(session, tenant_id=tenant_id, actor=self._actor)
            entry_id = await service.log(
                spec.action,
                spec.resource_type,
                spec.resource_id,
                description=spec.description,
                metadata={**data, **spec.metadata},
            )
            await session.commit()
        return entry_id

    async def _create_notifications(self, tenant_id: str, event_type: str, spec: NotificationSpec) -> str:
        async with self._session_factory() as session:
            members = await TenantMemberRepository(session).list_members(tenant_id)
            preferences = await NotificationPreferenceRepository(session).get_many(
                member.user_id for member, _user in members
            )
            notifications = NotificationRepository(session)

            created = 0
            for member, _user in members:
                pref = preferences.get(member.user_id)
                if pref is not None:
                    if not pref.in_app_enabled:
                        continue
                    if event_type in (pref.disabled_event_types or []):
                        continue
                await notifications.create(
                    user_id=member.user_id,
                    tenant_id=tenant_id,
                    title=spec.title,
                    message=spec.message,
                    type=spec.type.value,
                    event_type=event_type,
                    link=spec.link,
                )
                created += 1
            await session.commit()

        logger.debug("Created %d notification(s) for %s (tenant=%s)", created, event_type, tenant_id)
        return f"{created} notification(s)"

    async def _send_email(self, tenant_id: str, spec: EmailSpec) -> str:
        async with self._session_factory() as session:
            recipients = await TenantMemberRepository(session).list_members(tenant_id, roles=spec.roles)
            addresses = [user.email for _member, user in recipients]

        if not addresses:
            logger.info("No recipients for %s email (tenant=%s)", spec.template_id, tenant_id)
            return "no recipients"

        rendered = self._renderer.render(spec.template_id, {"tenant_id": tenant_id, **spec.variables})
        for address in addresses:
            await self._mailer.send(address, rendered.subject, rendered.html, rendered.text)
        return f"{len(addresses)} email(s)"
