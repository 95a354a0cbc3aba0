"""Background scheduler for notification digests.

Runs as an ``asyncio`` background task.  Every poll interval it loads all
users with digests enabled, picks those whose frequency threshold has passed
and whose local time of day is within one poll interval of their preferred
digest time, and emails each of them one digest of their unread
notifications.

A user's digest is built from a batch: the notifications that were
committed, unread and not yet digested when the run claimed them.  Only
after the mail relay accepted the digest are the batch rows marked digested
and the watermark (``last_digest_sent_at``) moved to the run cutoff, in one
write.  A notification is therefore in exactly one delivered digest, or
still waiting; a late commit with an old ``created_at`` is picked up by the
next run instead of falling behind the watermark.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from billing_core.state.repository import (
    NotificationPreferenceRepository,
    NotificationRepository,
    UserRepository,
)
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.digest_builder import build_digest, is_frequency_due, is_within_window
from billing_api.services.email_templates import EmailRenderer
from billing_api.services.mailer import Mailer

logger = logging.getLogger(__name__)


class UserDigestResult(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class _Candidate:
    """Preference values copied out of the session that loaded them."""

    user_id: str
    frequency: str
    digest_time: str
    timezone: str
    last_sent_at: datetime | None


@dataclass(frozen=True)
class DigestRunSummary:
    """Counts from one scheduler pass."""

    cutoff: datetime
    considered: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class DigestScheduler:
    """AsyncIO background task delivering notification digests.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker``; every user is processed in its own
        sessions.
    mailer:
        Mail collaborator.
    renderer:
        Email renderer for the digest template.
    poll_interval_seconds:
        Seconds between passes.  Also the width of the time-of-day window.
    max_concurrency:
        Maximum number of users processed at the same time.
    max_items_per_group:
        Maximum notifications listed per type group in one digest.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        mailer: Mailer,
        renderer: EmailRenderer,
        poll_interval_seconds: int = 3600,
        max_concurrency: int = 8,
        max_items_per_group: int = 10,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._session_factory = session_factory
        self._mailer = mailer
        self._renderer = renderer
        self._poll_interval = poll_interval_seconds
        self._window = timedelta(seconds=poll_interval_seconds)
        self._max_concurrency = max_concurrency
        self._max_items = max_items_per_group
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("DigestScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("DigestScheduler started (interval=%ds)", self._poll_interval)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("DigestScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("DigestScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("DigestScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    async def run_once(self, now: datetime | None = None) -> DigestRunSummary:
        """Run one digest pass.

        Parameters
        ----------
        now:
            Clock for the pass (tests).  Becomes the run cutoff: only
            notifications created at or before it are included, and sent
            users' watermarks move to it.
        """
        cutoff = now or datetime.now(UTC)

        async with self._session_factory() as session:
            rows = await NotificationPreferenceRepository(session).list_digest_enabled()
            candidates = [
                _Candidate(
                    user_id=row.user_id,
                    frequency=row.digest_frequency,
                    digest_time=row.digest_time,
                    timezone=row.timezone,
                    last_sent_at=row.last_digest_sent_at,
                )
                for row in rows
            ]

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(candidate: _Candidate) -> UserDigestResult:
            async with semaphore:
                return await self._process_user(candidate, cutoff)

        results = await asyncio.gather(*[_bounded(c) for c in candidates])

        summary = DigestRunSummary(
            cutoff=cutoff,
            considered=len(candidates),
            sent=results.count(UserDigestResult.SENT),
            skipped=results.count(UserDigestResult.SKIPPED),
            failed=results.count(UserDigestResult.FAILED),
        )
        logger.info(
            "Digest pass at %s: considered=%d sent=%d skipped=%d failed=%d",
            cutoff.isoformat(),
            summary.considered,
            summary.sent,
            summary.skipped,
            summary.failed,
        )
        return summary

    def _is_due(self, candidate: _Candidate, now: datetime) -> bool:
        return is_frequency_due(candidate.frequency, candidate.last_sent_at, now) and is_within_window(
            now, candidate.digest_time, self._window, candidate.timezone
        )

    async def _process_user(self, candidate: _Candidate, cutoff: datetime) -> UserDigestResult:
        user_id = candidate.user_id
        batch_id = uuid.uuid4().hex
        try:
            if not self._is_due(candidate, cutoff):
                return UserDigestResult.SKIPPED

            async with self._session_factory() as session:
                user = await UserRepository(session).get(user_id)
                if user is None:
                    logger.warning("Digest preferences reference unknown user %s", user_id)
                    return UserDigestResult.SKIPPED
                notifications = NotificationRepository(session)
                claimed = await notifications.claim_for_digest(user_id, until=cutoff, batch_id=batch_id)
                await session.commit()
                if not claimed:
                    logger.debug("No unread notifications for user %s; digest skipped", user_id)
                    return UserDigestResult.SKIPPED
                group_totals = await notifications.count_batch(batch_id)
                items = await notifications.list_batch(batch_id, per_group_limit=self._max_items)
                digest = build_digest(
                    user_id=user_id,
                    email=user.email,
                    display_name=user.display_name,
                    frequency=candidate.frequency,
                    notifications=items,
                    max_items_per_group=self._max_items,
                    group_totals=group_totals,
                )

            rendered = self._renderer.render_digest(digest)
            await self._mailer.send(digest.email, rendered.subject, rendered.html, rendered.text)

            async with self._session_factory() as session:
                await NotificationRepository(session).mark_digested(batch_id, cutoff)
                await NotificationPreferenceRepository(session).update_digest_watermark(user_id, cutoff)
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Digest delivery failed for user %s; batch %s left undelivered", user_id, batch_id)
            return UserDigestResult.FAILED

        logger.info(
            "Sent %s digest to user %s (%d notification(s), %d tenant(s))",
            digest.frequency,
            user_id,
            digest.total,
            len(digest.tenants),
        )
        return UserDigestResult.SENT
