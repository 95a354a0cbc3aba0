"""Tests for the digest scheduler: eligibility, delivery and watermarks."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from billing_core.errors import MailDeliveryError
from billing_core.state.repository import (
    NotificationPreferenceRepository,
    NotificationRepository,
    TenantMemberRepository,
    UserRepository,
)

from billing_api.services.digest_scheduler import DigestScheduler
from billing_api.services.mailer import LoggingMailer

_NOW = datetime(2025, 1, 15, 9, 0, tzinfo=UTC)


class FailingMailer:
    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        raise MailDeliveryError("relay down")


class SlowMailer(LoggingMailer):
    """Records the highest number of sends in flight at once."""

    def __init__(self) -> None:
        super().__init__()
        self._in_flight = 0
        self.max_in_flight = 0

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            await asyncio.sleep(0.02)
            await super().send(to, subject, html, text)
        finally:
            self._in_flight -= 1


@pytest.fixture()
def add_user(session_factory):
    """Create a user with digest preferences and optional notifications."""

    async def _add(
        user_id: str,
        *,
        notifications_minutes_ago: tuple[int, ...] = (),
        tenant_id: str = "t-1",
        **prefs,
    ) -> None:
        fields = {"digest_enabled": True, "digest_frequency": "daily", "digest_time": "09:00", "timezone": "UTC"}
        fields.update(prefs)
        async with session_factory() as session:
            await UserRepository(session).create(email=f"{user_id}@example.com", user_id=user_id)
            await NotificationPreferenceRepository(session).upsert(user_id, **fields)
            await TenantMemberRepository(session).add(tenant_id=tenant_id, user_id=user_id)
            notifications = NotificationRepository(session)
            for minutes in notifications_minutes_ago:
                await notifications.create(
                    user_id=user_id,
                    tenant_id=tenant_id,
                    title=f"Event {minutes}m ago",
                    type="INFO",
                    created_at=_NOW - timedelta(minutes=minutes),
                )
            await session.commit()

    return _add


async def _watermark(session_factory, user_id: str) -> datetime | None:
    async with session_factory() as session:
        pref = await NotificationPreferenceRepository(session).get(user_id)
    assert pref is not None
    return pref.last_digest_sent_at


def _scheduler(session_factory, mailer, renderer, **kwargs) -> DigestScheduler:
    return DigestScheduler(session_factory, mailer=mailer, renderer=renderer, **kwargs)


@pytest.mark.asyncio
class TestRunOnce:
    async def test_sends_digest_and_advances_watermark(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(90, 30))

        summary = await _scheduler(session_factory, mailer, renderer).run_once(_NOW)

        assert (summary.considered, summary.sent, summary.skipped, summary.failed) == (1, 1, 0, 0)
        assert len(mailer.outbox) == 1
        message = mailer.outbox[0]
        assert message.to == "u-1@example.com"
        assert message.subject == "Your daily digest: 2 unread notifications"
        assert "Event 90m ago" in message.text
        assert "https://app.example.com/account/settings" in message.html
        assert await _watermark(session_factory, "u-1") == _NOW

    async def test_no_notifications_skips_without_moving_watermark(
        self, session_factory, mailer, renderer, add_user
    ) -> None:
        await add_user("u-1")

        summary = await _scheduler(session_factory, mailer, renderer).run_once(_NOW)

        assert summary.skipped == 1
        assert mailer.outbox == []
        assert await _watermark(session_factory, "u-1") is None

    async def test_failed_delivery_keeps_watermark(self, session_factory, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(10,))

        summary = await _scheduler(session_factory, FailingMailer(), renderer).run_once(_NOW)

        assert summary.failed == 1
        assert await _watermark(session_factory, "u-1") is None

    async def test_retry_after_failure_includes_same_notifications(
        self, session_factory, mailer, renderer, add_user
    ) -> None:
        await add_user("u-1", notifications_minutes_ago=(10,))
        await _scheduler(session_factory, FailingMailer(), renderer).run_once(_NOW)

        summary = await _scheduler(session_factory, mailer, renderer).run_once(_NOW + timedelta(minutes=30))

        assert summary.sent == 1
        assert "Event 10m ago" in mailer.outbox[0].text

    async def test_notifications_after_cutoff_go_in_next_digest(
        self, session_factory, mailer, renderer, add_user
    ) -> None:
        await add_user("u-1", notifications_minutes_ago=(60, -5))
        scheduler = _scheduler(session_factory, mailer, renderer)

        await scheduler.run_once(_NOW)
        await scheduler.run_once(_NOW + timedelta(days=1))

        assert len(mailer.outbox) == 2
        assert "Event 60m ago" in mailer.outbox[0].text
        assert "Event -5m ago" not in mailer.outbox[0].text
        assert "Event -5m ago" in mailer.outbox[1].text
        assert "Event 60m ago" not in mailer.outbox[1].text

    async def test_late_commit_behind_watermark_goes_in_next_digest(
        self, session_factory, mailer, renderer, add_user
    ) -> None:
        await add_user("u-1", notifications_minutes_ago=(30,))
        scheduler = _scheduler(session_factory, mailer, renderer)
        await scheduler.run_once(_NOW)

        # Stamped before the cutoff but committed after the first run read its batch.
        async with session_factory() as session:
            await NotificationRepository(session).create(
                user_id="u-1",
                tenant_id="t-1",
                title="Committed late",
                type="ERROR",
                created_at=_NOW - timedelta(seconds=1),
            )
            await session.commit()
        summary = await scheduler.run_once(_NOW + timedelta(days=1))

        assert summary.sent == 1
        assert len(mailer.outbox) == 2
        assert "Committed late" in mailer.outbox[1].text
        assert "Event 30m ago" not in mailer.outbox[1].text

    async def test_delivered_notifications_are_marked(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(20, 10))

        await _scheduler(session_factory, mailer, renderer).run_once(_NOW)

        async with session_factory() as session:
            rows = await NotificationRepository(session).list_for_user("u-1")
        assert [row.digested_at for row in rows] == [_NOW, _NOW]
        assert len({row.digest_batch_id for row in rows}) == 1

    async def test_tenants_the_user_left_are_excluded(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(10,))
        async with session_factory() as session:
            await NotificationRepository(session).create(
                user_id="u-1",
                tenant_id="t-former",
                title="From a former tenant",
                type="INFO",
                created_at=_NOW - timedelta(minutes=5),
            )
            await session.commit()

        await _scheduler(session_factory, mailer, renderer).run_once(_NOW)

        assert "Event 10m ago" in mailer.outbox[0].text
        assert "From a former tenant" not in mailer.outbox[0].text

    async def test_overflow_counted_without_listing(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(50, 40, 30, 20, 10))

        await _scheduler(session_factory, mailer, renderer, max_items_per_group=2).run_once(_NOW)

        message = mailer.outbox[0]
        assert message.subject == "Your daily digest: 5 unread notifications"
        assert "Event 50m ago" in message.text
        assert "Event 40m ago" in message.text
        assert "Event 10m ago" not in message.text
        assert "... and 3 more" in message.text

    async def test_frequency_not_due(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(10,), last_digest_sent_at=_NOW - timedelta(hours=2))

        summary = await _scheduler(session_factory, mailer, renderer).run_once(_NOW)

        assert summary.skipped == 1
        assert mailer.outbox == []

    async def test_outside_time_window(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(10,), digest_time="15:00")

        summary = await _scheduler(session_factory, mailer, renderer).run_once(_NOW)

        assert summary.skipped == 1

    async def test_local_timezone_respected(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-ny", notifications_minutes_ago=(10,), timezone="America/New_York")

        scheduler = _scheduler(session_factory, mailer, renderer)
        early = await scheduler.run_once(_NOW)
        local_nine = await scheduler.run_once(_NOW + timedelta(hours=5))

        assert early.sent == 0
        assert local_nine.sent == 1

    async def test_disabled_users_not_considered(self, session_factory, mailer, renderer, add_user) -> None:
        await add_user("u-1", notifications_minutes_ago=(10,), digest_enabled=False)

        summary = await _scheduler(session_factory, mailer, renderer).run_once(_NOW)

        assert summary.considered == 0

    async def test_one_failure_does_not_stop_others(self, session_factory, renderer, add_user) -> None:
        class SelectiveMailer(LoggingMailer):
            async def send(self, to: str, subject: str, html: str, text: str) -> None:
                if to.startswith("u-bad"):
                    raise MailDeliveryError("mailbox unavailable")
                await super().send(to, subject, html, text)

        await add_user("u-bad", notifications_minutes_ago=(10,))
        await add_user("u-good", notifications_minutes_ago=(10,))
        selective = SelectiveMailer()

        summary = await _scheduler(session_factory, selective, renderer).run_once(_NOW)

        assert (summary.sent, summary.failed) == (1, 1)
        assert [m.to for m in selective.outbox] == ["u-good@example.com"]
        assert await _watermark(session_factory, "u-good") == _NOW
        assert await _watermark(session_factory, "u-bad") is None

    async def test_concurrency_is_bounded(self, session_factory, renderer, add_user) -> None:
        for i in range(6):
            await add_user(f"u-{i}", notifications_minutes_ago=(10,))
        slow = SlowMailer()

        summary = await _scheduler(session_factory, slow, renderer, max_concurrency=2).run_once(_NOW)

        assert summary.sent == 6
        assert 1 <= slow.max_in_flight <= 2


class TestSchedulerLifecycle:
    def test_rejects_zero_concurrency(self, session_factory, mailer, renderer) -> None:
        with pytest.raises(ValueError):
            _scheduler(session_factory, mailer, renderer, max_concurrency=0)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, mailer, renderer) -> None:
        scheduler = _scheduler(session_factory, mailer, renderer, poll_interval_seconds=3600)

        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0)
        await scheduler.stop()

        assert not scheduler.running
