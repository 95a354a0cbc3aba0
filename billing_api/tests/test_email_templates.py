"""Tests for transactional and digest email rendering."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from billing_core.state.tables import NotificationTable

from billing_api.services.digest_builder import build_digest
from billing_api.services.email_templates import EmailRenderer, UnknownTemplate


class TestTransactionalTemplates:
    def test_payment_failed(self, renderer: EmailRenderer) -> None:
        email = renderer.render(
            "payment_failed",
            {"tenant_id": "acme", "plan_id": "pro", "invoice_url": "https://invoice.example.com/in_1"},
        )

        assert email.subject == "Action required: payment failed for acme"
        assert "on the pro plan" in email.text
        assert "https://invoice.example.com/in_1" in email.html
        assert "https://app.example.com/account/billing" in email.text

    def test_payment_failed_without_invoice_link(self, renderer: EmailRenderer) -> None:
        email = renderer.render("payment_failed", {"tenant_id": "acme", "plan_id": None, "invoice_url": None})

        assert "View the invoice" not in email.text
        assert "on the" not in email.text

    def test_subscription_cancelled(self, renderer: EmailRenderer) -> None:
        email = renderer.render(
            "subscription_cancelled",
            {"tenant_id": "acme", "plan_id": "hobby", "period_end": "2025-02-01"},
        )

        assert email.subject == "Your hobby subscription for acme has been cancelled"
        assert "on 2025-02-01" in email.html

    def test_html_is_escaped(self, renderer: EmailRenderer) -> None:
        email = renderer.render("payment_failed", {"tenant_id": "<script>x</script>"})

        assert "<script>" not in email.html
        assert "&lt;script&gt;" in email.html
        # Plain text is not escaped.
        assert "<script>x</script>" in email.text

    def test_unknown_template(self, renderer: EmailRenderer) -> None:
        with pytest.raises(UnknownTemplate):
            renderer.render("welcome", {})

    def test_template_ids(self, renderer: EmailRenderer) -> None:
        assert renderer.template_ids == frozenset({"payment_failed", "subscription_cancelled"})


class TestDigestTemplate:
    def test_renders_groups_and_overflow(self, renderer: EmailRenderer) -> None:
        created = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)
        rows = [
            NotificationTable(
                id=f"n-{i}",
                user_id="u-1",
                tenant_id="acme",
                title=f"Payment failed #{i}",
                message="Card declined",
                type="ERROR",
                link="/account/billing" if i == 0 else None,
                is_read=False,
                created_at=created,
            )
            for i in range(3)
        ]
        digest = build_digest(
            user_id="u-1",
            email="owner@example.com",
            display_name="Ada",
            frequency="daily",
            notifications=rows,
            max_items_per_group=2,
        )

        email = renderer.render_digest(digest)

        assert email.subject == "[3 critical] Your daily digest: 3 unread notifications"
        assert "Hi Ada," in email.text
        assert "acme (3)" in email.text
        assert "... and 1 more" in email.text
        assert "Payment failed #2" not in email.text
        assert '<a href="/account/billing">Payment failed #0</a>' in email.html
        assert "https://app.example.com/notifications" in email.html
