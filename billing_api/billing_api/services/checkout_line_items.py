"""Fetch checkout line items from the payment processor.

``checkout.session.completed`` events do not include line items unless the
endpoint was configured to expand them, so one-time purchases look them up
with a separate API call.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from billing_core.errors import MalformedLineItems
from billing_core.events.models import LineItem, LineItemList
from pydantic import ValidationError

logger = logging.getLogger(__name__)


class LineItemSource(Protocol):
    """Anything that can list the line items of a checkout session."""

    async def fetch(self, session_id: str) -> list[LineItem]: ...


class StripeLineItemSource:
    """Read checkout line items through the Stripe API.

    Parameters
    ----------
    api_key:
        Stripe secret key.
    """

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def _get_stripe(self) -> Any:
        """Lazily import the Stripe library."""
        import stripe

        return stripe

    def _list_line_items(self, session_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        response = stripe.checkout.Session.list_line_items(session_id, limit=10, api_key=self._api_key)
        # StripeObject renders itself as JSON.
        return json.loads(str(response))

    async def fetch(self, session_id: str) -> list[LineItem]:
        """Return the line items of checkout session *session_id*.

        Raises
        ------
        MalformedLineItems
            If the response cannot be decoded into line items.
        """
        raw = await asyncio.to_thread(self._list_line_items, session_id)
        try:
            items = LineItemList.model_validate(raw).data
        except ValidationError as exc:
            raise MalformedLineItems(f"Unreadable line items for checkout session {session_id}") from exc
        logger.debug("Fetched %d line item(s) for checkout session %s", len(items), session_id)
        return items
