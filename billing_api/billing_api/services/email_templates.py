"""Email body rendering.

Templates live in ``billing_api/templates`` as Jinja2 files named
``<template_id>.html.j2`` and ``<template_id>.txt.j2``.  HTML templates are
autoescaped; plain-text templates are not.  Rendering is a pure function of
the template id and its variables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from billing_api.services.digest_builder import Digest, digest_subject

logger = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

# Subject lines for transactional templates.
_SUBJECTS: dict[str, str] = {
    "payment_failed": "Action required: payment failed for {tenant_id}",
    "subscription_cancelled": "Your {plan_label} subscription for {tenant_id} has been cancelled",
}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


class UnknownTemplate(LookupError):
    """No template is registered under the requested id."""


class EmailRenderer:
    """Render transactional emails and digests from Jinja2 templates.

    Parameters
    ----------
    web_client_url:
        Base URL of the web client, used for links in every email.
    templates_dir:
        Override for the template directory (tests).
    """

    def __init__(self, *, web_client_url: str, templates_dir: Path | None = None) -> None:
        self._base_url = web_client_url.rstrip("/")
        self._env = Environment(
            loader=FileSystemLoader(str(templates_dir or _TEMPLATES_DIR)),
            autoescape=select_autoescape(enabled_extensions=("html.j2",), default_for_string=False),
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @property
    def template_ids(self) -> frozenset[str]:
        return frozenset(_SUBJECTS)

    def _common_context(self) -> dict[str, Any]:
        return {
            "settings_url": f"{self._base_url}/account/settings",
            "notifications_url": f"{self._base_url}/notifications",
            "billing_url": f"{self._base_url}/account/billing",
        }

    def _render_pair(self, template_id: str, context: dict[str, Any]) -> tuple[str, str]:
        try:
            html = self._env.get_template(f"{template_id}.html.j2").render(**context)
            text = self._env.get_template(f"{template_id}.txt.j2").render(**context)
        except TemplateNotFound as exc:
            raise UnknownTemplate(template_id) from exc
        return html, text

    def render(self, template_id: str, variables: dict[str, Any]) -> RenderedEmail:
        """Render a transactional email.

        Raises
        ------
        UnknownTemplate
            If *template_id* is not a known transactional template.
        """
        if template_id not in _SUBJECTS:
            raise UnknownTemplate(template_id)

        context = {**self._common_context(), **variables}
        context.setdefault("plan_id", None)
        subject = _SUBJECTS[template_id].format(
            tenant_id=context.get("tenant_id", ""),
            plan_label=(context.get("plan_id") or "current"),
        )
        context["subject"] = subject
        html, text = self._render_pair(template_id, context)
        logger.debug("Rendered %s email for tenant %s", template_id, context.get("tenant_id", "-"))
        return RenderedEmail(subject=subject, html=html, text=text)

    def render_digest(self, digest: Digest) -> RenderedEmail:
        """Render a notification digest."""
        subject = digest_subject(digest)
        context = {**self._common_context(), "digest": digest, "subject": subject}
        html, text = self._render_pair("digest", context)
        return RenderedEmail(subject=subject, html=html, text=text)
