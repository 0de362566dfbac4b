"""
Notification templates.

Each registered template has a subject, a plain-text body and an HTML body.
Placeholders are ``{{key}}``; a key missing from the variables renders as an
empty string.  Values substituted into the HTML body are escaped.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any, Mapping

from presale_kernel.exceptions import UnknownTemplateError

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


@dataclass(frozen=True)
class MessageTemplate:
    template_id: str
    subject: str
    body_text: str
    body_html: str


@dataclass(frozen=True)
class RenderedMessage:
    recipient: str
    subject: str
    text: str
    html: str


def render_string(template: str, variables: Mapping[str, Any], escape: bool = False) -> str:
    """Replace ``{{key}}`` placeholders with values from ``variables``."""

    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return ""
        text = str(value)
        return html.escape(text) if escape else text

    return _PLACEHOLDER.sub(_sub, template)


_INVOICE_SUMMARY_TEXT = (
    "Invoice: {{invoice_no}}\n"
    "Amount: {{token_amount}} TPC\n"
    "Total: ${{total_usd}} / Rp {{total_idr}}\n"
)

_INVOICE_SUMMARY_HTML = (
    "<p>Invoice: <strong>{{invoice_no}}</strong></p>"
    "<p>Amount: {{token_amount}} TPC</p>"
    "<p>Total: ${{total_usd}} / Rp {{total_idr}}</p>"
)

DEFAULT_TEMPLATES: tuple[MessageTemplate, ...] = (
    MessageTemplate(
        template_id="payment_submitted",
        subject="Payment confirmation received for {{invoice_no}}",
        body_text=(
            "Hi {{name}},\n\nWe received your payment confirmation and it is "
            "now under review.\n\n" + _INVOICE_SUMMARY_TEXT + "\n{{invoice_url}}\n"
        ),
        body_html=(
            "<p>Hi {{name}},</p><p>We received your payment confirmation and it "
            "is now under review.</p>" + _INVOICE_SUMMARY_HTML
            + '<p><a href="{{invoice_url}}">View invoice</a></p>'
        ),
    ),
    MessageTemplate(
        template_id="invoice_approved",
        subject="Payment approved for {{invoice_no}}",
        body_text=(
            "Hi {{name}},\n\nYour payment has been approved. Your tokens will "
            "be delivered to your wallet shortly.\n\n" + _INVOICE_SUMMARY_TEXT
            + "Admin note: {{note}}\n\n{{invoice_url}}\n"
        ),
        body_html=(
            "<p>Hi {{name}},</p><p>Your payment has been approved. Your tokens "
            "will be delivered to your wallet shortly.</p>" + _INVOICE_SUMMARY_HTML
            + "<p>Admin note: {{note}}</p>"
            + '<p><a href="{{invoice_url}}">View invoice</a></p>'
        ),
    ),
    MessageTemplate(
        template_id="invoice_rejected",
        subject="Payment rejected for {{invoice_no}}",
        body_text=(
            "Hi {{name}},\n\nYour payment could not be verified. Please check "
            "the admin note and submit your confirmation again.\n\n"
            + _INVOICE_SUMMARY_TEXT + "Admin note: {{note}}\n\n{{invoice_url}}#confirm\n"
        ),
        body_html=(
            "<p>Hi {{name}},</p><p>Your payment could not be verified. Please "
            "check the admin note and submit your confirmation again.</p>"
            + _INVOICE_SUMMARY_HTML + "<p>Admin note: {{note}}</p>"
            + '<p><a href="{{invoice_url}}#confirm">Resubmit confirmation</a></p>'
        ),
    ),
    MessageTemplate(
        template_id="invoice_expired",
        subject="Invoice {{invoice_no}} has expired",
        body_text=(
            "Hi {{name}},\n\nYour invoice expired before payment was confirmed. "
            "You can create a new purchase at any time.\n\n" + _INVOICE_SUMMARY_TEXT
        ),
        body_html=(
            "<p>Hi {{name}},</p><p>Your invoice expired before payment was "
            "confirmed. You can create a new purchase at any time.</p>"
            + _INVOICE_SUMMARY_HTML
        ),
    ),
    MessageTemplate(
        template_id="invoice_cancelled",
        subject="Invoice {{invoice_no}} was cancelled",
        body_text=(
            "Hi {{name}},\n\nYour invoice was cancelled.\n\n" + _INVOICE_SUMMARY_TEXT
            + "Admin note: {{note}}\n"
        ),
        body_html=(
            "<p>Hi {{name}},</p><p>Your invoice was cancelled.</p>"
            + _INVOICE_SUMMARY_HTML + "<p>Admin note: {{note}}</p>"
        ),
    ),
)


class TemplateRegistry:
    """Lookup of registered templates by id."""

    def __init__(self, templates: tuple[MessageTemplate, ...] = DEFAULT_TEMPLATES):
        self._templates = {t.template_id: t for t in templates}

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def template_ids(self) -> frozenset[str]:
        return frozenset(self._templates)

    def get(self, template_id: str) -> MessageTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise UnknownTemplateError(template_id) from None

    def render(
        self,
        template_id: str,
        recipient: str,
        variables: Mapping[str, Any],
    ) -> RenderedMessage:
        template = self.get(template_id)
        return RenderedMessage(
            recipient=recipient,
            subject=render_string(template.subject, variables),
            text=render_string(template.body_text, variables),
            html=render_string(template.body_html, variables, escape=True),
        )
