"""Review-request SMS templates: rendering, validation and preview."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from zeus_core.messaging.pricing import UNIT_PRICE, MessageCost, calculate_cost

DEFAULT_TEMPLATE = (
    "Hi {customerName}! Thank you for choosing {businessName}. "
    "We'd love to hear about your experience. Please leave us a review: {reviewUrl}"
)

REQUIRED_PLACEHOLDERS: tuple[str, ...] = ("{customerName}", "{businessName}", "{reviewUrl}")

# Leaves room for placeholder expansion below the gateway's 1600 character cap.
MAX_TEMPLATE_LENGTH = 1400

DEFAULT_CUSTOMER_NAME = "Valued Customer"
DEFAULT_BUSINESS_NAME = "this business"

_SAMPLE_VALUES = {
    "customer_name": "John Smith",
    "business_name": "ABC Company",
    "review_url": "https://g.page/r/abc123",
}


@dataclass(frozen=True)
class TemplatePreview:
    """A template rendered with sample data."""

    text: str
    char_count: int
    cost: MessageCost


def select_template(template: str | None, enabled: bool) -> str:
    """Return the account's template, or the default when unset or disabled."""
    if enabled and template and template.strip():
        return template
    return DEFAULT_TEMPLATE


def render_template(
    template: str,
    *,
    customer_name: str | None,
    business_name: str | None,
    review_url: str | None,
) -> str:
    """Substitute every placeholder occurrence in *template*."""
    return (
        template.replace("{customerName}", customer_name or DEFAULT_CUSTOMER_NAME)
        .replace("{businessName}", business_name or DEFAULT_BUSINESS_NAME)
        .replace("{reviewUrl}", review_url or "")
    )


def validate_template(template: str) -> list[str]:
    """Return a list of problems with *template*; empty when it is usable."""
    problems: list[str] = []
    if not template or not template.strip():
        return ["Message is required"]

    missing = [p for p in REQUIRED_PLACEHOLDERS if p not in template]
    if missing:
        problems.append(f"Message must contain the following placeholders: {', '.join(missing)}")
    if len(template) > MAX_TEMPLATE_LENGTH:
        problems.append(f"Message is too long. Please keep it under {MAX_TEMPLATE_LENGTH} characters.")
    return problems


def preview_template(template: str, unit_price: Decimal = UNIT_PRICE) -> TemplatePreview:
    """Render *template* with sample values and price the result."""
    text = render_template(template, **_SAMPLE_VALUES)
    return TemplatePreview(
        text=text,
        char_count=len(text),
        cost=calculate_cost(text, unit_price=unit_price),
    )
