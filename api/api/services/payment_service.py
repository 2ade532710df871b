"""Stripe integration for prepaid SMS balance top-ups.

Provides checkout-session creation for a one-off top-up and processing of
the verified ``checkout.session.completed`` webhook that credits the
account's balance.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from zeus_core.state.tables import AccountTable

from api.config import APISettings
from api.services.balance_ledger import BalanceLedger

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class PaymentService:
    """Stripe payment operations.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing Stripe configuration.
    """

    def __init__(self, session: AsyncSession, settings: APISettings) -> None:
        self._session = session
        self._settings = settings
        self._ledger = BalanceLedger(session)

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    def sms_credits_for(self, amount: Decimal) -> int:
        """Number of single-unit messages *amount* pays for."""
        return int((amount / self._settings.sms_unit_price).to_integral_value(rounding=ROUND_HALF_UP))

    async def create_topup_session(self, account: AccountTable, amount: Decimal) -> dict[str, str]:
        """Create a Stripe Checkout session for a one-off balance top-up.

        Parameters
        ----------
        account:
            The account being funded.
        amount:
            Top-up amount in the configured currency's major unit.

        Returns
        -------
        dict
            Contains ``session_id`` and ``checkout_url``.

        Raises
        ------
        ValueError
            If *amount* is below the configured minimum.
        """
        amount = Decimal(str(amount)).quantize(_CENT)
        minimum = self._settings.minimum_topup
        if amount < minimum:
            raise ValueError(f"Minimum top-up amount is ${minimum:.2f}")

        stripe = self._get_stripe()
        sms_credits = self.sms_credits_for(amount)
        unit_price = self._settings.sms_unit_price

        session_params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self._settings.stripe_currency,
                        "product_data": {
                            "name": f"SMS Credits - {sms_credits} messages",
                            "description": (
                                f"Add ${amount} to your SMS balance ({sms_credits} messages at ${unit_price} each)"
                            ),
                        },
                        "unit_amount": int(amount * 100),
                    },
                    "quantity": 1,
                }
            ],
            "metadata": {
                "userId": account.id,
                "creditAmount": str(amount),
                "smsCredits": str(sms_credits),
            },
            "success_url": self._settings.stripe_success_url,
            "cancel_url": self._settings.stripe_cancel_url,
        }
        if account.email:
            session_params["customer_email"] = account.email

        checkout_session = stripe.checkout.Session.create(**session_params)
        logger.info(
            "Created top-up checkout session %s account=%s amount=%s",
            checkout_session["id"],
            account.id,
            amount,
        )
        return {"session_id": checkout_session["id"], "checkout_url": checkout_session["url"]}

    async def handle_webhook_event(self, event: dict[str, Any]) -> dict[str, str]:
        """Process a verified Stripe webhook event.

        Only ``checkout.session.completed`` mutates state: the metadata's
        ``userId`` account is credited with ``creditAmount``.

        Returns
        -------
        dict
            Contains ``status`` indicating the processing result.

        Raises
        ------
        LookupError
            If the account named in the metadata does not exist.
        """
        event_type = event.get("type", "")
        if event_type != "checkout.session.completed":
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return {"status": "ignored"}

        data_object = event.get("data", {}).get("object", {}) or {}
        metadata = data_object.get("metadata", {}) or {}
        account_id = metadata.get("userId")
        raw_amount = metadata.get("creditAmount")

        if not account_id or raw_amount is None:
            logger.warning(
                "Stripe checkout %s completed without top-up metadata; skipping",
                data_object.get("id"),
            )
            return {"status": "ignored"}

        try:
            amount = Decimal(str(raw_amount)).quantize(_CENT)
        except (InvalidOperation, ValueError):
            logger.warning("Stripe checkout %s has invalid creditAmount=%r", data_object.get("id"), raw_amount)
            return {"status": "ignored"}
        if amount <= 0:
            logger.warning("Stripe checkout %s has non-positive creditAmount=%s", data_object.get("id"), amount)
            return {"status": "ignored"}

        new_balance = await self._ledger.credit(account_id, amount)
        logger.info(
            "Top-up credited: checkout=%s account=%s amount=%s balance=%s",
            data_object.get("id"),
            account_id,
            amount,
            new_balance,
        )
        return {"status": "processed"}
