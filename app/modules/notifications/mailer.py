"""Transactional email delivery for learner notifications."""

from __future__ import annotations

import logging
from decimal import Decimal
from html import escape
from typing import Protocol

import httpx

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class PurchaseNotifier(Protocol):
    """Notification collaborator used after a purchase is confirmed."""

    async def send_purchase_confirmation(
        self,
        learner_email: str,
        learner_name: str,
        program_name: str,
        amount: Decimal,
        currency: str,
    ) -> None:
        """Deliver purchase confirmation; raise on delivery failure."""


def render_purchase_confirmation(
    learner_name: str,
    program_name: str,
    amount: Decimal,
    currency: str,
    programs_url: str,
) -> tuple[str, str]:
    """Return (subject, html) for the purchase confirmation message."""
    subject = f"Payment confirmed: {program_name}"
    html = f"""
<!doctype html>
<html>
  <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
      <h2>Payment confirmed</h2>
      <p>Hi {escape(learner_name)},</p>
      <p>We received your payment of <strong>{escape(currency)} {amount:.2f}</strong>
        for <strong>{escape(program_name)}</strong>. You now have full access to the program.</p>
      <p><a href="{escape(programs_url)}">Continue learning</a></p>
    </div>
  </body>
</html>
"""
    return subject, html


class EmailNotifier:
    """Send notifications through a Resend-compatible HTTP email API."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    async def send_purchase_confirmation(
        self,
        learner_email: str,
        learner_name: str,
        program_name: str,
        amount: Decimal,
        currency: str,
    ) -> None:
        if not self.settings.email_api_key:
            logger.info("Email API key is not configured; skipping purchase email to %s", learner_email)
            return

        subject, html = render_purchase_confirmation(
            learner_name,
            program_name,
            amount,
            currency,
            programs_url=f"{self.settings.frontend_url}/programs",
        )
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            response = await client.post(
                self.settings.email_api_url,
                headers={"Authorization": f"Bearer {self.settings.email_api_key}"},
                json={
                    "from": self.settings.email_from,
                    "to": [learner_email],
                    "subject": subject,
                    "html": html,
                },
            )
        response.raise_for_status()
        logger.info("Purchase confirmation email sent to %s", learner_email)


def get_purchase_notifier() -> PurchaseNotifier:
    """Return notifier for configured email provider."""
    return EmailNotifier(get_settings())
