"""
Email Service - 订阅状态邮件通知

Sends billing emails through the Mailgun HTTP API. Delivery is best-effort:
every failure is logged and reported as False, nothing is raised to the
billing flow.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

import httpx

from FinalRound.config.settings import EmailConfig, get_settings
from FinalRound.infrastructure.http.base_client import BaseHTTPClient
from FinalRound.observability.logging import LogModule, get_module_logger

logger = get_module_logger(LogModule.NOTIFY)

BILLING_URL = "https://app.finalroundapp.com/dashboard#billing"

# template -> (subject, body); bodies are formatted with the template params
TEMPLATES: Dict[str, Tuple[str, str]] = {
    "subscription_activated": (
        "Welcome to FinalRound {planName}!",
        "Your {planName} subscription is now active.\n\n"
        "Your new limits are available right away.\n\n"
        "Manage your subscription: " + BILLING_URL,
    ),
    "subscription_cancelled": (
        "Your FinalRound subscription has been cancelled",
        "Your {planName} subscription has been cancelled.\n\n"
        "Your plan has been changed to Free.\n\n"
        "If you didn't cancel this subscription, please contact support immediately.\n"
        + BILLING_URL,
    ),
    "subscription_expired": (
        "Your FinalRound subscription has expired",
        "Your {planName} subscription has expired.\n\n"
        "Your plan has been changed to Free. You can resubscribe at any time:\n"
        + BILLING_URL,
    ),
    "subscription_suspended": (
        "Your FinalRound subscription has been suspended",
        "Your {planName} subscription has been suspended.\n\n"
        "Your plan has been changed to Free until the subscription is reactivated.\n"
        + BILLING_URL,
    ),
    "payment_failed": (
        "Payment failed for your FinalRound subscription",
        "We were unable to process the payment for your {planName} subscription.\n\n"
        "Your plan has been changed to Free. Please update your payment method "
        "to continue using premium features.\n" + BILLING_URL,
    ),
}


def render_template(template: str, params: Optional[Dict[str, str]] = None) -> Tuple[str, str]:
    if template not in TEMPLATES:
        raise KeyError(f"Unknown email template: {template}")
    values = {"planName": "your"}
    values.update(params or {})
    subject, body = TEMPLATES[template]
    return subject.format(**values), body.format(**values)


class EmailService(BaseHTTPClient):
    """Mailgun client (POST /v3/{domain}/messages)."""

    def __init__(
        self,
        config: Optional[EmailConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_settings().email
        super().__init__(
            timeout=self.config.timeout,
            retries=self.config.max_retries,
            transport=transport,
        )

    def _get_base_url(self) -> str:
        return self.config.base_url

    def _get_default_headers(self) -> Dict[str, str]:
        # form-encoded body; let httpx set the content type
        return {}

    async def send_template(self, to: str, template: str, params: Optional[Dict[str, str]] = None) -> bool:
        if not self.config.enabled:
            logger.debug("Mailgun not configured, skipping %s email", template)
            return False
        if not to:
            logger.warning("No recipient for %s email", template)
            return False

        subject, text = render_template(template, params)
        try:
            response = await self.apost(
                f"/v3/{self.config.domain}/messages",
                auth=("api", self.config.api_key),
                data={"from": self.config.sender, "to": to, "subject": subject, "text": text},
            )
        except httpx.HTTPError as e:
            logger.warning("Error sending %s email to %s: %s", template, to, e)
            return False

        if not response.is_success:
            logger.warning("Mailgun rejected %s email to %s: HTTP %s", template, to, response.status_code)
            return False

        logger.info("%s email sent to %s", template, to)
        return True
