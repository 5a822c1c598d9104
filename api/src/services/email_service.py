"""
Subscription email service.

Renders the subscription templates with Jinja2 and sends them through the
Resend HTTP API. Sending is best effort: failures are logged and counted,
never raised, so a mail outage cannot fail a webhook.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from api.src.config import Settings, get_settings
from shared.metrics import get_billing_metrics
from shared.utils import RetryConfig, call_with_retry

logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

NEW = "new"
UPDATED = "updated"
CANCELED = "canceled"

# kind -> template file
TEMPLATES = {
    NEW: "new_subscription.html",
    UPDATED: "subscription_updated.html",
    CANCELED: "subscription_canceled.html",
}


def display_name(metadata: Optional[Mapping[str, Any]]) -> str:
    """Greeting name from user metadata: first name, last name, or ``Traveler``."""
    metadata = metadata or {}
    return metadata.get("first_name") or metadata.get("last_name") or "Traveler"


def subject_for(kind: str, plan_name: str) -> str:
    if kind == NEW:
        return f"Welcome to Your {plan_name} Journey with ZapAround!"
    if kind == UPDATED:
        return "Your ZapAround Subscription Has Been Updated"
    if kind == CANCELED:
        return "Your ZapAround Subscription Has Been Canceled"
    raise ValueError(f"Unknown email kind: {kind}")


class SubscriptionEmailService:
    """Sends new, updated and canceled subscription emails."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        template_dir: Path = TEMPLATE_DIR
    ):
        """
        Initialize the email service.

        Args:
            settings: Application settings (Resend key, sender, site URL)
            client: Shared HTTP client; a per-call client is used when None
            template_dir: Directory holding the email templates
        """
        self.settings = settings or get_settings()
        self.client = client
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )
        self.retry_config = RetryConfig(max_attempts=self.settings.email_retry_attempts)
        self.metrics = get_billing_metrics()

    def render(
        self,
        kind: str,
        name: str,
        plan_name: str,
        yearly: bool = False,
        previous_plan: Optional[str] = None
    ) -> str:
        """Render the HTML body for an email kind."""
        template = self.env.get_template(TEMPLATES[kind])
        return template.render(
            name=name,
            plan_name=plan_name,
            yearly=yearly,
            previous_plan=previous_plan or "your previous plan",
            site_url=self.settings.site_url,
            year=datetime.now(timezone.utc).year,
        )

    async def send(
        self,
        kind: str,
        to: Optional[str],
        name: str,
        plan_name: str,
        yearly: bool = False,
        previous_plan: Optional[str] = None
    ) -> bool:
        """
        Send a subscription email.

        Args:
            kind: ``new``, ``updated`` or ``canceled``
            to: Recipient address
            name: Greeting name
            plan_name: Plan the email is about (the ended plan for ``canceled``)
            yearly: Whether the plan is billed yearly
            previous_plan: Plan before the change (``updated`` only)

        Returns:
            True if the provider accepted the email
        """
        if kind not in TEMPLATES:
            logger.error("email_unknown_kind", kind=kind)
            return False

        if not self.settings.email_enabled:
            logger.info("email_skipped_no_api_key", kind=kind)
            self.metrics.emails.labels(template=kind, outcome="skipped").inc()
            return False

        if not to:
            logger.info("email_skipped_no_recipient", kind=kind)
            self.metrics.emails.labels(template=kind, outcome="skipped").inc()
            return False

        try:
            payload = {
                "from": self.settings.email_from,
                "to": [to],
                "subject": subject_for(kind, plan_name),
                "html": self.render(kind, name, plan_name, yearly, previous_plan),
            }
            result = await call_with_retry(self._post, payload, config=self.retry_config)

            logger.info("email_sent", kind=kind, to=to, message_id=result.get("id"))
            self.metrics.emails.labels(template=kind, outcome="sent").inc()
            return True

        except Exception as e:
            logger.error("email_send_failed", kind=kind, to=to, error=str(e), error_type=type(e).__name__)
            self.metrics.emails.labels(template=kind, outcome="failed").inc()
            return False

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }

        if self.client is not None:
            response = await self.client.post(self.settings.resend_api_url, headers=headers, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.settings.email_timeout_seconds) as client:
                response = await client.post(self.settings.resend_api_url, headers=headers, json=payload)

        response.raise_for_status()
        return response.json()
