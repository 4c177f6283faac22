"""
Notification sink for emails categorized as Interested.

Posts a Slack incoming-webhook message and an external webhook event.
Delivery is best-effort: failures are logged and never raised.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from onebox.core.email.models import Email, utcnow

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200
WEBHOOK_EVENT = "email.interested"


class NotificationService:
    """Slack + external webhook fan-out"""

    def __init__(self,
                 slack_webhook_url: Optional[str] = None,
                 external_webhook_url: Optional[str] = None,
                 timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            slack_webhook_url: Slack incoming webhook (skipped if unset)
            external_webhook_url: Endpoint receiving JSON events (skipped if unset)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.slack_webhook_url = slack_webhook_url
        self.external_webhook_url = external_webhook_url
        self.timeout = timeout
        self._transport = transport

        self.sent = 0
        self.failed = 0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def notify(self, email: Email) -> None:
        """Send every configured notification for one email. Never raises."""
        await asyncio.gather(
            self.send_slack_notification(email),
            self.trigger_webhook(email),
        )

    async def send_slack_notification(self, email: Email) -> bool:
        if not self.slack_webhook_url:
            logger.warning("Slack webhook not configured")
            return False
        return await self._post(self.slack_webhook_url, build_slack_message(email), "Slack notification", email)

    async def trigger_webhook(self, email: Email) -> bool:
        if not self.external_webhook_url:
            logger.warning("External webhook URL not configured")
            return False
        return await self._post(self.external_webhook_url, build_webhook_payload(email), "Webhook", email)

    async def _post(self, url: str, payload: Dict[str, Any], label: str, email: Email) -> bool:
        try:
            async with self._client() as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self.failed += 1
            logger.error(f"{label} for email {email.id} rejected: {e.response.status_code} {e.response.text[:200]}")
            return False
        except httpx.HTTPError as e:
            self.failed += 1
            logger.error(f"Error sending {label.lower()} for email {email.id}: {e}")
            return False

        self.sent += 1
        logger.info(f"{label} sent for email: {email.id}")
        return True


def _preview(body: str) -> str:
    body = body or ""
    if len(body) > PREVIEW_CHARS:
        return body[:PREVIEW_CHARS] + "..."
    return body


def build_slack_message(email: Email) -> Dict[str, Any]:
    sender = email.sender.name or email.sender.address
    return {
        "text": "New Interested Email Received!",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "New Interested Email", "emoji": True},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*From:*\n{sender}"},
                    {"type": "mrkdwn", "text": f"*Account:*\n{email.account}"},
                    {"type": "mrkdwn", "text": f"*Subject:*\n{email.subject}"},
                    {"type": "mrkdwn", "text": f"*Date:*\n{email.date:%Y-%m-%d %H:%M %Z}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Preview:*\n{_preview(email.body)}"},
            },
            {"type": "divider"},
        ],
    }


def build_webhook_payload(email: Email) -> Dict[str, Any]:
    return {
        "event": WEBHOOK_EVENT,
        "timestamp": utcnow().isoformat(),
        "email": email.model_dump(
            mode="json",
            include={"id", "sender", "to", "subject", "body", "date", "account", "category"},
        ),
    }
