# backend/marketsync/services/notifications.py
"""
Failed-run notifications.

When a cron-triggered ingestion run fails, a Slack-compatible message is
posted to ERROR_WEBHOOK_URL. Delivery is best effort: every failure is
logged and swallowed so a broken webhook never masks the run result.
"""

import logging

import httpx

from marketsync.services.ingestion.types import IngestionRun

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 5.0


def build_failure_payload(run: IngestionRun, app_name: str) -> dict:
    """Slack "blocks" message describing a failed run."""
    error = run.error.message if run.error else "unknown error"
    kind = run.error.kind if run.error else "Unknown"
    duration = f"{run.duration_seconds:.0f}s" if run.duration_seconds is not None else "N/A"

    return {
        "text": f"Ingestion run failed - {app_name}",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Ingestion run failed"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Run:* {run.run_id}"},
                    {"type": "mrkdwn", "text": f"*Trigger:* {run.trigger.value}"},
                    {"type": "mrkdwn", "text": f"*Started:* {run.started_at.isoformat()}"},
                    {"type": "mrkdwn", "text": f"*Duration:* {duration}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:* `{kind}: {error}`"},
            },
        ],
    }


class ErrorNotifier:
    """
    Posts failed-run messages to a webhook.

    Args:
        webhook_url: Target URL; None disables notifications
        app_name: Shown in the message text
        timeout: HTTP timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
            self,
            webhook_url: str | None,
            app_name: str = "Market Data Sync",
            timeout: float = WEBHOOK_TIMEOUT_SECONDS,
            transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._app_name = app_name
        self._timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    def notify_failed_run(self, run: IngestionRun) -> bool:
        """
        Send the failure message for `run`.

        Returns:
            True if the webhook accepted the message, False otherwise
        """
        if not self.enabled:
            logger.info("ERROR_WEBHOOK_URL not configured - failure notification not sent")
            return False

        payload = build_failure_payload(run, self._app_name)

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self._webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Failure notification for {run.run_id} not delivered: {type(e).__name__}")
            return False

        if response.is_success:
            logger.info(f"Failure notification sent for {run.run_id}")
            return True

        logger.error(f"Failure notification for {run.run_id} rejected: HTTP {response.status_code}")
        return False
