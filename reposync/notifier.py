"""
Run summary notifiers.

- SlackWebhookNotifier posts an attachment to a Slack incoming webhook.
- LogNotifier writes the summary to the log, used when no webhook is set.
"""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger
from slack_sdk.errors import SlackClientError
from slack_sdk.webhook import WebhookClient

from .models import Classification, NotificationPayload
from .utils import NotificationError


# classification → (attachment color, emoji)
STYLES = {
    Classification.SUCCESS: ("good", ":white_check_mark:"),
    Classification.WARNING: ("warning", ":warning:"),
    Classification.ERROR: ("danger", ":x:"),
}


def build_slack_attachment(payload: NotificationPayload) -> dict[str, Any]:
    """Format a run summary as a Slack message attachment."""
    color, emoji = STYLES.get(payload.classification, ("#439FE0", ":information_source:"))
    result = payload.result

    fields = [
        {"title": "Project", "value": result.project_id, "short": True},
        {"title": "Duration", "value": f"{result.duration_seconds:.1f}s", "short": True},
        {"title": "Repositories", "value": str(result.repositories_scanned), "short": True},
        {
            "title": "Files Processed",
            "value": f"{result.files_processed} / {result.files_changed}",
            "short": True,
        },
        {"title": "Embeddings Generated", "value": str(result.embeddings_generated), "short": True},
        {"title": "Vectors Deleted", "value": str(result.vectors_deleted), "short": True},
    ]

    if result.errors:
        fields.append({"title": "Errors", "value": f"```{result.errors[0]}```", "short": False})
    if result.warnings:
        fields.append({
            "title": f"Warnings ({len(result.warnings)})",
            "value": f"```{result.warnings[0]}```",
            "short": False,
        })

    return {
        "color": color,
        "title": f"{emoji} {payload.title}",
        "text": payload.message,
        "fields": fields,
        "footer": "RepoSync",
        "footer_icon": "https://github.com/favicon.ico",
        "ts": int(result.end_time.timestamp()),
    }


class SlackWebhookNotifier:
    """Posts run summaries to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, timeout: int = 10, client: Optional[WebhookClient] = None):
        self.webhook_url = webhook_url
        self._client = client or WebhookClient(webhook_url, timeout=timeout)

    def notify(self, payload: NotificationPayload) -> None:
        """
        Send one summary.

        Raises:
            NotificationError: If Slack did not accept the message.
        """
        try:
            response = self._client.send(
                text=payload.title,
                attachments=[build_slack_attachment(payload)],
            )
        except SlackClientError as e:
            raise NotificationError(f"Failed to send Slack notification: {e}") from e

        if response.status_code != 200:
            raise NotificationError(
                f"Slack webhook returned {response.status_code}: {response.body}"
            )
        logger.info("Slack notification sent successfully")


class LogNotifier:
    """Writes run summaries to the log."""

    def notify(self, payload: NotificationPayload) -> None:
        level = {
            Classification.SUCCESS: "INFO",
            Classification.WARNING: "WARNING",
            Classification.ERROR: "ERROR",
        }[payload.classification]
        logger.log(level, f"{payload.title}: {payload.message}")
