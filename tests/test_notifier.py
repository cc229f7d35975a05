"""
Tests for the Slack webhook notifier.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from slack_sdk.errors import SlackClientError

from reposync.engine import build_notification
from reposync.models import Classification, RunResult
from reposync.notifier import LogNotifier, SlackWebhookNotifier, build_slack_attachment
from reposync.utils import NotificationError


def _result(**overrides):
    now = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)
    values = dict(
        project_id="docs",
        incremental=True,
        start_time=now,
        end_time=now,
        duration_seconds=12.34,
        repositories_scanned=4,
        files_changed=10,
        files_processed=8,
        embeddings_generated=40,
        vectors_deleted=6,
    )
    values.update(overrides)
    return RunResult(**values)


class StubWebhook:
    def __init__(self, status_code=200, error=None):
        self.status_code = status_code
        self.error = error
        self.sent = []

    def send(self, **kwargs):
        if self.error:
            raise self.error
        self.sent.append(kwargs)
        return SimpleNamespace(status_code=self.status_code, body="ok" if self.status_code == 200 else "no")


class TestSlackAttachment:
    def test_success_attachment(self):
        attachment = build_slack_attachment(build_notification(_result()))

        assert attachment["color"] == "good"
        assert attachment["title"].endswith("RepoSync Update")
        assert attachment["text"] == "Processed 8 files, generated 40 embeddings in 12.3s"
        fields = {f["title"]: f["value"] for f in attachment["fields"]}
        assert fields["Project"] == "docs"
        assert fields["Repositories"] == "4"
        assert fields["Files Processed"] == "8 / 10"
        assert fields["Vectors Deleted"] == "6"
        assert "Errors" not in fields
        assert attachment["footer"] == "RepoSync"

    def test_warning_attachment(self):
        payload = build_notification(_result(warnings=("Failed to process acme/docs/a.md: boom", "other")))
        attachment = build_slack_attachment(payload)

        assert payload.classification == Classification.WARNING
        assert attachment["color"] == "warning"
        fields = {f["title"]: f["value"] for f in attachment["fields"]}
        assert "acme/docs/a.md" in fields["Warnings (2)"]

    def test_error_attachment(self):
        payload = build_notification(_result(errors=("Project not found: docs",), success=False))
        attachment = build_slack_attachment(payload)

        assert attachment["color"] == "danger"
        assert attachment["title"].endswith("RepoSync Failed")
        assert attachment["text"] == "Project not found: docs"


class TestSlackWebhookNotifier:
    def test_sends_attachment(self):
        webhook = StubWebhook()
        notifier = SlackWebhookNotifier("https://hooks.slack.test/x", client=webhook)

        notifier.notify(build_notification(_result()))

        (message,) = webhook.sent
        assert message["text"] == "RepoSync Update"
        assert message["attachments"][0]["color"] == "good"

    def test_non_200_raises(self):
        notifier = SlackWebhookNotifier("https://hooks.slack.test/x", client=StubWebhook(status_code=500))

        with pytest.raises(NotificationError):
            notifier.notify(build_notification(_result()))

    def test_client_error_raises(self):
        webhook = StubWebhook(error=SlackClientError("connection reset"))
        notifier = SlackWebhookNotifier("https://hooks.slack.test/x", client=webhook)

        with pytest.raises(NotificationError):
            notifier.notify(build_notification(_result()))


class TestLogNotifier:
    def test_logs_without_raising(self):
        LogNotifier().notify(build_notification(_result(errors=("boom",), success=False)))
