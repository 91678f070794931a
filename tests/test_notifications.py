"""Tests for progress milestones and best-effort email notifications."""

import smtplib
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (SRC, ROOT):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

import pytest

from prospect_miner.models import JobFilters, MiningJob
from prospect_miner.services.events import MILESTONE, EventBus
from prospect_miner.services.notifications import (
    MilestoneNotifier,
    reached_milestone,
    send_job_notification,
)


SMTP_ENV = {
    "SMTP_HOST": "smtp.example.com",
    "SMTP_PORT": "2525",
    "SMTP_USER": "miner@example.com",
    "SMTP_PASSWORD": "secret",
}


def make_job(found, target=100, notified=0):
    return MiningJob(
        name="Padarias",
        filters=JobFilters(segment="Padarias"),
        target_count=target,
        found_count=found,
        last_notification_milestone=notified,
    )


@pytest.mark.parametrize(
    "found,notified,expected",
    [
        (0, 0, None),
        (24, 0, None),
        (25, 0, 25),
        (60, 0, 50),
        (60, 50, None),
        (80, 50, 75),
        (150, 75, 100),
    ],
)
def test_reached_milestone(found, notified, expected):
    assert reached_milestone(make_job(found, notified=notified), step=25) == expected


def test_milestones_disabled_with_zero_step():
    assert reached_milestone(make_job(100), step=0) is None


def test_notifier_records_and_publishes():
    events = EventBus()
    seen = []
    events.subscribe(seen.append)
    notifier = MilestoneNotifier(events, step=25)
    job = make_job(30)

    with patch("prospect_miner.services.notifications.send_job_notification") as mock_send:
        milestone = notifier.check(job)
        assert milestone == 25
        assert notifier.check(job) is None
        # Recording alone tells nobody; announcing does.
        assert seen == []
        notifier.announce(job, milestone)

    assert job.last_notification_milestone == 25
    assert [(e.kind, e.data["milestone"]) for e in seen] == [(MILESTONE, 25)]
    mock_send.assert_not_called()


def test_notifier_emails_when_recipient_configured():
    notifier = MilestoneNotifier(EventBus(), step=50, to_email="ops@example.com")
    job = make_job(50)

    with patch("prospect_miner.services.notifications.send_job_notification") as mock_send:
        notifier.announce(job, notifier.check(job))

    kwargs = mock_send.call_args[1]
    assert kwargs["job_id"] == job.id
    assert kwargs["to_email"] == "ops@example.com"
    assert "50%" in kwargs["subject"]


def test_send_skips_when_not_configured(monkeypatch):
    for key in list(SMTP_ENV) + ["EMAIL_FROM"]:
        monkeypatch.delenv(key, raising=False)
    with patch("prospect_miner.services.notifications.smtplib.SMTP") as mock_smtp:
        assert send_job_notification(job_id="job-1", subject="s", body="b", to_email="ops@example.com") is False
    mock_smtp.assert_not_called()


def test_send_uses_smtp(monkeypatch):
    for key, value in SMTP_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("EMAIL_FROM", raising=False)

    smtp = MagicMock()
    with patch("prospect_miner.services.notifications.smtplib.SMTP") as mock_smtp:
        mock_smtp.return_value.__enter__.return_value = smtp
        assert send_job_notification(job_id="job-1", subject="Done", body="b", to_email="ops@example.com") is True

    mock_smtp.assert_called_once_with("smtp.example.com", 2525, timeout=10)
    smtp.login.assert_called_once_with("miner@example.com", "secret")
    message = smtp.send_message.call_args[0][0]
    assert message["To"] == "ops@example.com"
    assert message["From"] == "miner@example.com"


def test_send_fails_open_on_smtp_error(monkeypatch):
    for key, value in SMTP_ENV.items():
        monkeypatch.setenv(key, value)

    with patch("prospect_miner.services.notifications.smtplib.SMTP", side_effect=smtplib.SMTPException("refused")):
        assert send_job_notification(job_id="job-1", subject="s", body="b", to_email="ops@example.com") is False
