import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Optional

from prospect_miner.models import MiningJob
from prospect_miner.services.events import MILESTONE, EventBus, MiningEvent


logger = logging.getLogger(__name__)


def send_job_notification(
    *,
    job_id: str,
    subject: str,
    body: str,
    to_email: Optional[str] = None,
) -> bool:
    """Best-effort email notification for a mining job.

    Uses SMTP_* and EMAIL_FROM env vars when present.
    Fails open: logs and returns False on any error instead of raising.
    """

    host = os.getenv("SMTP_HOST")
    port_raw = os.getenv("SMTP_PORT", "587")
    user = os.getenv("SMTP_USER")
    password = os.getenv("SMTP_PASSWORD")
    from_email = os.getenv("EMAIL_FROM") or user
    recipient = to_email

    if not host or not user or not password or not from_email or not recipient:
        logger.info(
            "Email not sent for job %s; SMTP/recipient configuration incomplete",
            job_id,
        )
        return False

    try:
        port = int(port_raw)
    except ValueError:
        port = 587

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_email
    msg["To"] = recipient
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            try:
                smtp.starttls()
            except smtplib.SMTPException:
                logger.debug("STARTTLS unavailable on %s:%s; sending in clear", host, port)
            smtp.login(user, password)
            smtp.send_message(msg)
    except (OSError, smtplib.SMTPException) as exc:
        logger.warning(
            "Failed to send notification email for job %s: %s",
            job_id,
            exc,
        )
        return False

    logger.info(
        "Sent notification email for job %s to %s with subject=%r",
        job_id,
        recipient,
        subject,
    )
    return True


def reached_milestone(job: MiningJob, step: int) -> Optional[int]:
    """Highest progress milestone (percent) crossed but not yet notified."""

    if step <= 0 or job.target_count <= 0:
        return None
    percent = min(100, job.found_count * 100 // job.target_count)
    milestone = (percent // step) * step
    if milestone <= 0 or milestone <= job.last_notification_milestone:
        return None
    return milestone


class MilestoneNotifier:
    """Records progress milestones on jobs and tells observers about them."""

    def __init__(self, events: EventBus, step: int = 25, to_email: Optional[str] = None):
        self.events = events
        self.step = step
        self.to_email = to_email

    def check(self, job: MiningJob) -> Optional[int]:
        """Record a newly crossed milestone on ``job``; the caller persists it.

        Nothing is published here; pass the result to ``announce`` once the
        job is saved.
        """

        milestone = reached_milestone(job, self.step)
        if milestone is None:
            return None
        job.last_notification_milestone = milestone
        return milestone

    def announce(self, job: MiningJob, milestone: int) -> None:
        """Publish the milestone event and send the email, if configured. Blocking."""

        self.events.publish(
            MiningEvent(MILESTONE, job.id, {"milestone": milestone, "found": job.found_count})
        )
        if self.to_email:
            send_job_notification(
                job_id=job.id,
                subject=f"Mining job '{job.name}' reached {milestone}%",
                body=(
                    f"Job {job.id} ({job.name}) has found {job.found_count} of "
                    f"{job.target_count} leads after {job.pages_fetched} page(s)."
                ),
                to_email=self.to_email,
            )
