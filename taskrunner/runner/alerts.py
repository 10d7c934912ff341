"""
Run notifications.

Supports a generic JSON webhook, Slack incoming webhooks and email.
Notifiers raise NotifierError when delivery fails; the executor logs it and
moves on, so a broken notification channel never fails a job run.
"""

import smtplib
import logging
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, Iterable, List, Optional

import requests

from taskrunner.errors import NotifierError
from taskrunner.models import RunRecord, RunStatus


logger = logging.getLogger("taskrunner.alerts")

STATUS_COLORS = {
    RunStatus.SUCCESS: '#22c55e',
    RunStatus.FAILED: '#dc3545',
    RunStatus.TIMED_OUT: '#f59e0b',
    RunStatus.SKIPPED_OVERLAP: '#3b82f6',
}

STATUS_EMOJI = {
    RunStatus.SUCCESS: ':white_check_mark:',
    RunStatus.FAILED: ':x:',
    RunStatus.TIMED_OUT: ':hourglass:',
    RunStatus.SKIPPED_OVERLAP: ':fast_forward:',
}


def webhook_payload(record: RunRecord) -> Dict[str, Any]:
    """Payload posted to the generic webhook."""
    payload = {
        'job_name': record.job_name,
        'status': record.status.value,
        'started_at': record.started_at.isoformat(),
        'duration_ms': record.duration_ms,
    }
    if record.error_message:
        payload['error_message'] = record.error_message
    return payload


class Notifier(ABC):
    """Receives every finished run record the notify policy lets through."""

    name = 'notifier'

    @abstractmethod
    def notify(self, record: RunRecord) -> None:
        """Deliver the record. Raise NotifierError if that fails."""


class WebhookNotifier(Notifier):
    """POST a JSON summary of the run to a URL."""

    name = 'webhook'

    def __init__(self, url: str, timeout: float = 10, session: requests.Session = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, record: RunRecord) -> None:
        try:
            response = self.session.post(
                self.url,
                json=webhook_payload(record),
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise NotifierError(f"Webhook {self.url} unreachable: {e}") from e

        if response.status_code >= 400:
            raise NotifierError(f"Webhook {self.url} returned {response.status_code}")
        logger.debug(f"Webhook notified for job '{record.job_name}' ({record.status.value})")


class SlackNotifier(Notifier):
    """Post a formatted message to a Slack incoming webhook."""

    name = 'slack'

    def __init__(self, webhook_url: str, timeout: float = 30):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def build_payload(self, record: RunRecord) -> Dict[str, Any]:
        emoji = STATUS_EMOJI[record.status]
        status = record.status.value.replace('_', ' ')
        fields = [
            {
                "title": "Status",
                "value": status,
                "short": True
            },
            {
                "title": "Attempts",
                "value": str(record.attempt_count),
                "short": True
            },
            {
                "title": "Started",
                "value": record.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                "short": True
            },
            {
                "title": "Duration",
                "value": f"{record.duration_ms / 1000:.2f}s",
                "short": True
            },
        ]
        if record.error_message:
            fields.append({
                "title": "Error",
                "value": f"```{record.error_message[:500]}```",
                "short": False
            })

        return {
            "text": f"{emoji} *Job {status}: {record.job_name}*",
            "attachments": [
                {
                    "color": STATUS_COLORS[record.status],
                    "fields": fields
                }
            ]
        }

    def notify(self, record: RunRecord) -> None:
        try:
            response = requests.post(
                self.webhook_url,
                json=self.build_payload(record),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise NotifierError(f"Slack webhook unreachable: {e}") from e

        if response.status_code != 200:
            raise NotifierError(f"Slack webhook returned {response.status_code}: {response.text[:200]}")
        logger.info(f"Slack notification sent for job '{record.job_name}'")


class EmailNotifier(Notifier):
    """Send an HTML summary over SMTP with SSL."""

    name = 'email'

    def __init__(
        self,
        recipient: str,
        user: str,
        password: str,
        host: str = 'smtp.gmail.com',
        port: int = 465
    ):
        self.recipient = recipient
        self.user = user
        self.password = password
        self.host = host
        self.port = port

    def build_message(self, record: RunRecord) -> MIMEMultipart:
        status = record.status.value.replace('_', ' ')
        msg = MIMEMultipart('alternative')
        msg['Subject'] = f"[taskrunner] Job {status}: {record.job_name}"
        msg['From'] = self.user
        msg['To'] = self.recipient

        error_block = ''
        if record.error_message:
            error_block = f"""
                <div style="background: #f6f6f6; border-radius: 8px; padding: 16px; margin-bottom: 20px;">
                    <h3 style="margin: 0 0 10px 0; font-size: 14px;">Error</h3>
                    <pre style="margin: 0; font-size: 12px; white-space: pre-wrap;">{record.error_message[:1000]}</pre>
                </div>
            """

        html = f"""
        <html>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; padding: 30px;">
            <div style="max-width: 600px; margin: 0 auto;">
                <h1 style="color: {STATUS_COLORS[record.status]}; font-size: 20px;">Job {status}: {record.job_name}</h1>
                <p>Started: {record.started_at.strftime("%Y-%m-%d %H:%M:%S")}<br>
                   Duration: {record.duration_ms / 1000:.2f}s<br>
                   Attempts: {record.attempt_count}</p>
                {error_block}
            </div>
        </body>
        </html>
        """
        msg.attach(MIMEText(html, 'html'))
        return msg

    def notify(self, record: RunRecord) -> None:
        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=30) as server:
                server.login(self.user, self.password)
                server.send_message(self.build_message(record))
        except (smtplib.SMTPException, OSError) as e:
            raise NotifierError(f"Failed to send email to {self.recipient}: {e}") from e
        logger.info(f"Email notification sent for job '{record.job_name}' to {self.recipient}")


class CompositeNotifier(Notifier):
    """Fan out to several channels. One failing channel doesn't stop the rest."""

    name = 'composite'

    def __init__(self, notifiers: Iterable[Notifier]):
        self.notifiers: List[Notifier] = list(notifiers)

    def notify(self, record: RunRecord) -> None:
        errors = []
        for notifier in self.notifiers:
            try:
                notifier.notify(record)
            except NotifierError as e:
                logger.warning(f"{notifier.name} notification failed: {e}")
                errors.append(f"{notifier.name}: {e}")
        if errors:
            raise NotifierError("; ".join(errors))


def build_notifier(settings) -> Optional[Notifier]:
    """
    Build the notifier for the configured channels.

    Returns:
        None when no channel is configured
    """
    notifiers: List[Notifier] = []

    if settings.webhook_url:
        notifiers.append(WebhookNotifier(settings.webhook_url))

    if settings.slack_webhook_url:
        notifiers.append(SlackNotifier(settings.slack_webhook_url))

    email_settings = [settings.alert_email_recipient, settings.smtp_user, settings.smtp_password]
    if all(email_settings):
        notifiers.append(EmailNotifier(
            recipient=settings.alert_email_recipient,
            user=settings.smtp_user,
            password=settings.smtp_password,
            host=settings.smtp_host,
            port=settings.smtp_port
        ))
    elif any(email_settings):
        logger.warning("Email configuration incomplete - email notifications disabled")

    if not notifiers:
        return None
    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)
