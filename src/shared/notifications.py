"""
Notification channels for Touchline Core alerts.

Each channel delivers a NotificationPayload to one destination. ``send``
returns True when the destination accepted the notification and False when
it rejected it; transport failures raise ChannelDeliveryError. Retries and
timeouts are applied by the alert engine, not here.
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from .errors import ChannelDeliveryError, ConfigurationError
from .logging_config import get_logger


@dataclass
class NotificationPayload:
    """What a channel delivers for one alert event."""
    title: str
    severity: str
    message: str
    alert_id: str
    event: str = "triggered"  # triggered, escalated, resolved or test
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data


class NotificationChannel(ABC):
    """A destination for alert notifications."""

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(__name__, f'channel.{name}')

    async def start(self) -> None:
        """Acquire transport resources."""

    async def close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> bool:
        """Deliver a payload. Raises ChannelDeliveryError on transport failure."""


class _HTTPChannel(NotificationChannel):
    """Base for channels posting JSON over aiohttp."""

    def __init__(self, name: str, url: str, headers: Optional[Dict[str, str]] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        super().__init__(name)
        self.url = url
        self.headers = dict(headers or {})
        self.session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    @abstractmethod
    def build_body(self, payload: NotificationPayload) -> Dict[str, Any]:
        """JSON body posted for a payload."""

    async def send(self, payload: NotificationPayload) -> bool:
        if self.session is None:
            await self.start()

        headers = {**self.headers, 'Content-Type': 'application/json'}
        try:
            async with self.session.post(self.url, json=self.build_body(payload), headers=headers) as response:
                accepted = 200 <= response.status < 300
        except aiohttp.ClientError as e:
            raise ChannelDeliveryError(self.name, f"POST to {self.url} failed: {e}") from e

        if not accepted:
            self.logger.warning(
                f"Notification rejected by {self.name}",
                operation="send",
                status=response.status,
                alert_id=payload.alert_id,
            )
        return accepted


class WebhookChannel(_HTTPChannel):
    """Generic JSON webhook."""

    def build_body(self, payload: NotificationPayload) -> Dict[str, Any]:
        return {
            'alert': payload.to_dict(),
            'timestamp': datetime.utcnow().isoformat(),
            'source': 'touchline-alerting',
        }


class ChatWebhookChannel(_HTTPChannel):
    """Chat incoming-webhook with a colored attachment."""

    COLORS = {
        'info': '#36a64f',
        'warning': '#ff9500',
        'critical': '#8b0000',
    }

    def build_body(self, payload: NotificationPayload) -> Dict[str, Any]:
        fields = [
            {'title': 'Severity', 'value': payload.severity.upper(), 'short': True},
            {'title': 'Event', 'value': payload.event, 'short': True},
        ]
        for key, value in payload.metadata.items():
            fields.append({'title': key.replace('_', ' ').title(), 'value': str(value), 'short': True})
        fields.append({'title': 'Alert ID', 'value': payload.alert_id, 'short': False})

        return {
            'attachments': [{
                'color': self.COLORS.get(payload.severity, '#ff0000'),
                'title': payload.title,
                'text': payload.message,
                'fields': fields,
                'ts': int(payload.created_at.timestamp()),
            }]
        }


class EmailChannel(NotificationChannel):
    """SMTP email, sent from a worker thread."""

    def __init__(
        self,
        name: str,
        from_email: str,
        to_emails: List[str],
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ):
        super().__init__(name)
        self.from_email = from_email
        self.to_emails = list(to_emails)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(self, payload: NotificationPayload) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg['From'] = self.from_email
        msg['To'] = ', '.join(self.to_emails)
        msg['Subject'] = f"[{payload.severity.upper()}] {payload.title}"

        lines = [
            f"Alert: {payload.title}",
            f"Severity: {payload.severity.upper()}",
            f"Event: {payload.event}",
            f"Message: {payload.message}",
        ]
        lines.extend(f"{key}: {value}" for key, value in payload.metadata.items())
        lines.extend(["", f"Alert ID: {payload.alert_id}", f"Sent: {payload.created_at.isoformat()}"])

        msg.attach(MIMEText("\n".join(lines), 'plain'))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, payload: NotificationPayload) -> bool:
        msg = self.build_message(payload)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelDeliveryError(self.name, f"SMTP delivery failed: {e}") from e
        return True


class LogChannel(NotificationChannel):
    """Writes notifications to the application log."""

    async def send(self, payload: NotificationPayload) -> bool:
        log = {
            'critical': self.logger.error,
            'warning': self.logger.warning,
        }.get(payload.severity, self.logger.info)
        log(
            f"[{payload.severity.upper()}] {payload.title}: {payload.message}",
            operation="notify",
            alert_id=payload.alert_id,
            event=payload.event,
        )
        return True


def build_channels(configs: Iterable, session: Optional[aiohttp.ClientSession] = None) -> Dict[str, NotificationChannel]:
    """
    Create channels from ChannelSettings.

    Disabled channels are skipped. Raises ConfigurationError on duplicate names.
    """
    channels: Dict[str, NotificationChannel] = {}
    for config in configs:
        if not config.enabled:
            continue
        if config.name in channels:
            raise ConfigurationError(f"Duplicate notification channel: {config.name}")

        if config.type == "webhook":
            channel = WebhookChannel(config.name, config.url, config.headers, session=session)
        elif config.type == "chat_webhook":
            channel = ChatWebhookChannel(config.name, config.url, config.headers, session=session)
        elif config.type == "email":
            channel = EmailChannel(
                config.name,
                from_email=config.from_email,
                to_emails=config.to_emails,
                smtp_host=config.smtp_host,
                smtp_port=config.smtp_port,
                username=config.username,
                password=config.password,
                use_tls=config.use_tls,
            )
        elif config.type == "log":
            channel = LogChannel(config.name)
        else:
            raise ConfigurationError(f"Unsupported channel type: {config.type}")

        channels[config.name] = channel
    return channels
