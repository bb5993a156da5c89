"""
Notification delivery.

Each channel is a small object with an async `send(message)`; `Notifier` fans a
message out to all of a user's channels. Delivery failures are logged and
never propagate into the monitoring loop.
"""

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.mime.text import MIMEText
from typing import List, Optional, Protocol, Sequence

import aiohttp
from telegram import Bot
from telegram.error import TelegramError

from .config import Settings
from .credentials import SecretBox
from .errors import DeliveryFailed
from .models import NotificationSettings, SeatCount, SectionRef

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "[WebReg Monitor]"
WEBHOOK_USERNAME = "WebReg Monitor"


@dataclass(frozen=True)
class Message:
    subject: str
    body: str


class Channel(Protocol):
    name: str

    async def send(self, message: Message) -> None:
        ...


class EmailChannel:
    name = "email"

    def __init__(
        self,
        sender: str,
        password: str,
        recipients: Sequence[str],
        server: str = "smtp.gmail.com",
        port: int = 587,
        timeout: float = 30.0,
    ):
        self.sender = sender
        self.password = password
        self.recipients = list(recipients)
        self.server = server
        self.port = port
        self.timeout = timeout

    def _deliver(self, message: Message) -> None:
        mime = MIMEText(message.body, "plain", "utf-8")
        mime["Subject"] = f"{SUBJECT_PREFIX} {message.subject}"
        mime["From"] = f"{WEBHOOK_USERNAME} <{self.sender}>"
        mime["To"] = ", ".join(self.recipients)
        with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            smtp.login(self.sender, self.password)
            smtp.sendmail(self.sender, self.recipients, mime.as_string())

    async def send(self, message: Message) -> None:
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryFailed(f"email: {exc}") from exc
        logger.info("Email sent to %s", ", ".join(self.recipients))


class WebhookChannel:
    """Discord-style JSON webhook."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def send(self, message: Message) -> None:
        payload = {
            "content": f"**{message.subject}**\n{message.body}",
            "username": WEBHOOK_USERNAME,
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.url, json=payload) as resp:
                    if resp.status >= 400:
                        raise DeliveryFailed(f"webhook: HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryFailed(f"webhook: {exc}") from exc
        logger.info("Webhook message sent")


class TelegramChannel:
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str):
        self.bot_token = bot_token
        self.chat_id = chat_id

    async def send(self, message: Message) -> None:
        try:
            async with Bot(self.bot_token) as bot:
                await bot.send_message(
                    chat_id=self.chat_id,
                    text=f"{message.subject}\n\n{message.body}",
                    disable_web_page_preview=True,
                )
        except TelegramError as exc:
            raise DeliveryFailed(f"telegram: {exc}") from exc
        logger.info("Telegram message sent to chat %s", self.chat_id)


class Notifier:
    def __init__(self, channels: Optional[List[Channel]] = None):
        self.channels: List[Channel] = list(channels or [])

    async def notify(self, message: Message) -> int:
        """Send to every channel; returns how many deliveries succeeded."""
        if not self.channels:
            logger.info("No notification channels configured; dropping %r", message.subject)
            return 0
        results = await asyncio.gather(
            *(channel.send(message) for channel in self.channels), return_exceptions=True
        )
        delivered = 0
        for channel, result in zip(self.channels, results):
            if isinstance(result, BaseException):
                logger.warning("Notification via %s failed: %s", channel.name, result)
            else:
                delivered += 1
        return delivered


def build_notifier(
    prefs: Optional[NotificationSettings], settings: Settings, box: SecretBox
) -> Notifier:
    """Assemble the channels a user has configured."""
    channels: List[Channel] = []
    if prefs is None:
        return Notifier(channels)
    if prefs.email_recipients and prefs.smtp_sender and prefs.smtp_password_sealed:
        channels.append(
            EmailChannel(
                prefs.smtp_sender,
                box.open(prefs.smtp_password_sealed),
                prefs.email_recipients,
                server=settings.smtp_server,
                port=settings.smtp_port,
                timeout=settings.call_timeout,
            )
        )
    if prefs.webhook_url:
        channels.append(WebhookChannel(prefs.webhook_url))
    if prefs.telegram_chat_id:
        if settings.telegram_bot_token:
            channels.append(TelegramChannel(settings.telegram_bot_token, prefs.telegram_chat_id))
        else:
            logger.warning("Telegram chat configured but TELEGRAM_BOT_TOKEN is not set")
    return Notifier(channels)


def _stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def enrolled(section: SectionRef, seat: Optional[SeatCount] = None) -> Message:
    seats = f" ({seat.available}/{seat.total} seats were open)" if seat else ""
    return Message(
        f"Enrolled in {section}",
        f"Successfully enrolled in {section}{seats}!\n\nTime: {_stamp()}\n"
        "Please verify on WebReg.",
    )


def enrollment_failed(section: SectionRef, error: BaseException) -> Message:
    return Message(
        f"Enrollment failed for {section}",
        f"Failed to enroll in {section} despite available seats.\n\n"
        f"Reason: {error}\nTime: {_stamp()}\nPlease check WebReg manually.",
    )


def group_complete(course_label: str, members: Sequence[str]) -> Message:
    return Message(
        f"{course_label} complete",
        f"All sections of {course_label} ({', '.join(members)}) are enrolled.\n"
        f"Time: {_stamp()}",
    )


def all_enrolled(job_id: str) -> Message:
    return Message(
        "All targets enrolled",
        f"Every section of job {job_id} is enrolled; monitoring has stopped.\n"
        f"Time: {_stamp()}",
    )


def session_expired(job_id: str, error: BaseException) -> Message:
    return Message(
        "Session expired",
        f"The WebReg session for job {job_id} could not be refreshed: {error}\n"
        f"Time: {_stamp()}\nPlease update the session cookie to resume monitoring.",
    )
