"""Email notifiers that deliver OTP codes to their recipients.

Every notifier implements `send(identity, code)` and reports the result as a
`DeliveryReport`, so the caller can tell a failed delivery apart from a
service that was never configured to send mail.
"""

import abc
import enum
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import anyio
import httpx
import structlog

from app.core.config import Settings

logger = structlog.get_logger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    MISCONFIGURED = "misconfigured"


@dataclass(frozen=True)
class DeliveryReport:
    status: DeliveryStatus
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is DeliveryStatus.SENT


SENT = DeliveryReport(DeliveryStatus.SENT)


@dataclass(frozen=True)
class OTPEmail:
    subject: str
    text: str
    html: str


def render_otp_email(otp_code: str, expire_seconds: int) -> OTPEmail:
    """Build the subject and bodies of the verification email."""
    minutes = expire_seconds // 60
    text = f"Your OTP code is: {otp_code}. It expires in {minutes} minutes."
    html = f"""
    <div>
        <h2>Email verification code</h2>
        <p>Use the following one-time code to verify your email address:</p>
        <h3 style="color: #2563eb; font-size: 24px; text-align: center;">{otp_code}</h3>
        <p>The code expires in {minutes} minutes.</p>
        <p>If you did not request this code you can ignore this email.</p>
    </div>
    """
    return OTPEmail(subject="Your OTP Verification Code", text=text, html=html)


class Notifier(abc.ABC):
    """Delivers a plaintext OTP to the owner of an identity."""

    def __init__(self, expire_seconds: int):
        self.expire_seconds = expire_seconds

    @abc.abstractmethod
    async def send(self, identity: str, otp_code: str) -> DeliveryReport:
        """Send `otp_code` to `identity`; never raises for delivery problems."""

    async def close(self) -> None:
        """Release transport resources."""


class SMTPNotifier(Notifier):
    """SMTP sender; blocking smtplib calls run in a worker thread."""

    def __init__(
        self,
        server: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_email: Optional[str],
        expire_seconds: int,
        timeout: float = 20,
    ):
        super().__init__(expire_seconds)
        self.server = server
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return all([self.server, self.username, self.password, self.from_email])

    def _build_message(self, email: str, otp_code: str) -> MIMEMultipart:
        content = render_otp_email(otp_code, self.expire_seconds)
        message = MIMEMultipart("alternative")
        message["From"] = self.from_email
        message["To"] = email
        message["Subject"] = content.subject
        message.attach(MIMEText(content.text, "plain"))
        message.attach(MIMEText(content.html, "html"))
        return message

    def _send_sync(self, email: str, otp_code: str) -> None:
        message = self._build_message(email, otp_code)
        with smtplib.SMTP(self.server, int(self.port), timeout=self.timeout) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(self.username, self.password)
            server.send_message(message)

    async def send(self, identity: str, otp_code: str) -> DeliveryReport:
        if not self.configured:
            return DeliveryReport(DeliveryStatus.MISCONFIGURED, "SMTP settings are incomplete.")

        try:
            await anyio.to_thread.run_sync(self._send_sync, identity, otp_code)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("otp.email.smtp_auth_failed", smtp_code=exc.smtp_code)
            return DeliveryReport(DeliveryStatus.MISCONFIGURED, "SMTP authentication failed.")
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("otp.email.smtp_failed", error=str(exc))
            return DeliveryReport(DeliveryStatus.FAILED, str(exc))
        return SENT


class SendGridNotifier(Notifier):
    """Sends through the SendGrid v3 Mail Send API."""

    def __init__(
        self,
        api_key: Optional[str],
        from_email: Optional[str],
        expire_seconds: int,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20,
    ):
        super().__init__(expire_seconds)
        self.api_key = api_key
        self.from_email = from_email
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _payload(self, email: str, otp_code: str) -> dict:
        content = render_otp_email(otp_code, self.expire_seconds)
        return {
            "personalizations": [{"to": [{"email": email}]}],
            "from": {"email": self.from_email},
            "subject": content.subject,
            "content": [
                {"type": "text/plain", "value": content.text},
                {"type": "text/html", "value": content.html},
            ],
        }

    async def send(self, identity: str, otp_code: str) -> DeliveryReport:
        if not self.api_key or not self.from_email:
            return DeliveryReport(DeliveryStatus.MISCONFIGURED, "SendGrid API key or sender is missing.")

        try:
            response = await self._client.post(
                SENDGRID_SEND_URL,
                json=self._payload(identity, otp_code),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            logger.error("otp.email.sendgrid_unreachable", error=str(exc))
            return DeliveryReport(DeliveryStatus.FAILED, str(exc))

        if response.status_code in (200, 202):
            return SENT
        if response.status_code in (401, 403):
            logger.error("otp.email.sendgrid_rejected_credentials", status_code=response.status_code)
            return DeliveryReport(DeliveryStatus.MISCONFIGURED, "SendGrid rejected the API key or sender.")

        logger.error("otp.email.sendgrid_failed", status_code=response.status_code, body=response.text[:500])
        return DeliveryReport(DeliveryStatus.FAILED, f"SendGrid returned HTTP {response.status_code}")

    async def close(self) -> None:
        await self._client.aclose()


class ConsoleNotifier(Notifier):
    """Development notifier: writes the code to the log instead of mailing it."""

    async def send(self, identity: str, otp_code: str) -> DeliveryReport:
        logger.warning(
            "otp.email.console_delivery",
            to=identity,
            otp_code=otp_code,
            expires_in_minutes=self.expire_seconds // 60,
        )
        return SENT


def build_notifier(settings: Settings) -> Notifier:
    """Construct the notifier named by `EMAIL_BACKEND`."""
    expire_seconds = settings.OTP_EXPIRE_SECONDS
    if settings.EMAIL_BACKEND == "console":
        return ConsoleNotifier(expire_seconds)
    if settings.EMAIL_BACKEND == "sendgrid":
        return SendGridNotifier(
            settings.SENDGRID_API_KEY,
            settings.SENDGRID_FROM_EMAIL,
            expire_seconds,
            timeout=settings.OTP_NOTIFY_TIMEOUT_SECONDS,
        )
    return SMTPNotifier(
        settings.SMTP_SERVER,
        settings.SMTP_PORT,
        settings.SMTP_USERNAME,
        settings.SMTP_PASSWORD,
        settings.FROM_EMAIL,
        expire_seconds,
        timeout=settings.OTP_NOTIFY_TIMEOUT_SECONDS,
    )
