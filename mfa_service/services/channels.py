"""
Channel senders - deliver one-time codes over SMS and email

Both senders are blocking calls bounded by a timeout, so a slow gateway
cannot stall the request that triggered the send. Any transport failure is
raised as ChannelDeliveryError; the MFA service turns that into a False
result plus an audit error event.
"""

import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional, Tuple

import httpx

from mfa_service.core.config import settings
from mfa_service.core.exceptions import ChannelDeliveryError, MfaConfigurationError
from mfa_service.utils.security import mask_email, mask_phone

logger = logging.getLogger(__name__)


class SmsSender(ABC):
    """Abstract SMS gateway"""

    @abstractmethod
    def send(self, phone: str, code: str) -> None:
        """Deliver code to phone; raise ChannelDeliveryError on failure"""


class EmailSender(ABC):
    """Abstract email gateway"""

    @abstractmethod
    def send(self, email: str, subject: str, body: str) -> None:
        """Deliver a message; raise ChannelDeliveryError on failure"""


class TwilioSmsSender(SmsSender):
    """
    SMS sender using the Twilio Messages REST API

    Posts directly with httpx so the request carries an explicit timeout.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        validity_minutes: int = 5,
        client: Optional[httpx.Client] = None
    ):
        if not account_sid or not auth_token or not from_number:
            raise MfaConfigurationError("Twilio account SID, auth token and from number are required")

        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.validity_minutes = validity_minutes
        self.client = client

    def _message_body(self, code: str) -> str:
        return f"Your verification code is {code}. It expires in {self.validity_minutes} minutes."

    def send(self, phone: str, code: str) -> None:
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        data = {"To": phone, "From": self.from_number, "Body": self._message_body(code)}

        try:
            if self.client is not None:
                response = self.client.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, data=data, auth=(self.account_sid, self.auth_token))
            response.raise_for_status()

        except httpx.TimeoutException as e:
            logger.error(f"Twilio SMS to {mask_phone(phone)} timed out after {self.timeout}s")
            raise ChannelDeliveryError("SMS gateway timed out", channel="sms", operation="send") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Twilio API error for {mask_phone(phone)}: HTTP {e.response.status_code}")
            raise ChannelDeliveryError(
                f"SMS gateway rejected message (HTTP {e.response.status_code})",
                channel="sms",
                operation="send"
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to send SMS via Twilio to {mask_phone(phone)}: {str(e)}")
            raise ChannelDeliveryError("SMS gateway unreachable", channel="sms", operation="send") from e

        try:
            message_sid = response.json().get("sid")
        except ValueError:
            message_sid = None
        logger.info(f"SMS sent via Twilio to {mask_phone(phone)} (SID: {message_sid})")


class DisabledSmsSender(SmsSender):
    """SMS sender for deployments without an SMS gateway; every send fails"""

    def send(self, phone: str, code: str) -> None:
        raise ChannelDeliveryError("SMS delivery is disabled", channel="sms", operation="send")


class SmtpEmailSender(EmailSender):
    """Email sender using SMTP with optional STARTTLS and login"""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10.0,
        from_email: str = "noreply@example.com"
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.from_email = from_email

    def _build_message(self, email: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["To"] = email
        message["From"] = self.from_email
        message["Subject"] = subject
        message.set_content(body, charset="utf-8")
        return message

    def send(self, email: str, subject: str, body: str) -> None:
        message = self._build_message(email, subject, body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {mask_email(email)}: {str(e)}")
            raise ChannelDeliveryError("Email gateway unreachable or rejected message", channel="email", operation="send") from e

        logger.info(f"Email sent to {mask_email(email)}")


def render_code_email(code: str, validity_minutes: int) -> Tuple[str, str]:
    """
    Build subject and plain-text body for an email verification code

    Returns:
        (subject, body)
    """
    subject = "Verification Code"
    body = (
        "Your verification code is:\n"
        "\n"
        f"    {code}\n"
        "\n"
        f"This code will expire in {validity_minutes} minutes.\n"
        "If you didn't request this code, please ignore this email.\n"
    )
    return subject, body


def build_sms_sender() -> SmsSender:
    """SMS sender selected by SMS_PROVIDER"""
    if settings.SMS_PROVIDER == "disabled":
        return DisabledSmsSender()

    return TwilioSmsSender(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        from_number=settings.TWILIO_FROM_NUMBER,
        base_url=settings.TWILIO_API_BASE_URL,
        timeout=settings.SMS_TIMEOUT_SECONDS,
        validity_minutes=settings.MFA_CODE_VALIDITY_MINUTES
    )


def build_email_sender() -> EmailSender:
    """SMTP sender from settings"""
    return SmtpEmailSender(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        username=settings.SMTP_USERNAME,
        password=settings.SMTP_PASSWORD,
        use_tls=settings.SMTP_TLS,
        timeout=settings.SMTP_TIMEOUT_SECONDS,
        from_email=settings.SMTP_FROM
    )
