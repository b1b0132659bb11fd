from __future__ import annotations

import logging
import smtplib
from collections.abc import Callable
from email.message import EmailMessage

from invoice_compliance.models.transmission import (
    DELIVERED,
    TransmissionPayload,
    TransmissionResult,
    failure,
)
from invoice_compliance.services.exceptions import ConfigurationError
from invoice_compliance.transmission.base import validation_failure
from invoice_compliance.transmission.validation import validate_email_payload

logger = logging.getLogger(__name__)

Mailer = Callable[[EmailMessage], object]


def build_message(payload: TransmissionPayload) -> EmailMessage:
    msg = EmailMessage()
    msg["To"] = payload.recipient.email
    if payload.sender.email:
        msg["From"] = payload.sender.email
    msg["Subject"] = f"Invoice {payload.invoice_number}"
    msg.set_content(
        f"Please find attached invoice {payload.invoice_number} from {payload.sender.name}."
    )
    msg.add_attachment(
        payload.pdf,
        maintype="application",
        subtype="pdf",
        filename=f"invoice-{payload.invoice_number}.pdf",
    )
    if payload.xml:
        msg.add_attachment(
            payload.xml,
            maintype="application",
            subtype="xml",
            filename=f"invoice-{payload.invoice_number}.xml",
        )
    return msg


class EmailStrategy:
    """Plain email delivery. The actual sending is done by the injected *mailer*."""

    name = "email"

    def __init__(self, mailer: Mailer) -> None:
        self._mailer = mailer

    def supports(self, platform: str) -> bool:
        return not platform or platform == "email"

    def send(self, payload: TransmissionPayload) -> TransmissionResult:
        validation = validate_email_payload(payload)
        if not validation.valid:
            return validation_failure("EMAIL", validation)
        try:
            self._mailer(build_message(payload))
        except Exception as exc:
            logger.error("Email delivery of %s failed: %s", payload.invoice_number, exc)
            return failure("EMAIL_SEND_FAILED", str(exc) or type(exc).__name__)
        return TransmissionResult(
            success=True, status=DELIVERED, message=f"Invoice sent to {payload.recipient.email}"
        )

    def check_status(self, external_id: str, company_id: str | None = None, platform: str = "") -> str:
        return DELIVERED

    def cancel(self, external_id: str, company_id: str | None = None) -> bool:
        return False


class SmtpMailer:
    """Mailer sending through an SMTP relay, STARTTLS when credentials are given."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout

    def __call__(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.username:
                smtp.starttls()
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)


def unconfigured_mailer(message: EmailMessage) -> None:
    raise ConfigurationError("No mail relay configured (set INVOICE_COMPLIANCE_SMTP_HOST)")
