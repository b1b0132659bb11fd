"""Structural checks on transmission payloads, run before any network call."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from invoice_compliance.models.transmission import Party, TransmissionPayload
from invoice_compliance.services.exceptions import PayloadValidationError

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[ValidationError, ...] = field(default_factory=tuple)

    @property
    def valid(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return "; ".join(f"{e.field}: {e.message}" for e in self.errors)


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def is_valid_country_code(value: str) -> bool:
    return bool(_COUNTRY_RE.match(value.upper()))


def _party_errors(party: Party | None, role: str) -> list[ValidationError]:
    if party is None:
        return [ValidationError(role, f"{role.capitalize()} information is required")]
    errors = []
    if not party.name:
        errors.append(ValidationError(f"{role}.name", f"{role.capitalize()} name is required"))
    if party.email and not is_valid_email(party.email):
        errors.append(ValidationError(f"{role}.email", f"Invalid {role} email format"))
    if party.country and not is_valid_country_code(party.country):
        errors.append(
            ValidationError(
                f"{role}.country", "Invalid country code format (must be ISO 3166-1 alpha-2)"
            )
        )
    return errors


def validate_base_payload(payload: TransmissionPayload) -> ValidationResult:
    errors: list[ValidationError] = []
    if not payload.invoice_id:
        errors.append(ValidationError("invoice_id", "Invoice ID is required"))
    if not payload.invoice_number:
        errors.append(ValidationError("invoice_number", "Invoice number is required"))
    if not payload.pdf:
        errors.append(ValidationError("pdf", "PDF content is required and must not be empty"))
    errors.extend(_party_errors(payload.recipient, "recipient"))
    errors.extend(_party_errors(payload.sender, "sender"))
    return ValidationResult(tuple(errors))


def validate_email_payload(payload: TransmissionPayload) -> ValidationResult:
    errors = list(validate_base_payload(payload).errors)
    if payload.recipient is not None and not payload.recipient.email:
        errors.append(
            ValidationError("recipient.email", "Recipient email is required for email transmission")
        )
    return ValidationResult(tuple(errors))


def validate_platform_payload(
    payload: TransmissionPayload, *, require_recipient_siret: bool = False
) -> ValidationResult:
    """Checks shared by the French platforms (PDP and Chorus Pro)."""
    errors = list(validate_base_payload(payload).errors)
    if payload.sender is not None and not payload.sender.siret:
        errors.append(ValidationError("sender.siret", "Sender SIRET is required"))
    recipient = payload.recipient
    if recipient is not None:
        if require_recipient_siret and not recipient.siret:
            errors.append(ValidationError("recipient.siret", "Recipient SIRET is required"))
        elif not (recipient.siret or recipient.vat_number):
            errors.append(
                ValidationError("recipient", "Recipient SIRET or VAT number is required")
            )
    return ValidationResult(tuple(errors))


def validate_clearance_payload(payload: TransmissionPayload) -> ValidationResult:
    """Clearance platforms only accept structured XML, signed by the sender's tax ID."""
    errors = list(validate_base_payload(payload).errors)
    if not payload.xml:
        errors.append(ValidationError("xml", "XML content is required for clearance platforms"))
    if payload.sender is not None and not payload.sender.vat_number:
        errors.append(ValidationError("sender.vat_number", "Sender VAT number is required"))
    return ValidationResult(tuple(errors))


def validate_peppol_payload(payload: TransmissionPayload) -> ValidationResult:
    """Peppol carries the UBL document; the recipient must be addressable on the network."""
    errors = list(validate_base_payload(payload).errors)
    if not payload.xml:
        errors.append(ValidationError("xml", "UBL XML content is required for Peppol"))
    recipient = payload.recipient
    if recipient is not None and not (recipient.peppol_id or recipient.vat_number):
        errors.append(
            ValidationError("recipient.peppol_id", "Recipient Peppol ID or VAT number is required")
        )
    return ValidationResult(tuple(errors))


def validate_saft_payload(payload: TransmissionPayload) -> ValidationResult:
    errors = list(validate_base_payload(payload).errors)
    if not payload.metadata.get("hash"):
        errors.append(ValidationError("metadata.hash", "Document hash is required"))
    if payload.metadata.get("total_ttc") is None:
        errors.append(ValidationError("metadata.total_ttc", "Document totals are required"))
    return ValidationResult(tuple(errors))


def assert_valid(result: ValidationResult, context: str) -> None:
    if not result.valid:
        raise PayloadValidationError(
            f"Validation failed for {context}: {result.summary()}", list(result.errors)
        )
