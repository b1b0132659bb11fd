from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from invoice_compliance import config as _config
from invoice_compliance.models.context import (
    ClientFacts,
    CompanyFacts,
    ItemFacts,
    TransactionContext,
)
from invoice_compliance.models.correction import CorrectionRequest, CorrectionResult, DocumentState
from invoice_compliance.models.ledger import (
    ChainEntry,
    ChainValidationResult,
    GeneratedNumber,
    HashInput,
    NumberingKey,
)
from invoice_compliance.models.rules import ApplicableRules
from invoice_compliance.models.transmission import TransmissionPayload, TransmissionResult
from invoice_compliance.models.vat import LineItem, VatTotals
from invoice_compliance.services import hash_chain, vat_engine
from invoice_compliance.services.context_builder import ContextBuilder
from invoice_compliance.services.correction import CorrectionEngine
from invoice_compliance.services.country_registry import CountryRegistry
from invoice_compliance.services.exceptions import ConfigurationError
from invoice_compliance.services.numbering import JsonNumberingStore, NumberingLedger
from invoice_compliance.services.rule_resolver import RuleResolver
from invoice_compliance.services.settings import ComplianceSettingsStore
from invoice_compliance.services.transmission import ResilientDispatcher, TransmissionRegistry
from invoice_compliance.services.vies import CachedTaxIdValidator, TaxIdValidator, ViesClient
from invoice_compliance.transmission.chorus import ChorusStrategy
from invoice_compliance.transmission.clearance import ClearanceStrategy
from invoice_compliance.transmission.email import (
    EmailStrategy,
    Mailer,
    SmtpMailer,
    unconfigured_mailer,
)
from invoice_compliance.transmission.pdp import PdpStrategy
from invoice_compliance.transmission.peppol import PeppolStrategy
from invoice_compliance.transmission.saft import SaftStrategy

logger = logging.getLogger(__name__)


@dataclass
class Evaluation:
    """A transaction context and the rules that apply to it."""

    context: TransactionContext
    rules: ApplicableRules


class ComplianceService:
    """Single entry point over the compliance components.

    Every collaborator is injected; ``build_service()`` assembles the defaults.
    """

    def __init__(
        self,
        countries: CountryRegistry,
        context_builder: ContextBuilder,
        resolver: RuleResolver,
        ledger: NumberingLedger,
        corrections: CorrectionEngine,
        dispatcher: ResilientDispatcher,
        settings: ComplianceSettingsStore,
    ) -> None:
        self.countries = countries
        self.context_builder = context_builder
        self.resolver = resolver
        self.ledger = ledger
        self.corrections = corrections
        self.dispatcher = dispatcher
        self.settings = settings

    # --- Rules ---

    def evaluate(
        self,
        company: CompanyFacts,
        client: ClientFacts,
        items: Iterable[ItemFacts] | None = None,
        delivery_country: str | None = None,
    ) -> Evaluation:
        context = self.context_builder.build(company, client, items, delivery_country)
        return Evaluation(context=context, rules=self.resolver.resolve(context))

    def resolve_rules(self, context: TransactionContext) -> ApplicableRules:
        return self.resolver.resolve(context)

    def calculate_vat(self, items: Iterable[LineItem], rules: ApplicableRules) -> VatTotals:
        return vat_engine.calculate(items, rules.vat)

    # --- Numbering ---

    def next_number(
        self,
        company_id: str,
        country_code: str,
        *,
        series: str = "",
        document_type: str = "invoice",
        document: HashInput | None = None,
    ) -> GeneratedNumber:
        policy = self.countries.get(country_code).numbering
        key = NumberingKey(company_id=company_id, series=series, document_type=document_type)
        return self.ledger.generate_next(key, policy, document)

    def register_series(
        self,
        company_id: str,
        series: str,
        validation_code: str,
        *,
        document_type: str = "invoice",
    ) -> None:
        key = NumberingKey(company_id=company_id, series=series, document_type=document_type)
        self.ledger.register_series(key, validation_code)

    def verify_chain(
        self, country_code: str, entries: Iterable[ChainEntry]
    ) -> ChainValidationResult:
        return hash_chain.validate_chain(entries, self.countries.get(country_code).numbering)

    def qr_content(
        self, country_code: str, document: HashInput, hash_value: str | None = None
    ) -> str | None:
        return hash_chain.build_qr_content(
            document, hash_value, self.countries.get(country_code).qr_code
        )

    def verify_signature(
        self, country_code: str, data: str, signature_b64: str, public_key_pem: bytes
    ) -> bool:
        """Check a document signature under the country's signature policy.

        Only locally verifiable (``rsa``) signatures are supported; XAdES and
        platform signatures are checked by the receiving platform.
        """
        policy = self.countries.get(country_code).signature
        if not policy.required:
            raise ConfigurationError(f"No document signature is required in {country_code}")
        if policy.type != "rsa":
            raise ConfigurationError(
                f"{policy.type} signatures for {country_code} cannot be verified locally"
            )
        return hash_chain.verify_signature(
            data, signature_b64, public_key_pem, policy.algorithm or "SHA-1"
        )

    # --- Corrections ---

    def evaluate_correction(self, document: DocumentState, country_code: str) -> CorrectionResult:
        return self.corrections.evaluate(document, self.countries.get(country_code))

    def correct(
        self,
        document: DocumentState,
        request: CorrectionRequest,
        *,
        company_id: str,
        country_code: str,
        series: str = "",
    ) -> CorrectionResult:
        return self.corrections.correct(
            document,
            request,
            self.countries.get(country_code),
            company_id=company_id,
            series=series,
        )

    # --- Transmission ---

    def transmit(self, rules: ApplicableRules, payload: TransmissionPayload) -> TransmissionResult:
        """Send *payload* on the platform the resolved rules name."""
        platform = rules.transmission.platform
        logger.info("Transmitting %s via %s", payload.invoice_number, platform)
        return self.dispatcher.send(platform, payload)

    def check_status(self, platform: str, external_id: str, company_id: str | None = None) -> str:
        return self.dispatcher.check_status(platform, external_id, company_id)

    def cancel(
        self, platform: str, external_id: str, company_id: str | None = None
    ) -> TransmissionResult:
        return self.dispatcher.cancel(platform, external_id, company_id)


def _default_mailer() -> Mailer:
    smtp = _config.smtp_settings()
    if smtp is None:
        return unconfigured_mailer
    return SmtpMailer(**smtp)


def build_service(
    mailer: Mailer | None = None,
    *,
    countries_dir: Path | None = None,
    numbering_path: Path | None = None,
    companies_dir: Path | None = None,
    tax_id_validator: TaxIdValidator | None = None,
) -> ComplianceService:
    """Assemble a ComplianceService with the default collaborators."""
    countries = CountryRegistry(countries_dir)
    validator = CachedTaxIdValidator(tax_id_validator or ViesClient())
    settings = ComplianceSettingsStore(companies_dir)
    ledger = NumberingLedger(JsonNumberingStore(numbering_path))
    registry = TransmissionRegistry(
        [
            PdpStrategy(settings),
            ChorusStrategy(settings),
            PeppolStrategy(settings),
            ClearanceStrategy(settings),
            SaftStrategy(settings),
        ],
        fallback=EmailStrategy(mailer or _default_mailer()),
    )
    return ComplianceService(
        countries=countries,
        context_builder=ContextBuilder(countries, validator),
        resolver=RuleResolver(countries),
        ledger=ledger,
        corrections=CorrectionEngine(ledger),
        dispatcher=ResilientDispatcher(registry),
        settings=settings,
    )
