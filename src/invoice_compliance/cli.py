from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from invoice_compliance import config as _config
from invoice_compliance.models.context import ClientFacts, CompanyFacts, ItemFacts
from invoice_compliance.models.ledger import ChainEntry, NumberingKey
from invoice_compliance.services import hash_chain
from invoice_compliance.services.context_builder import ContextBuilder
from invoice_compliance.services.country_registry import CountryRegistry
from invoice_compliance.services.exceptions import ComplianceError
from invoice_compliance.services.numbering import JsonNumberingStore, NumberingLedger, check_gaps
from invoice_compliance.services.rule_resolver import RuleResolver
from invoice_compliance.services.vies import CachedTaxIdValidator, ViesClient

COMPANY_TEMPLATE = """\
# Compliance settings for one company. Secrets (api_key, client_secret,
# pfx_password, password) are stored in the system keyring, not in this file.
pdp:
  api_url: https://api.superpdp.example/v1
  provider: superpdp
chorus:
  api_url: https://api.piste.gouv.fr
  client_id: ""
  technical_account_id: ""
peppol:
  access_point_url: https://ap.example
  sender_id: ""
saft:
  api_url: https://servicos.portaldasfinancas.gov.pt:400/fews
  username: ""
  nif: ""
  software_certificate: ""
"""


class _AcceptAllValidator:
    """Offline stand-in: every VAT number given on the command line is taken as valid."""

    def validate(self, tax_id: str) -> bool:
        return True


def _init_config() -> None:
    """Create the config/data directories and an example company file."""
    config_dir = _config.get_config_dir()
    data_dir = _config.get_data_dir()
    companies_dir = _config.get_companies_dir()

    companies_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    example = companies_dir / "example.yaml.example"
    if example.exists():
        print(f"  exists: {example}")
    else:
        example.write_text(COMPANY_TEMPLATE)
        print(f"  created: {example}")

    print()
    print(f"Config: {config_dir}")
    print(f"Data:   {data_dir}")
    print()
    print("Next steps:")
    print(f"  1. cp {example} {companies_dir / '<company-id>.yaml'}")
    print("  2. Fill in the platform URLs and identifiers")
    print("  3. Store secrets with the keyring or the SECTION_FIELD env vars")


def _cmd_countries(args: argparse.Namespace) -> int:
    registry = CountryRegistry()
    for cfg in registry.all():
        eu = "EU" if cfg.is_eu else "--"
        b2b = cfg.transmission.b2b.platform
        print(f"{cfg.code}  {eu}  {cfg.currency:<4} b2b={b2b:<10} {cfg.name}")
    return 0


def _cmd_rules(args: argparse.Namespace) -> int:
    registry = CountryRegistry()
    validator = _AcceptAllValidator() if args.offline else CachedTaxIdValidator(ViesClient())
    builder = ContextBuilder(registry, validator)

    company = CompanyFacts(
        country_code=args.supplier.upper(), vat_number=args.supplier_vat, vat_exempt=args.vat_exempt
    )
    client = ClientFacts(
        country_code=args.customer.upper() if args.customer else None,
        vat_number=args.customer_vat,
        kind="INDIVIDUAL" if args.type == "B2C" else "COMPANY",
        is_public_entity=args.type == "B2G",
    )
    items = [ItemFacts(type=t.strip().upper()) for t in args.items.split(",") if t.strip()]

    context = builder.build(company, client, items)
    rules = RuleResolver(registry).resolve(context)

    tx = context.transaction
    print(f"Type:            {tx.type} ({tx.nature})")
    print(f"Taxation place:  {context.place.taxation}")
    print(f"Intra-EU:        {'yes' if tx.is_intra_eu else 'no'}")
    print(f"Export:          {'yes' if tx.is_export else 'no'}")
    print(f"Reverse charge:  {'yes' if rules.vat.reverse_charge else 'no'}")
    rates = ", ".join(f"{r.code}={r.rate}%" for r in rules.vat.rates)
    print(f"VAT rates:       {rates} (default {rules.vat.default_rate}%)")
    print(f"Format:          {rules.format.preferred} ({rules.format.xml_syntax})")
    tr = rules.transmission
    print(
        f"Transmission:    {tr.platform} via {tr.method}"
        f"{' (mandatory)' if tr.mandatory else ''}"
    )
    if tr.mandatory_from and not tr.mandatory:
        print(f"                 mandatory from {tr.mandatory_from}")
    if rules.numbering.series_registration:
        print("Series:          must be registered with the tax authority")
    if rules.signature.required:
        print(f"Signature:       {rules.signature.type} ({rules.signature.algorithm})")
    if rules.qr_code.required:
        fields = ", ".join(rules.qr_code.content_fields or hash_chain.QR_DEFAULT_FIELDS)
        print(f"QR code:         {fields}")
    for key in rules.legal_mention_keys:
        print(f"  mention: {key}")
    return 0


def _cmd_next_number(args: argparse.Namespace) -> int:
    policy = CountryRegistry().get(args.country).numbering
    ledger = NumberingLedger(JsonNumberingStore())
    key = NumberingKey(
        company_id=args.company, series=args.series, document_type=args.document_type
    )
    if args.dry_run:
        print(f"Next sequence: {ledger.peek_next(key, policy)}")
        return 0
    generated = ledger.generate_next(key, policy)
    print(generated.full_number)
    if generated.atcud:
        print(f"ATCUD: {generated.atcud}")
    return 0


def _cmd_register_series(args: argparse.Namespace) -> int:
    policy = CountryRegistry().get(args.country).numbering
    if not policy.series_registration:
        print(f"Series need no registration in {args.country.upper()}")
        return 0
    key = NumberingKey(
        company_id=args.company, series=args.series, document_type=args.document_type
    )
    NumberingLedger(JsonNumberingStore()).register_series(key, args.validation_code)
    print(f"Registered series {args.series} ({args.validation_code})")
    return 0


def _cmd_verify_chain(args: argparse.Namespace) -> int:
    policy = CountryRegistry().get(args.country).numbering
    raw = json.loads(Path(args.file).read_text())
    entries = [ChainEntry.from_dict(e) for e in raw]
    result = hash_chain.validate_chain(entries, policy)
    if result.valid:
        print(f"Chain valid ({len(entries)} entries)")
        return 0
    print(f"Chain broken at sequence {result.broken_at} ({result.kind}): {result.message}")
    return 1


def _cmd_gaps(args: argparse.Namespace) -> int:
    gaps = check_gaps(args.numbers)
    if not gaps:
        print("No gaps")
        return 0
    print("Missing: " + ", ".join(str(n) for n in gaps))
    return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="invoice-compliance", description="Country-specific invoicing compliance rules"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="create config and data directories")
    sub.add_parser("countries", help="list the bundled country tables")

    p = sub.add_parser("rules", help="resolve the rules for a transaction")
    p.add_argument("supplier", help="supplier country code")
    p.add_argument("customer", nargs="?", help="customer country code")
    p.add_argument("--type", choices=["B2B", "B2G", "B2C"], default="B2B")
    p.add_argument("--items", default="SERVICE", help="comma-separated item types")
    p.add_argument("--supplier-vat")
    p.add_argument("--customer-vat")
    p.add_argument("--vat-exempt", action="store_true")
    p.add_argument("--offline", action="store_true", help="skip VIES, accept VAT numbers as given")

    p = sub.add_parser("next-number", help="issue the next document number")
    p.add_argument("company")
    p.add_argument("--country", required=True)
    p.add_argument("--series", default="")
    p.add_argument("--document-type", default="invoice")
    p.add_argument(
        "--dry-run", action="store_true", help="show the next sequence without issuing it"
    )

    p = sub.add_parser("register-series", help="record a series validation code")
    p.add_argument("company")
    p.add_argument("validation_code", help="code returned by the tax authority")
    p.add_argument("--country", required=True)
    p.add_argument("--series", required=True)
    p.add_argument("--document-type", default="invoice")

    p = sub.add_parser("verify-chain", help="validate a hash chain exported as JSON")
    p.add_argument("file")
    p.add_argument("--country", required=True)

    p = sub.add_parser("gaps", help="report missing numbers in a sequence")
    p.add_argument("numbers", nargs="+", type=int)
    return parser


_COMMANDS = {
    "countries": _cmd_countries,
    "rules": _cmd_rules,
    "next-number": _cmd_next_number,
    "register-series": _cmd_register_series,
    "verify-chain": _cmd_verify_chain,
    "gaps": _cmd_gaps,
}


def main(argv: list[str] | None = None) -> None:
    """Entry point for the invoice-compliance CLI."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=_config.get_log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    if args.command == "init":
        _init_config()
        return

    try:
        code = _COMMANDS[args.command](args)
    except (ComplianceError, OSError, json.JSONDecodeError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
