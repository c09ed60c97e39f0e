"""Normalize source-specific records into canonical Payment entities."""

import hashlib
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from payrecon.engine.models import Direction, Payment, PaymentSource
from payrecon.engine.normalize import (
    extract_invoice_numbers,
    looks_like_refund,
    normalize_fullnumber,
    normalize_name,
    normalize_whitespace,
)

logger = logging.getLogger(__name__)

# Currencies whose processor amounts are not expressed in cents
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK", "HUF"}

DATE_FORMATS = [
    "%Y-%m-%d",
    "%d.%m.%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
]

CURRENCY_SYMBOLS = {"zł": "PLN", "€": "EUR", "$": "USD", "£": "GBP"}


def parse_date(value) -> date:
    """Parse date from datetimes, unix timestamps and common string formats."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if hasattr(value, "to_pydatetime"):
        return value.to_pydatetime().date()
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).date()

    str_value = str(value or "").strip()

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(str_value, fmt).date()
        except ValueError:
            continue

    raise ValueError(f"Could not parse date: {value!r}")


def parse_amount(value) -> Decimal:
    """Parse amount handling thousands separators and decimal commas."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    str_value = str(value or "").strip()
    for token in list(CURRENCY_SYMBOLS) + list(CURRENCY_SYMBOLS.values()):
        str_value = str_value.replace(token, "")
    str_value = str_value.replace("\u00a0", "").replace(" ", "")

    # 1.234,56
    if "," in str_value and "." in str_value:
        if str_value.rindex(",") > str_value.rindex("."):
            str_value = str_value.replace(".", "").replace(",", ".")
        else:
            str_value = str_value.replace(",", "")

    # 1234,56
    elif "," in str_value:
        str_value = str_value.replace(",", ".")

    try:
        return Decimal(str_value)
    except InvalidOperation as e:
        raise ValueError(f"Could not parse amount: {value!r}") from e


def parse_currency(value, default: Optional[str] = None) -> str:
    str_value = str(value or "").strip()
    if not str_value or str_value.lower() == "nan":
        if default:
            return default
        raise ValueError("Currency is required")
    return CURRENCY_SYMBOLS.get(str_value, str_value).upper()


def _text(value) -> str:
    if value is None:
        return ""
    text = str(value)
    return "" if text.lower() == "nan" else normalize_whitespace(text)


def _stable_id(prefix: str, *parts) -> str:
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return f"{prefix}-{digest[:16]}"


class PaymentNormalizer:
    """
    Convert records already parsed by source collaborators into Payments.

    Supported sources and their record keys:
    - bank: operation_date, amount (signed), currency, description,
      payer_name, account, operation_hash
    - processor: id, amount_total (minor units), currency, created,
      customer_details.name, description, metadata.deal_id, refunded, type
    - cash: id, amount, currency, payer, received_at, note, deal_id,
      proforma_fullnumber
    - receipt: id, total, currency, payer, date, text, direction

    The source is resolved here once; nothing downstream branches on it.
    """

    def __init__(self, default_currency: Optional[str] = None):
        self.default_currency = default_currency
        self._handlers: Dict[PaymentSource, Callable[[Dict[str, Any]], Payment]] = {
            PaymentSource.BANK: self._from_bank,
            PaymentSource.PROCESSOR: self._from_processor,
            PaymentSource.CASH: self._from_cash,
            PaymentSource.RECEIPT: self._from_receipt,
        }

    def normalize(self, source: PaymentSource | str, record: Dict[str, Any]) -> Payment:
        """
        Normalize one record.

        Raises:
            ValueError: If the source is unknown or required fields are invalid.
        """
        try:
            source = PaymentSource(source) if isinstance(source, str) else source
        except ValueError as e:
            raise ValueError(f"Unknown payment source: {source!r}") from e
        return self._handlers[source](record)

    def normalize_many(self, source: PaymentSource | str, records: Iterable[Dict[str, Any]]) -> List[Payment]:
        """Normalize records, skipping invalid ones with a warning."""
        payments: List[Payment] = []
        for idx, record in enumerate(records):
            try:
                payments.append(self.normalize(source, record))
            except (ValueError, InvalidOperation) as e:
                logger.warning("Skipping %s record %s: %s", source, idx, e)
        return payments

    def _build(
        self,
        payment_id: str,
        source: PaymentSource,
        signed_amount: Decimal,
        currency: str,
        payer: str,
        description: str,
        when: date,
        deal_id: Optional[str] = None,
        reference: Optional[str] = None,
        refund: bool = False,
        direction: Optional[Direction] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        is_refund = refund or looks_like_refund(description)
        if direction is None:
            direction = Direction.OUT if signed_amount < 0 else Direction.IN
        if is_refund:
            direction = Direction.OUT

        references = extract_invoice_numbers(description)
        return Payment(
            id=payment_id,
            source=source,
            direction=direction,
            amount=abs(signed_amount),
            currency=currency,
            payer=payer,
            description=description,
            date=when,
            is_refund=is_refund,
            payer_normalized=normalize_name(payer),
            reference_fullnumber=normalize_fullnumber(reference) or (references[0] if references else None),
            deal_id=_text(deal_id) or None,
            raw_data=dict(raw or {}),
        )

    def _from_bank(self, record: Dict[str, Any]) -> Payment:
        description = _text(record.get("description"))
        amount = parse_amount(record.get("amount"))
        currency = parse_currency(record.get("currency"), self.default_currency)
        when = parse_date(record.get("operation_date") or record.get("date"))
        payment_id = _text(record.get("id")) or _text(record.get("operation_hash")) or _stable_id(
            "bank", when.isoformat(), amount, currency, description, _text(record.get("account")),
        )
        return self._build(
            payment_id, PaymentSource.BANK, amount, currency,
            payer=_text(record.get("payer_name") or record.get("payer")),
            description=description,
            when=when,
            deal_id=record.get("deal_id"),
            raw=record,
        )

    def _from_processor(self, record: Dict[str, Any]) -> Payment:
        currency = parse_currency(record.get("currency"), self.default_currency)
        minor = record.get("amount_total", record.get("amount"))
        if minor is None:
            raise ValueError("Processor event has no amount")
        amount = Decimal(int(minor))
        if currency not in ZERO_DECIMAL_CURRENCIES:
            amount = amount / Decimal(100)

        customer = record.get("customer_details") or {}
        metadata = record.get("metadata") or {}
        event_type = _text(record.get("type")).lower()
        refund = bool(record.get("refunded")) or "refund" in event_type or amount < 0

        payment_id = _text(record.get("id"))
        if not payment_id:
            raise ValueError("Processor event has no id")

        return self._build(
            payment_id, PaymentSource.PROCESSOR, amount, currency,
            payer=_text(customer.get("name") or record.get("customer_name")),
            description=_text(record.get("description")),
            when=parse_date(record.get("created")),
            deal_id=metadata.get("deal_id"),
            reference=_text(metadata.get("proforma_fullnumber")) or None,
            refund=refund,
            direction=Direction.IN,
            raw=record,
        )

    def _from_cash(self, record: Dict[str, Any]) -> Payment:
        amount = parse_amount(record.get("amount"))
        if amount <= 0:
            raise ValueError(f"Cash amount must be positive, got {amount}")
        return self._build(
            _text(record.get("id")) or f"cash-{uuid4().hex[:16]}",
            PaymentSource.CASH,
            amount,
            parse_currency(record.get("currency"), self.default_currency),
            payer=_text(record.get("payer")),
            description=_text(record.get("note")),
            when=parse_date(record.get("received_at") or record.get("date")),
            deal_id=record.get("deal_id"),
            reference=_text(record.get("proforma_fullnumber")) or None,
            direction=Direction.IN,
            raw=record,
        )

    def _from_receipt(self, record: Dict[str, Any]) -> Payment:
        amount = parse_amount(record.get("total", record.get("amount")))
        text = _text(record.get("text") or record.get("description"))
        when = parse_date(record.get("date"))
        currency = parse_currency(record.get("currency"), self.default_currency)
        direction = Direction(_text(record.get("direction")) or Direction.OUT.value)
        return self._build(
            _text(record.get("id")) or _stable_id("receipt", when.isoformat(), amount, currency, text),
            PaymentSource.RECEIPT,
            abs(amount),
            currency,
            payer=_text(record.get("payer") or record.get("vendor")),
            description=text,
            when=when,
            direction=direction,
            raw=record,
        )
