"""CSV/Excel loaders for exported payment and proforma tables."""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from payrecon.engine.models import Payment, PaymentSource, Proforma, ProformaStatus
from payrecon.engine.normalize import normalize_fullnumber, normalize_name
from payrecon.ingestion.normalizer import (
    ZERO_DECIMAL_CURRENCIES,
    PaymentNormalizer,
    parse_amount,
    parse_currency,
    parse_date,
)

logger = logging.getLogger(__name__)


class TableParser:
    """Read a CSV or Excel table and map its columns to our field names."""

    DEFAULT_MAPPING: Dict[str, str] = {}
    REQUIRED: List[str] = []

    def __init__(self, column_mapping: Optional[Dict[str, str]] = None):
        """
        Initialize parser with optional custom column mapping.

        Args:
            column_mapping: Dict mapping our field names to table column names.
                          Example: {"date": "Data operacji", "amount": "Kwota"}
        """
        self.column_mapping = dict(self.DEFAULT_MAPPING)
        self.column_mapping.update(column_mapping or {})

    def read_rows(self, file_path: str | Path, **kwargs) -> List[Dict[str, Any]]:
        """
        Read a table into dicts keyed by our field names.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValueError: If required columns are missing or the format is unsupported.
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        df = self._read_file(file_path, **kwargs)
        self._validate_columns(df)

        rows: List[Dict[str, Any]] = []
        for _, row in df.iterrows():
            record: Dict[str, Any] = {}
            for field_name, column in self.column_mapping.items():
                if column in row.index and pd.notna(row[column]):
                    record[field_name] = row[column]
            rows.append(record)
        return rows

    def _read_file(self, file_path: Path, **kwargs) -> pd.DataFrame:
        """Read file based on extension."""
        suffix = file_path.suffix.lower()

        if suffix == ".csv":
            return pd.read_csv(file_path, dtype=str, **kwargs)
        elif suffix in (".xlsx", ".xls"):
            return pd.read_excel(file_path, dtype=str, **kwargs)
        else:
            raise ValueError(f"Unsupported file format: {suffix}. Use .csv, .xlsx, or .xls")

    def _validate_columns(self, df: pd.DataFrame) -> None:
        """
        Validate that required columns exist in the dataframe.

        Raises:
            ValueError: If required columns are missing.
        """
        missing = []

        for field_name in self.REQUIRED:
            col_name = self.column_mapping.get(field_name, field_name)
            if col_name not in df.columns:
                missing.append(f"{field_name} (expected column: '{col_name}')")

        if missing:
            available = ", ".join(str(c) for c in df.columns.tolist())
            raise ValueError(
                f"Missing required columns: {', '.join(missing)}. "
                f"Available columns: {available}. "
                f"Use column_mapping parameter to map your columns."
            )


class PaymentTableParser(TableParser):
    """Load exported payment rows and normalize them by their source column."""

    DEFAULT_MAPPING = {
        "id": "id",
        "source": "source",
        "date": "date",
        "amount": "amount",
        "currency": "currency",
        "description": "description",
        "payer": "payer",
        "deal_id": "deal_id",
    }
    REQUIRED = ["date", "amount"]

    def __init__(
        self,
        column_mapping: Optional[Dict[str, str]] = None,
        default_currency: Optional[str] = "PLN",
        default_source: PaymentSource = PaymentSource.BANK,
    ):
        super().__init__(column_mapping)
        self.normalizer = PaymentNormalizer(default_currency=default_currency)
        self.default_source = default_source

    def parse(self, file_path: str | Path, **kwargs) -> List[Payment]:
        """
        Parse a payments table into Payment objects.

        Rows that cannot be normalized are skipped with a warning.
        """
        payments: List[Payment] = []
        for idx, row in enumerate(self.read_rows(file_path, **kwargs)):
            source = str(row.get("source") or self.default_source.value).strip().lower()
            record = {
                "id": row.get("id"),
                "amount": row.get("amount"),
                "currency": row.get("currency"),
                "description": row.get("description", ""),
                "payer": row.get("payer", ""),
                "payer_name": row.get("payer", ""),
                "deal_id": row.get("deal_id"),
                "date": row.get("date"),
                "operation_date": row.get("date"),
                "received_at": row.get("date"),
                "note": row.get("description", ""),
                "text": row.get("description", ""),
            }
            try:
                payments.append(self._normalize_row(source, record))
            except (ValueError, InvalidOperation) as e:
                logger.warning("Skipping row %s: %s", idx, e)
        return payments

    def _normalize_row(self, source: str, record: Dict[str, Any]) -> Payment:
        if source == PaymentSource.PROCESSOR.value:
            # Exported processor rows carry major units; events carry minor units
            currency = parse_currency(record.get("currency"), self.normalizer.default_currency)
            amount = parse_amount(record.get("amount"))
            if currency in ZERO_DECIMAL_CURRENCIES:
                amount = amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            else:
                amount = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) * 100
            record = dict(
                record,
                amount_total=int(amount),
                currency=currency,
                created=record.get("date"),
                customer_name=record.get("payer"),
                metadata={"deal_id": record.get("deal_id")},
            )
        return self.normalizer.normalize(source, record)


class ProformaTableParser(TableParser):
    """Load an exported proforma list."""

    DEFAULT_MAPPING = {
        "fullnumber": "fullnumber",
        "total": "total",
        "currency": "currency",
        "payments_total": "payments_total",
        "buyer_name": "buyer_name",
        "buyer_email": "buyer_email",
        "issue_date": "issue_date",
        "due_date": "due_date",
        "deal_id": "deal_id",
        "status": "status",
    }
    REQUIRED = ["fullnumber", "total", "currency"]

    def parse(self, file_path: str | Path, **kwargs) -> List[Proforma]:
        proformas: List[Proforma] = []
        for idx, row in enumerate(self.read_rows(file_path, **kwargs)):
            try:
                proformas.append(self._convert_row(row))
            except (ValueError, InvalidOperation) as e:
                logger.warning("Skipping row %s: %s", idx, e)
        return proformas

    def _convert_row(self, row: Dict[str, Any]) -> Proforma:
        fullnumber = normalize_fullnumber(row.get("fullnumber"))
        if not fullnumber:
            raise ValueError("Proforma number is required")

        status = str(row.get("status") or ProformaStatus.OPEN.value).strip().lower()
        buyer = str(row.get("buyer_name") or "").strip()

        return Proforma(
            fullnumber=fullnumber,
            total=parse_amount(row["total"]),
            currency=parse_currency(row.get("currency")),
            payments_total=parse_amount(row.get("payments_total") or "0"),
            buyer_name=buyer,
            buyer_email=str(row.get("buyer_email") or "").strip(),
            buyer_normalized=normalize_name(buyer),
            issue_date=parse_date(row["issue_date"]) if row.get("issue_date") else None,
            due_date=parse_date(row["due_date"]) if row.get("due_date") else None,
            deal_id=str(row["deal_id"]).strip() if row.get("deal_id") else None,
            status=ProformaStatus(status),
        )
