"""Tests for the payment and proforma table parsers."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import pandas as pd

from payrecon.engine.models import Direction, PaymentSource, ProformaStatus
from payrecon.parsers.csv_parser import PaymentTableParser, ProformaTableParser


@pytest.fixture
def payments_csv(tmp_path) -> Path:
    """Create a sample payments CSV file for testing."""
    csv_content = """id,date,amount,currency,payer,description,source
P1,2025-09-13,"1000,00",PLN,Jan Kowalski,Zapłata CO-PROF 13/2025,bank
P2,14.09.2025,-250.00,PLN,Sklep,Zakupy biurowe,bank
P3,2025-09-15,12.50,EUR,Anna Nowak,Szkolenie online,processor
P4,2025-09-16,abc,PLN,Piotr Lis,Bad amount,bank
"""
    csv_file = tmp_path / "payments.csv"
    csv_file.write_text(csv_content, encoding="utf-8")
    return csv_file


@pytest.fixture
def proformas_csv(tmp_path) -> Path:
    """Create a sample proformas CSV file for testing."""
    csv_content = """fullnumber,total,currency,payments_total,buyer_name,issue_date,status
co prof 13 / 2025,1000.00,PLN,,Jan Kowalski,2025-09-01,
CO-PROF 14/2025,"2 500,00",PLN,500,Anna Nowak,,paid
,100.00,PLN,,Nobody,,
"""
    csv_file = tmp_path / "proformas.csv"
    csv_file.write_text(csv_content, encoding="utf-8")
    return csv_file


class TestPaymentTableParser:
    """Test payment table parsing."""

    def test_parse_skips_bad_rows(self, payments_csv):
        payments = PaymentTableParser().parse(payments_csv)

        assert [p.id for p in payments] == ["P1", "P2", "P3"]

    def test_bank_credit(self, payments_csv):
        payment = PaymentTableParser().parse(payments_csv)[0]

        assert payment.amount == Decimal("1000.00")
        assert payment.direction == Direction.IN
        assert payment.date == date(2025, 9, 13)
        assert payment.reference_fullnumber == "CO-PROF 13/2025"

    def test_bank_debit(self, payments_csv):
        payment = PaymentTableParser().parse(payments_csv)[1]

        assert payment.amount == Decimal("250.00")
        assert payment.direction == Direction.OUT
        assert payment.description == "Zakupy biurowe"

    def test_processor_row(self, payments_csv):
        payment = PaymentTableParser().parse(payments_csv)[2]

        assert payment.source == PaymentSource.PROCESSOR
        assert payment.amount == Decimal("12.50")
        assert payment.currency == "EUR"
        assert payment.payer == "Anna Nowak"

    def test_parse_with_column_mapping(self, tmp_path):
        csv_file = tmp_path / "wyciag.csv"
        csv_file.write_text(
            "Data operacji,Kwota,Nadawca,Tytul\n"
            "13.09.2025,\"1 000,00\",Jan Kowalski,Oplata\n",
            encoding="utf-8",
        )
        parser = PaymentTableParser(column_mapping={
            "date": "Data operacji",
            "amount": "Kwota",
            "payer": "Nadawca",
            "description": "Tytul",
        })

        payments = parser.parse(csv_file)

        assert len(payments) == 1
        assert payments[0].amount == Decimal("1000.00")
        assert payments[0].currency == "PLN"
        assert payments[0].payer == "Jan Kowalski"

    def test_processor_amount_rounds_to_currency_precision(self, tmp_path):
        csv_file = tmp_path / "processor.csv"
        csv_file.write_text(
            "id,date,amount,currency,payer,source\n"
            "S1,2025-09-13,10.005,EUR,Anna Nowak,processor\n"
            "S2,2025-09-13,10.004,EUR,Anna Nowak,processor\n"
            "S3,2025-09-13,1500.5,JPY,Anna Nowak,processor\n",
            encoding="utf-8",
        )

        payments = PaymentTableParser().parse(csv_file)

        assert [p.amount for p in payments] == [Decimal("10.01"), Decimal("10.00"), Decimal("1501")]

    def test_excel_file(self, tmp_path):
        xlsx_file = tmp_path / "payments.xlsx"
        pd.DataFrame([
            {"id": "X1", "date": "2025-09-13", "amount": "99.90", "payer": "Jan Kowalski"},
        ]).to_excel(xlsx_file, index=False)

        payments = PaymentTableParser().parse(xlsx_file)

        assert payments[0].id == "X1"
        assert payments[0].amount == Decimal("99.90")

    def test_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            PaymentTableParser().parse("/nonexistent/file.csv")

    def test_missing_required_columns(self, tmp_path):
        csv_file = tmp_path / "bad.csv"
        csv_file.write_text("name,value\ntest,123\n")

        with pytest.raises(ValueError, match="Missing required columns"):
            PaymentTableParser().parse(csv_file)

    def test_unsupported_format(self, tmp_path):
        txt_file = tmp_path / "data.txt"
        txt_file.write_text("some data")

        with pytest.raises(ValueError, match="Unsupported file format"):
            PaymentTableParser().parse(txt_file)


class TestProformaTableParser:
    """Test proforma table parsing."""

    def test_parse(self, proformas_csv):
        proformas = ProformaTableParser().parse(proformas_csv)

        assert [p.fullnumber for p in proformas] == ["CO-PROF 13/2025", "CO-PROF 14/2025"]

        first = proformas[0]
        assert first.remaining == Decimal("1000.00")
        assert first.status == ProformaStatus.OPEN
        assert first.buyer_normalized == "JAN KOWALSKI"
        assert first.issue_date == date(2025, 9, 1)

        second = proformas[1]
        assert second.total == Decimal("2500.00")
        assert second.remaining == Decimal("2000.00")
        assert second.status == ProformaStatus.PAID
        assert second.issue_date is None

    def test_missing_currency_column(self, tmp_path):
        csv_file = tmp_path / "proformas.csv"
        csv_file.write_text("fullnumber,total\nCO-PROF 1/2025,100\n")

        with pytest.raises(ValueError, match="Missing required columns"):
            ProformaTableParser().parse(csv_file)
