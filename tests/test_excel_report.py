"""Tests for the Excel report generator."""

from datetime import date
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from payrecon.engine.models import (
    Candidate,
    Decision,
    Direction,
    DuplicateGroup,
    PassReport,
    Payment,
    PaymentSource,
    PaymentStatus,
)
from payrecon.reports.excel_report import ExcelReportGenerator


def make_payment(
    id: str,
    when: str,
    amount: str,
    status: PaymentStatus,
    payer: str = "Jan Kowalski",
    proforma: str = None,
    confidence: float = None,
    reason: str = "",
) -> Payment:
    """Helper to create test payments."""
    return Payment(
        id=id,
        source=PaymentSource.BANK,
        direction=Direction.IN,
        amount=Decimal(amount),
        currency="PLN",
        payer=payer,
        description="Przelew",
        date=date.fromisoformat(when),
        status=status,
        auto_proforma_fullnumber=proforma,
        confidence=confidence,
        match_reason=reason,
    )


@pytest.fixture
def sample_payments():
    """Create payments in every status."""
    return [
        make_payment("P1", "2025-09-13", "1000.00", PaymentStatus.MATCHED,
                     proforma="CO-PROF 13/2025", confidence=90.0, reason="amount_exact, name_match"),
        make_payment("P2", "2025-09-14", "1000.00", PaymentStatus.NEEDS_REVIEW,
                     proforma="CO-PROF 14/2025", confidence=34.0,
                     reason="Below auto-approval threshold: amount_overpaid:amount_diff=600.00"),
        make_payment("P3", "2025-09-15", "75.00", PaymentStatus.UNMATCHED, payer="Zenon Zych",
                     reason="No matching proforma found"),
        make_payment("P4", "2025-09-16", "1000.00", PaymentStatus.MATCHED,
                     proforma="CO-PROF 13/2025", confidence=90.0),
    ]


@pytest.fixture
def sample_report():
    """Create a pass report with a needs-review decision."""
    review = Decision(
        status=PaymentStatus.NEEDS_REVIEW,
        confidence=34.0,
        auto_proforma_fullnumber="CO-PROF 14/2025",
        reason="Below auto-approval threshold",
        candidates=[
            Candidate("CO-PROF 14/2025", 34.0, ["amount_overpaid:amount_diff=600.00", "name_match"],
                      amount_diff=Decimal("600.00"), remaining_at_evaluation=Decimal("400.00")),
            Candidate("CO-PROF 15/2025", 20.0, ["name_match"],
                      amount_diff=Decimal("-1500.00"), remaining_at_evaluation=Decimal("2500.00")),
        ],
    )
    return PassReport(total=4, matched=2, needs_review=1, unmatched=1, decisions={"P2": review})


@pytest.fixture
def sample_groups(sample_payments):
    return [DuplicateGroup(key="in|JAN KOWALSKI|1000.00|PLN|2025-09", payments=[
        sample_payments[0], sample_payments[1], sample_payments[3],
    ])]


class TestExcelReportGenerator:
    """Test Excel report generation functionality."""

    def test_generate_creates_file(self, tmp_path, sample_payments, sample_report):
        """Test that generate() creates an Excel file."""
        output = tmp_path / "test_report.xlsx"
        result_path = ExcelReportGenerator().generate(sample_payments, sample_report, output)

        assert result_path.exists()
        assert result_path.suffix == ".xlsx"

    def test_report_has_five_tabs(self, tmp_path, sample_payments, sample_report):
        """Test that the report has exactly 5 tabs."""
        output = tmp_path / "test_report.xlsx"
        ExcelReportGenerator().generate(sample_payments, sample_report, output)

        wb = load_workbook(output)
        assert wb.sheetnames == ["Summary", "Matched", "Needs Review", "Unmatched", "Duplicates"]

    def test_summary_tab_has_kpis(self, tmp_path, sample_payments, sample_report):
        """Test that Summary tab contains KPI data."""
        output = tmp_path / "test_report.xlsx"
        ExcelReportGenerator().generate(sample_payments, sample_report, output)

        ws = load_workbook(output)["Summary"]
        assert ws["A1"].value == "Payment Reconciliation Report"

        kpis = {ws[f"A{row}"].value: ws[f"B{row}"].value for row in range(5, 14)}
        assert kpis["Match Rate"] == "50.0%"
        assert kpis["Needs Review"] == "1"

    def test_matched_tab_has_data(self, tmp_path, sample_payments, sample_report):
        """Test that Matched tab lists matched payments."""
        output = tmp_path / "test_report.xlsx"
        ExcelReportGenerator().generate(sample_payments, sample_report, output)

        ws = load_workbook(output)["Matched"]
        assert ws["A1"].value == "Payment ID"
        assert ws["A2"].value == "P1"
        assert ws["A3"].value == "P4"
        assert ws["I2"].value == "CO-PROF 13/2025"
        assert ws["A4"].value is None

    def test_review_tab_lists_candidates(self, tmp_path, sample_payments, sample_report):
        """Test that each candidate gets its own row."""
        output = tmp_path / "test_report.xlsx"
        ExcelReportGenerator().generate(sample_payments, sample_report, output)

        ws = load_workbook(output)["Needs Review"]
        assert ws["L1"].value == "Candidate"
        assert ws["L2"].value == "CO-PROF 14/2025"
        assert ws["N2"].value == 600.0
        assert ws["L3"].value == "CO-PROF 15/2025"
        assert "amount_diff=600.00" in ws["K2"].value

    def test_unmatched_tab(self, tmp_path, sample_payments, sample_report):
        output = tmp_path / "test_report.xlsx"
        ExcelReportGenerator().generate(sample_payments, sample_report, output)

        ws = load_workbook(output)["Unmatched"]
        assert ws["A2"].value == "P3"
        assert ws["J2"].value is None

    def test_duplicates_tab(self, tmp_path, sample_payments, sample_report, sample_groups):
        """Test that Duplicates tab marks the kept payment."""
        output = tmp_path / "test_report.xlsx"
        ExcelReportGenerator().generate(
            sample_payments, sample_report, output, duplicate_groups=sample_groups
        )

        ws = load_workbook(output)["Duplicates"]
        assert ws["A1"].value == "Group"
        assert ws["B2"].value == "keep"
        assert ws["B3"].value == "duplicate #1"
        assert ws["C4"].value == "P4"

    def test_empty_results(self, tmp_path):
        """Test report generation with empty results."""
        output = tmp_path / "empty_report.xlsx"
        result_path = ExcelReportGenerator().generate([], PassReport(), output)

        assert result_path.exists()
        wb = load_workbook(output)
        assert len(wb.sheetnames) == 5

    def test_output_directory_created(self, tmp_path, sample_payments, sample_report):
        """Test that output directory is created if it doesn't exist."""
        output = tmp_path / "subdir" / "nested" / "report.xlsx"
        result_path = ExcelReportGenerator().generate(sample_payments, sample_report, output)

        assert result_path.exists()

    def test_frozen_panes_and_number_format(self, tmp_path, sample_payments, sample_report):
        output = tmp_path / "test_report.xlsx"
        ExcelReportGenerator().generate(sample_payments, sample_report, output)

        ws = load_workbook(output)["Matched"]
        assert ws.freeze_panes == "A2"
        assert ws["D2"].number_format == '#,##0.00'
