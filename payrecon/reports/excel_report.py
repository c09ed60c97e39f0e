"""Excel export of reconciliation results."""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from payrecon.engine.models import Decision, DuplicateGroup, PassReport, Payment, PaymentStatus


class ExcelReportGenerator:
    """Generate a read-only Excel projection of payments, candidates and duplicates."""

    # Style constants
    HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
    HEADER_FONT = Font(name="Calibri", size=11, bold=True, color="FFFFFF")
    MATCHED_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
    UNMATCHED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
    REVIEW_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
    TITLE_FONT = Font(name="Calibri", size=16, bold=True, color="1F4E79")
    SUBTITLE_FONT = Font(name="Calibri", size=12, bold=True, color="1F4E79")
    KPI_FONT = Font(name="Calibri", size=14, bold=True)
    THIN_BORDER = Border(
        left=Side(style="thin"),
        right=Side(style="thin"),
        top=Side(style="thin"),
        bottom=Side(style="thin"),
    )

    PAYMENT_HEADERS = [
        "Payment ID", "Date", "Source", "Amount", "Currency", "Payer",
        "Description", "Status", "Proforma", "Confidence", "Reason",
    ]

    def generate(
        self,
        payments: List[Payment],
        report: PassReport,
        output_path: str | Path,
        duplicate_groups: Optional[List[DuplicateGroup]] = None,
    ) -> Path:
        """
        Generate Excel report with 5 tabs.

        Args:
            payments: Payments after the reconciliation pass.
            report: Pass report (counts and per-payment decisions).
            output_path: Path for the output Excel file.
            duplicate_groups: Optional duplicate groups to list.

        Returns:
            Path to the generated report.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        wb = Workbook()

        # Tab 1: Summary
        self._create_summary_tab(wb, payments, report)

        # Tab 2: Matched and approved
        matched = [
            p for p in payments
            if p.status in (PaymentStatus.MATCHED, PaymentStatus.APPROVED)
        ]
        self._create_payments_tab(wb, "Matched", "00B050", matched, self.MATCHED_FILL)

        # Tab 3: Needs review, with candidates
        review = [p for p in payments if p.status == PaymentStatus.NEEDS_REVIEW]
        self._create_review_tab(wb, review, report.decisions)

        # Tab 4: Unmatched and rejected
        unmatched = [
            p for p in payments
            if p.status in (PaymentStatus.UNMATCHED, PaymentStatus.REJECTED)
        ]
        self._create_payments_tab(wb, "Unmatched", "FF0000", unmatched, self.UNMATCHED_FILL)

        # Tab 5: Duplicates
        self._create_duplicates_tab(wb, duplicate_groups or [])

        wb.save(str(output_path))
        return output_path

    def _create_summary_tab(self, wb: Workbook, payments: List[Payment], report: PassReport) -> None:
        """Create the Summary dashboard tab."""
        ws = wb.active
        ws.title = "Summary"
        ws.sheet_properties.tabColor = "1F4E79"

        # Title
        ws.merge_cells("A1:F1")
        ws["A1"] = "Payment Reconciliation Report"
        ws["A1"].font = self.TITLE_FONT
        ws["A1"].alignment = Alignment(horizontal="center")

        # Generated date
        ws.merge_cells("A2:F2")
        ws["A2"] = f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        ws["A2"].alignment = Alignment(horizontal="center")

        approved = sum(1 for p in payments if p.status == PaymentStatus.APPROVED)
        rejected = sum(1 for p in payments if p.status == PaymentStatus.REJECTED)

        kpis = [
            ("Match Rate", f"{report.match_rate:.1f}%"),
            ("Payments Scored", str(report.total)),
            ("Matched", str(report.matched)),
            ("Needs Review", str(report.needs_review)),
            ("Unmatched", str(report.unmatched)),
            ("Ignored", str(report.ignored)),
            ("Failed", str(report.failed)),
            ("Approved", str(approved)),
            ("Rejected", str(rejected)),
        ]

        ws["A4"] = "Key Performance Indicators"
        ws["A4"].font = self.SUBTITLE_FONT

        for i, (label, value) in enumerate(kpis, start=5):
            ws[f"A{i}"] = label
            ws[f"A{i}"].font = Font(bold=True)
            ws[f"B{i}"] = value
            ws[f"B{i}"].font = self.KPI_FONT

            # Color coding
            if label in ("Unmatched", "Failed") and int(value) > 0:
                ws[f"B{i}"].fill = self.UNMATCHED_FILL
            elif label == "Needs Review" and int(value) > 0:
                ws[f"B{i}"].fill = self.REVIEW_FILL
            elif label == "Match Rate":
                rate = float(value.replace("%", ""))
                ws[f"B{i}"].fill = self.MATCHED_FILL if rate >= 80 else self.UNMATCHED_FILL

        ws.column_dimensions["A"].width = 25
        ws.column_dimensions["B"].width = 20

    def _create_payments_tab(
        self,
        wb: Workbook,
        title: str,
        color: str,
        payments: List[Payment],
        fill: PatternFill,
    ) -> None:
        ws = wb.create_sheet(title)
        ws.sheet_properties.tabColor = color
        self._write_headers(ws, self.PAYMENT_HEADERS)

        for row, payment in enumerate(payments, start=2):
            self._write_payment(ws, row, payment)
            for col in range(1, len(self.PAYMENT_HEADERS) + 1):
                ws.cell(row=row, column=col).fill = fill

        self._auto_width(ws, self.PAYMENT_HEADERS)

    def _create_review_tab(
        self,
        wb: Workbook,
        payments: List[Payment],
        decisions: Dict[str, Decision],
    ) -> None:
        """Create the Needs Review tab with one row per candidate."""
        ws = wb.create_sheet("Needs Review")
        ws.sheet_properties.tabColor = "FFC000"

        headers = self.PAYMENT_HEADERS + ["Candidate", "Score", "Amount Diff", "Remaining", "Candidate Reasons"]
        self._write_headers(ws, headers)

        row = 2
        for payment in payments:
            decision = decisions.get(payment.id)
            candidates = decision.candidates if decision else []
            for candidate in candidates or [None]:
                self._write_payment(ws, row, payment)
                if candidate is not None:
                    ws.cell(row=row, column=12, value=candidate.proforma_fullnumber)
                    ws.cell(row=row, column=13, value=candidate.score)
                    diff = ws.cell(row=row, column=14, value=float(candidate.amount_diff))
                    diff.number_format = '#,##0.00'
                    remaining = ws.cell(row=row, column=15, value=float(candidate.remaining_at_evaluation))
                    remaining.number_format = '#,##0.00'
                    ws.cell(row=row, column=16, value=", ".join(candidate.reasons))
                for col in range(1, len(headers) + 1):
                    ws.cell(row=row, column=col).fill = self.REVIEW_FILL
                row += 1

        self._auto_width(ws, headers)

    def _create_duplicates_tab(self, wb: Workbook, groups: List[DuplicateGroup]) -> None:
        """Create the Duplicates tab."""
        ws = wb.create_sheet("Duplicates")
        ws.sheet_properties.tabColor = "FFC000"

        headers = ["Group", "Position", "Payment ID", "Date", "Amount", "Currency", "Payer", "Status"]
        self._write_headers(ws, headers)

        row = 2
        for group_no, group in enumerate(groups, start=1):
            for position, payment in enumerate(group.payments, start=1):
                ws[f"A{row}"] = group_no
                ws[f"B{row}"] = "keep" if position == 1 else f"duplicate #{position - 1}"
                ws[f"C{row}"] = payment.id
                ws[f"D{row}"] = payment.date.strftime("%Y-%m-%d")
                ws[f"E{row}"] = float(payment.amount)
                ws[f"E{row}"].number_format = '#,##0.00'
                ws[f"F{row}"] = payment.currency
                ws[f"G{row}"] = payment.payer[:50]
                ws[f"H{row}"] = payment.status.value

                fill = self.MATCHED_FILL if position == 1 else self.REVIEW_FILL
                for col in range(1, len(headers) + 1):
                    ws.cell(row=row, column=col).fill = fill
                row += 1

        self._auto_width(ws, headers)

    def _write_payment(self, ws, row: int, payment: Payment) -> None:
        ws[f"A{row}"] = payment.id
        ws[f"B{row}"] = payment.date.strftime("%Y-%m-%d")
        ws[f"C{row}"] = payment.source.value
        ws[f"D{row}"] = float(payment.amount)
        ws[f"D{row}"].number_format = '#,##0.00'
        ws[f"E{row}"] = payment.currency
        ws[f"F{row}"] = payment.payer[:50]
        ws[f"G{row}"] = payment.description[:80]
        ws[f"H{row}"] = payment.status.value
        ws[f"I{row}"] = payment.matched_proforma or payment.auto_proforma_fullnumber or ""
        ws[f"J{row}"] = payment.confidence
        ws[f"K{row}"] = payment.match_reason

    def _write_headers(self, ws, headers: List[str]) -> None:
        """Write styled header row."""
        for col_idx, header in enumerate(headers, start=1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
            cell.alignment = Alignment(horizontal="center")
            cell.border = self.THIN_BORDER

        # Freeze top row
        ws.freeze_panes = "A2"

        # Auto-filter
        ws.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    def _auto_width(self, ws, headers: List[str]) -> None:
        """Auto-adjust column widths."""
        for col_idx, header in enumerate(headers, start=1):
            col_letter = get_column_letter(col_idx)
            max_len = len(header) + 4
            ws.column_dimensions[col_letter].width = min(max_len, 35)
