"""Tests for the command line interface."""

from pathlib import Path

import pytest
from click.testing import CliRunner
from openpyxl import load_workbook

from payrecon.main import cli


@pytest.fixture
def payments_csv(tmp_path) -> Path:
    csv_file = tmp_path / "payments.csv"
    csv_file.write_text(
        "id,date,amount,currency,payer,description\n"
        "P1,2025-09-13,1000.00,PLN,Jan Kowalski,Zapłata CO-PROF 13/2025\n"
        "P2,2025-09-15,1000.00,PLN,Jan Kowalski,Zapłata\n"
        "P3,2025-09-16,75.00,PLN,Zenon Zych,Darowizna\n",
        encoding="utf-8",
    )
    return csv_file


@pytest.fixture
def proformas_csv(tmp_path) -> Path:
    csv_file = tmp_path / "proformas.csv"
    csv_file.write_text(
        "fullnumber,total,currency,buyer_name\n"
        "CO-PROF 13/2025,1000.00,PLN,Jan Kowalski\n",
        encoding="utf-8",
    )
    return csv_file


class TestReconcileCommand:
    """Test the reconcile command."""

    def test_writes_report(self, tmp_path, payments_csv, proformas_csv):
        output = tmp_path / "out" / "report.xlsx"
        result = CliRunner().invoke(cli, [
            "reconcile", "-p", str(payments_csv), "-f", str(proformas_csv), "-o", str(output),
        ])

        assert result.exit_code == 0, result.output
        assert "RECONCILIATION SUMMARY" in result.output
        assert output.exists()
        assert "Duplicates" in load_workbook(output).sheetnames

    def test_bulk_approve(self, tmp_path, payments_csv, proformas_csv):
        output = tmp_path / "report.xlsx"
        result = CliRunner().invoke(cli, [
            "reconcile", "-p", str(payments_csv), "-f", str(proformas_csv),
            "-o", str(output), "--bulk-approve",
        ])

        assert result.exit_code == 0, result.output
        assert "Approved:" in result.output

        ws = load_workbook(output)["Matched"]
        assert ws["H2"].value == "approved"

    def test_config_file(self, tmp_path, payments_csv, proformas_csv):
        config = tmp_path / "matching.yaml"
        config.write_text("auto_approve_threshold: 99\n", encoding="utf-8")

        result = CliRunner().invoke(cli, [
            "reconcile", "-p", str(payments_csv), "-f", str(proformas_csv),
            "-o", str(tmp_path / "report.xlsx"), "-c", str(config),
        ])

        assert result.exit_code == 0, result.output
        assert "threshold: 99" in result.output

    def test_threshold_out_of_range(self, tmp_path, payments_csv, proformas_csv):
        result = CliRunner().invoke(cli, [
            "reconcile", "-p", str(payments_csv), "-f", str(proformas_csv),
            "-o", str(tmp_path / "report.xlsx"), "--threshold", "150",
        ])

        assert result.exit_code == 2

    def test_unsupported_input(self, tmp_path, proformas_csv):
        bad = tmp_path / "payments.txt"
        bad.write_text("whatever")

        result = CliRunner().invoke(cli, [
            "reconcile", "-p", str(bad), "-f", str(proformas_csv), "-o", str(tmp_path / "r.xlsx"),
        ])

        assert result.exit_code == 1
        assert "Unsupported file format" in result.output


class TestDuplicatesCommand:
    """Test the duplicates command."""

    def test_lists_groups(self, payments_csv):
        result = CliRunner().invoke(cli, ["duplicates", "-p", str(payments_csv)])

        assert result.exit_code == 0, result.output
        assert "1 duplicate group(s) found." in result.output
        assert "[keep] P1" in result.output
        assert "P2" in result.output

    def test_no_groups(self, payments_csv):
        result = CliRunner().invoke(cli, ["duplicates", "-p", str(payments_csv), "--direction", "out"])

        assert result.exit_code == 0, result.output
        assert "No duplicate payments found." in result.output
