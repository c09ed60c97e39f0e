"""CLI entry point for payment reconciliation."""

import logging
import sys
from typing import Optional

import click

from payrecon.engine.config import load_config
from payrecon.engine.errors import ReconciliationError
from payrecon.engine.matcher import ReconciliationEngine
from payrecon.engine.models import Direction, PaymentSource
from payrecon.parsers.csv_parser import PaymentTableParser, ProformaTableParser
from payrecon.reports.excel_report import ExcelReportGenerator
from payrecon.store.memory import InMemoryPaymentRepository, InMemoryProformaStore

logger = logging.getLogger(__name__)


def validate_score(ctx, param, value):
    """Validate a score option is between 0 and 100."""
    if value is not None and (value < 0 or value > 100):
        raise click.BadParameter("Score must be between 0 and 100.")
    return value


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _build_engine(payments_path, proformas_path, config_path, threshold, tie_margin, currency, source):
    config = load_config(config_path)
    if threshold is not None:
        config.auto_approve_threshold = threshold
    if tie_margin is not None:
        config.tie_margin = tie_margin
    config.validate()

    click.echo(f"\n  Loading payments: {payments_path}...")
    payments = PaymentTableParser(
        default_currency=currency, default_source=PaymentSource(source)
    ).parse(payments_path)
    click.echo(f"   Found {len(payments)} payments")

    click.echo(f"\n  Loading proformas: {proformas_path}...")
    proformas = ProformaTableParser().parse(proformas_path)
    click.echo(f"   Found {len(proformas)} proformas")

    repository = InMemoryPaymentRepository()
    added = repository.add_many(payments)
    if added < len(payments):
        click.echo(f"   Skipped {len(payments) - added} already ingested payments")

    return ReconciliationEngine(repository, InMemoryProformaStore(proformas), config=config)


def _run_safely(action) -> None:
    try:
        action()
    except (FileNotFoundError, ValueError, ReconciliationError) as e:
        click.echo(f"\n  ERROR: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error during reconciliation")
        click.echo(f"\n  UNEXPECTED ERROR: {e}", err=True)
        sys.exit(2)


payments_option = click.option(
    "--payments", "-p",
    required=True,
    type=click.Path(exists=True),
    help="Path to exported payments (CSV or Excel).",
)
proformas_option = click.option(
    "--proformas", "-f",
    required=True,
    type=click.Path(exists=True),
    help="Path to exported proformas (CSV or Excel).",
)
config_option = click.option(
    "--config", "-c",
    default=None,
    type=click.Path(exists=True),
    help="YAML file with matching configuration.",
)
currency_option = click.option(
    "--currency",
    default="PLN",
    help="Currency for payment rows without one (default: PLN).",
)
source_option = click.option(
    "--source",
    default=PaymentSource.BANK.value,
    type=click.Choice([s.value for s in PaymentSource]),
    help="Source for payment rows without a source column (default: bank).",
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """
    Payment Reconciliation Tool

    Matches incoming payments against open proformas and exports the
    results to Excel.
    """
    _setup_logging(verbose)


@cli.command()
@payments_option
@proformas_option
@click.option(
    "--output", "-o",
    required=True,
    type=click.Path(),
    help="Path for the output Excel report.",
)
@config_option
@click.option(
    "--threshold", "-t",
    default=None,
    type=float,
    callback=validate_score,
    help="Auto-approval threshold, 0-100 (default from config: 70).",
)
@click.option(
    "--tie-margin",
    default=None,
    type=float,
    callback=validate_score,
    help="Score margin under which two candidates count as a tie (default: 5).",
)
@click.option(
    "--bulk-approve",
    is_flag=True,
    help="Approve every automatic match after the pass.",
)
@currency_option
@source_option
def reconcile(
    payments: str,
    proformas: str,
    output: str,
    config: Optional[str],
    threshold: Optional[float],
    tie_margin: Optional[float],
    bulk_approve: bool,
    currency: str,
    source: str,
) -> None:
    """
    Run a reconciliation pass and write the Excel report.

    Example:
        payrecon reconcile -p payments.csv -f proformas.csv -o report.xlsx
    """
    click.echo("=" * 60)
    click.echo("  PAYMENT RECONCILIATION ENGINE")
    click.echo("=" * 60)

    def action():
        engine = _build_engine(payments, proformas, config, threshold, tie_margin, currency, source)

        click.echo(
            f"\n  Reconciling (threshold: {engine.config.auto_approve_threshold:g}, "
            f"tie margin: {engine.config.tie_margin:g})..."
        )
        report = engine.run_pass()

        approved = None
        if bulk_approve:
            click.echo("\n  Approving automatic matches...")
            approved = engine.bulk_approve(actor="cli")

        groups = engine.list_duplicate_groups(direction=Direction.IN)

        click.echo(f"\n  Generating report: {output}...")
        output_path = ExcelReportGenerator().generate(
            engine.list_payments(), report, output, duplicate_groups=groups
        )

        click.echo("\n" + "=" * 60)
        click.echo("  RECONCILIATION SUMMARY")
        click.echo("=" * 60)
        click.echo(f"  Match Rate:           {report.match_rate:.1f}%")
        click.echo(f"  Payments:             {report.total}")
        click.echo(f"    +-- Matched:        {report.matched}")
        click.echo(f"    +-- Needs Review:   {report.needs_review}")
        click.echo(f"    +-- Unmatched:      {report.unmatched}")
        click.echo(f"    +-- Ignored:        {report.ignored}")
        click.echo(f"    +-- Failed:         {report.failed}")
        if approved is not None:
            click.echo(f"  Approved:             {approved.processed} (failed: {approved.failed})")
        click.echo(f"  Duplicate Groups:     {len(groups)}")
        click.echo("=" * 60)
        click.echo(f"\n  Report saved to: {output_path.absolute()}")

    _run_safely(action)


@cli.command()
@payments_option
@config_option
@currency_option
@source_option
@click.option(
    "--direction",
    default=None,
    type=click.Choice([d.value for d in Direction]),
    help="Only list groups for this direction.",
)
def duplicates(
    payments: str,
    config: Optional[str],
    currency: str,
    source: str,
    direction: Optional[str],
) -> None:
    """List payments that look like the same transaction submitted twice."""

    def action():
        settings = load_config(config)
        parsed = PaymentTableParser(
            default_currency=currency, default_source=PaymentSource(source)
        ).parse(payments)
        repository = InMemoryPaymentRepository()
        repository.add_many(parsed)
        engine = ReconciliationEngine(repository, InMemoryProformaStore(), config=settings)

        groups = engine.list_duplicate_groups(Direction(direction) if direction else None)
        if not groups:
            click.echo("  No duplicate payments found.")
            return

        for number, group in enumerate(groups, start=1):
            first = group.first
            click.echo(
                f"  Group {number}: {first.payer or first.description} "
                f"{first.amount} {first.currency} ({len(group)} payments)"
            )
            for payment in group.payments:
                marker = "keep" if payment is first else "dup "
                click.echo(f"    [{marker}] {payment.id}  {payment.date.isoformat()}")
        click.echo(f"\n  {len(groups)} duplicate group(s) found.")

    _run_safely(action)


if __name__ == "__main__":
    cli()
