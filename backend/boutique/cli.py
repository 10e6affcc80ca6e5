# Overview: Flask CLI command groups for operator jobs: alert sweeps, ledger audits, overdue orders.

# backend/boutique/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: flask --app boutique <group> <command> [options]
#
# Alerts:
# - flask --app boutique alerts sweep
#   Evaluate every active product at or below its minimum and raise missing alerts.
# - flask --app boutique alerts unread
#   List unread alerts, most urgent first.
#
# Ledger audit:
# - flask --app boutique ledger verify [--product-id 12]
#   Replay the movement ledger and compare it with cached stock (exit code 1 on mismatch).
#
# Replenishment:
# - flask --app boutique replenishment overdue
#   List open orders whose expected date has passed.
#
# System:
# - flask --app boutique system init-db
#   Create all tables (no-op for existing ones).
# - flask --app boutique system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import alert_service, ledger_service, replenishment_service
from .services.concurrency import run_with_retry
from .time_utils import to_utc_z
from .validation import DomainError


@click.group('alerts')
def alerts_group():
    """Stock alert commands."""


@alerts_group.command('sweep')
@with_appcontext
def sweep_alerts():
    """Raise alerts for every product at or below its stock minimum."""
    alerts = run_with_retry(alert_service.sweep_all)

    if not alerts:
        click.echo("No new alerts.")
        return

    click.echo(f"Raised {len(alerts)} alert(s):")
    for alert in alerts:
        click.echo(
            f"  #{alert.id:<5} product={alert.product_id:<6} {alert.alert_type:<13} "
            f"{alert.urgency:<8} stock={alert.stock_at_alert}/{alert.threshold}"
        )


@alerts_group.command('unread')
@with_appcontext
def list_unread():
    """List unread alerts."""
    alerts = alert_service.list_unread_alerts()

    if not alerts:
        click.echo("No unread alerts.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<6} {'Product':<8} {'Type':<14} {'Urgency':<9} {'Stock':<7} {'Created'}")
    click.echo("="*90)

    for alert in alerts:
        click.echo(
            f"{alert.id:<6} {alert.product_id:<8} {alert.alert_type:<14} {alert.urgency:<9} "
            f"{alert.stock_at_alert:<7} {to_utc_z(alert.created_at)}"
        )

    click.echo("="*90 + "\n")


@click.group('ledger')
def ledger_group():
    """Stock ledger audit commands."""


@ledger_group.command('verify')
@click.option('--product-id', type=int, help='Verify a single product')
@with_appcontext
def verify_ledger(product_id):
    """Check that cached stock equals the replayed movement history."""
    if product_id is not None:
        try:
            report = ledger_service.verify_product_stock(product_id)
        except DomainError as exc:
            raise click.ClickException(exc.message)
        reports = [] if report["consistent"] else [report]
    else:
        reports = ledger_service.find_stock_discrepancies()

    if not reports:
        click.echo("PASS Ledger consistent.")
        return

    for report in reports:
        click.echo(
            f"FAIL product={report['product_id']} ({report['product_code']}) "
            f"cached={report['cached_stock']} ledger={report['ledger_stock']} "
            f"broken_links={len(report['broken_links'])}"
        )
    raise SystemExit(1)


@click.group('replenishment')
def replenishment_group():
    """Replenishment order commands."""


@replenishment_group.command('overdue')
@with_appcontext
def list_overdue():
    """List open replenishment orders past their expected date."""
    orders = replenishment_service.list_overdue_orders()

    if not orders:
        click.echo("No overdue orders.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'Code':<14} {'Supplier':<9} {'Status':<9} {'Expected':<22} {'Outstanding'}")
    click.echo("="*80)

    for order in orders:
        outstanding = sum(line.quantity_remaining for line in order.lines)
        click.echo(
            f"{order.code:<14} {order.supplier_id:<9} {order.status:<9} "
            f"{to_utc_z(order.expected_at):<22} {outstanding}"
        )

    click.echo("="*80 + "\n")


@click.group('system')
def system_group():
    """Database bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(alerts_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(replenishment_group)
    app.cli.add_command(system_group)
