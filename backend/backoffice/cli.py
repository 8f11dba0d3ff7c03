# Overview: Flask CLI command groups for bootstrap, reconciliation, and maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (prefer `flask db upgrade` in production).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Orders / allocation:
# - python -m flask orders allocate [--product-id 1] [--mode priority]
#   Reserve available stock for eligible order lines; prints short lines.
# - python -m flask orders reset-allocation [--product-id 1] --yes
#   Release every eligible reservation and run a fresh FIFO pass.
# - python -m flask orders ship-all 42
#   Ship every reserved unit on order 42.
#
# Stock reconciliation:
# - python -m flask stock drift [--product-id 1]
#   List variants whose allocated_stock disagrees with live order lines.
# - python -m flask stock fix-drift --product-id 1 --color black --size M [--mode reset]
#   Repair allocated_stock for one variant.
# - python -m flask stock verify-ledger [--variant-id 7] [--strict]
#   Compare physical stock with initial stock + ledger deltas.
# - python -m flask stock movements --variant-id 7 --limit 20
#   Show recent ledger entries.
#
# Mileage:
# - python -m flask mileage verify [--customer-id 3]
#   Compare cached balances with ledger sums.
# - python -m flask mileage recompute --customer-id 3
#   Reset one cached balance from the ledger.
# - python -m flask mileage process-statements --type deduction 1 2 3
#   Process pending statements by id.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Customer, ProductVariant
from .services import (
    allocation_service,
    mileage_service,
    reconciliation_service,
    shipment_service,
    statement_service,
    stock_ledger_service,
)
from .validation import ConflictError, ConsistencyError, NotFoundError, ValidationError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Database tables created.")


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


# =============================================================================
# ORDERS
# =============================================================================

@click.group('orders')
def orders_group():
    """Allocation and shipment commands."""


@orders_group.command('allocate')
@click.option('--product-id', type=int, help='Limit to one product')
@click.option('--mode', type=click.Choice(['fifo', 'priority']), default='fifo', show_default=True)
@with_appcontext
def allocate_cli(product_id, mode):
    """Reserve available stock for eligible order lines."""
    result = allocation_service.allocate(product_id=product_id, mode=mode)
    click.echo(
        f"PASS {result.allocated_units} units reserved across {result.allocated_lines} "
        f"of {result.lines_considered} lines ({mode})"
    )
    for short in result.short_lines:
        click.echo(
            f"  SHORT order {short['order_number']} line {short['line_id']}: "
            f"requested {short['requested']}, granted {short['granted']}, short {short['shortfall']}"
        )
    for error in result.errors:
        click.echo(f"  ERROR line {error['line_id']}: {error['error']}")


@orders_group.command('reset-allocation')
@click.option('--product-id', type=int, help='Limit to one product')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_allocation_cli(product_id, yes):
    """Release reservations and reallocate from scratch (FIFO)."""
    if not yes:
        click.confirm("WARN This releases every reservation before reallocating. Continue?", abort=True)
    result = allocation_service.reset_and_reallocate(product_id=product_id)
    allocation = result["allocation"]
    click.echo(f"PASS Released {result['released_units']} units from {result['released_lines']} lines")
    click.echo(
        f"PASS Reallocated {allocation['allocated_units']} units; "
        f"{allocation['short_count']} lines short by {allocation['shortfall_units']}"
    )


@orders_group.command('ship-all')
@click.argument('order_id', type=int)
@with_appcontext
def ship_all_cli(order_id):
    """Ship every reserved unit on one order."""
    try:
        result = shipment_service.ship_all_allocated(order_id)
    except NotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Shipped {result.shipped_units} units; order is now {result.order_status}")
    for error in result.errors:
        click.echo(f"  ERROR {error}")


# =============================================================================
# STOCK
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock ledger and reconciliation commands."""


@stock_group.command('drift')
@click.option('--product-id', type=int, help='Limit to one product')
@with_appcontext
def drift_cli(product_id):
    """List variants with allocation drift."""
    drifted = reconciliation_service.scan_allocation_drift(product_id)
    if not drifted:
        click.echo("PASS No allocation drift found.")
        return

    click.echo("\n" + "=" * 100)
    click.echo(f"{'Variant':<10} {'Product':<24} {'Option':<20} {'Stored':>8} {'Live':>8} {'Diff':>8}")
    click.echo("=" * 100)
    for report in drifted:
        option = report["option"]
        label = "/".join(v for v in (option["color"], option["size"]) if v) or "-"
        click.echo(
            f"{option['variant_id']:<10} {report['product']['name'][:24]:<24} {label[:20]:<20} "
            f"{report['stock']['allocated_in_db']:>8} {report['stock']['allocated_from_orders']:>8} "
            f"{report['sync']['difference']:>8}"
        )
    click.echo("=" * 100 + "\n")


@stock_group.command('fix-drift')
@click.option('--product-id', type=int, required=True)
@click.option('--color', default=None)
@click.option('--size', default=None)
@click.option('--mode', type=click.Choice(['precise', 'reset']), default='precise', show_default=True)
@with_appcontext
def fix_drift_cli(product_id, color, size, mode):
    """Repair allocated_stock for one variant."""
    try:
        result = reconciliation_service.fix_allocation_drift(product_id, color, size, mode=mode)
    except (NotFoundError, ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))
    if result["changed"]:
        click.echo(
            f"PASS Variant {result['variant_id']}: allocated_stock "
            f"{result['allocated_before']} -> {result['allocated_after']}"
        )
    else:
        click.echo(f"PASS Variant {result['variant_id']} already in sync.")


@stock_group.command('verify-ledger')
@click.option('--variant-id', type=int, help='Check one variant (default: all)')
@click.option('--strict', is_flag=True, help='Exit non-zero on the first mismatch')
@with_appcontext
def verify_ledger_cli(variant_id, strict):
    """Check initial_stock + SUM(ledger) == physical_stock."""
    if variant_id is not None:
        variant_ids = [variant_id]
    else:
        variant_ids = [row.id for row in db.session.query(ProductVariant.id).order_by(ProductVariant.id)]

    mismatches = 0
    for vid in variant_ids:
        try:
            report = reconciliation_service.verify_stock_ledger(vid, strict=strict)
        except NotFoundError as e:
            raise click.ClickException(str(e))
        except ConsistencyError as e:
            raise click.ClickException(str(e))
        if not report["consistent"]:
            mismatches += 1
            click.echo(
                f"FAIL variant {vid}: physical {report['physical_stock']}, "
                f"ledger expects {report['expected_physical']} (drift {report['drift']})"
            )

    if mismatches:
        click.echo(f"WARN {mismatches} of {len(variant_ids)} variants disagree with the ledger")
    else:
        click.echo(f"PASS {len(variant_ids)} variants consistent with the ledger")


@stock_group.command('movements')
@click.option('--variant-id', type=int)
@click.option('--product-id', type=int)
@click.option('--type', 'movement_type', default=None)
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def movements_cli(variant_id, product_id, movement_type, limit):
    """Show recent stock ledger entries."""
    try:
        page = stock_ledger_service.list_movements(
            variant_id=variant_id,
            product_id=product_id,
            movement_type=movement_type,
            limit=limit,
        )
    except ValidationError as e:
        raise click.ClickException(str(e))
    for row in page["items"]:
        click.echo(
            f"{row['created_at']}  v{row['variant_id']:<6} {row['movement_type']:<18} "
            f"{row['quantity_delta']:>+6}  {row['reference_id'] or '-'}  {row['notes'] or ''}"
        )
    click.echo(f"({len(page['items'])} of {page['pagination']['total']})")


# =============================================================================
# MILEAGE
# =============================================================================

@click.group('mileage')
def mileage_group():
    """Mileage ledger commands."""


@mileage_group.command('verify')
@click.option('--customer-id', type=int, help='Check one customer (default: all)')
@with_appcontext
def verify_mileage_cli(customer_id):
    """Compare cached balances with ledger sums."""
    if customer_id is not None:
        customer_ids = [customer_id]
    else:
        customer_ids = [row.id for row in db.session.query(Customer.id).order_by(Customer.id)]

    drifted = 0
    for cid in customer_ids:
        try:
            report = mileage_service.verify_balance(cid)
        except NotFoundError as e:
            raise click.ClickException(str(e))
        if report["needs_fix"]:
            drifted += 1
            click.echo(
                f"FAIL {report['company_name']} (ID: {cid}): cached {report['cached_balance']}, "
                f"ledger {report['ledger_balance']}"
            )
    if drifted:
        click.echo(f"WARN {drifted} balance(s) drifted. Run 'flask mileage recompute --customer-id <id>'.")
    else:
        click.echo(f"PASS {len(customer_ids)} balances match the ledger")


@mileage_group.command('recompute')
@click.option('--customer-id', type=int, required=True)
@with_appcontext
def recompute_mileage_cli(customer_id):
    """Reset one cached balance from the ledger."""
    try:
        result = mileage_service.recompute_balance(customer_id)
    except NotFoundError as e:
        raise click.ClickException(str(e))
    if result["fixed"]:
        click.echo(f"PASS Balance reset {result['cached_balance']} -> {result['balance']}")
    else:
        click.echo(f"PASS Balance already correct ({result['balance']})")


@mileage_group.command('process-statements')
@click.option('--type', 'statement_type', type=click.Choice(['deduction', 'return']), required=True)
@click.argument('statement_ids', nargs=-1, type=int, required=True)
@with_appcontext
def process_statements_cli(statement_type, statement_ids):
    """Process pending statements; each id commits on its own."""
    result = statement_service.process_statements(list(statement_ids), statement_type=statement_type)
    click.echo(
        f"PASS {result.processed_count} processed, {result.failed_count} failed, "
        f"{result.total_amount} mileage moved"
    )
    for error in result.errors:
        click.echo(f"  ERROR {error}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(mileage_group)
