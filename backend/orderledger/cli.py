# Overview: Flask CLI command groups for bootstrap, inspection, and ledger maintenance.

# backend/orderledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--channel-code WEB --channel-name "Web Store"]
#   Idempotent bootstrap: creates tables, the default channel, its chart of accounts and payment methods.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Channels:
# - python -m flask channels list
#   List channels with their cash-control settings.
# - python -m flask channels create --code POS --name "Counter" --cash-control
#   Create a channel (chart of accounts and default payment methods included).
#
# Ledger:
# - python -m flask ledger verify [--channel-id 1]
#   Re-check that every journal entry balances (debits == credits).
#
# Periods:
# - python -m flask periods status --channel-id 1 --end 2026-01-31
#   Show what still blocks closing the period ending on that date.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Channel, PaymentMethod
from .services.channel_service import ChannelError, create_channel
from .services.ledger_service import find_unbalanced_entries
from .services.period_service import get_period_status
from .time_utils import parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--channel-code', default='DEFAULT', help='Default channel code')
@click.option('--channel-name', default='Default Channel', help='Default channel name')
@click.option('--currency', default=None, help='Currency code (defaults to DEFAULT_CURRENCY_CODE)')
@with_appcontext
def init_system(channel_code, channel_name, currency):
    """
    Initialize the database and the default channel.

    Creates:
    - All tables (if missing)
    - Default channel with the standard chart of accounts
    - Payment methods: cash, card, mpesa, credit
    """
    from flask import current_app

    click.echo("START Initializing orderledger...")
    db.create_all()
    click.echo("PASS Tables ready")

    channel = db.session.query(Channel).filter_by(code=channel_code).first()
    if channel:
        click.echo(f"PASS Using existing channel: {channel.name} (ID: {channel.id}, Code: {channel.code})")
        return

    channel = create_channel(
        code=channel_code,
        name=channel_name,
        currency_code=currency or current_app.config.get("DEFAULT_CURRENCY_CODE", "USD"),
    )
    db.session.commit()
    methods = db.session.query(PaymentMethod).filter_by(channel_id=channel.id).all()
    click.echo(f"PASS Created channel: {channel.name} (ID: {channel.id}, Code: {channel.code})")
    click.echo(f"PASS Payment methods: {', '.join(m.code for m in methods)}")
    click.echo("DONE orderledger initialized")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# CHANNELS
# =============================================================================

@click.group('channels')
def channels_group():
    """Channel management commands."""


@channels_group.command('list')
@with_appcontext
def list_channels():
    """List all channels."""
    channels = db.session.query(Channel).order_by(Channel.id.asc()).all()
    if not channels:
        click.echo("No channels found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Code':<15} {'Name':<30} {'Currency':<9} {'Cash control'}")
    click.echo("="*80)
    for channel in channels:
        cash_control = "Yes" if channel.cash_control_enabled else "No"
        click.echo(f"{channel.id:<5} {channel.code:<15} {channel.name:<30} {channel.currency_code:<9} {cash_control}")
    click.echo("="*80 + "\n")


@channels_group.command('create')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--name', required=True, help='Channel name')
@click.option('--currency', default='USD', help='Currency code')
@click.option('--cash-control', is_flag=True, help='Require an open cashier session for cash payments')
@click.option('--require-opening-count', is_flag=True, help='Require declared opening balances')
@click.option('--variance-threshold', type=int, default=None, help='Variance notification threshold (cents)')
@with_appcontext
def create_channel_cli(code, name, currency, cash_control, require_opening_count, variance_threshold):
    """Create a new channel."""
    try:
        channel = create_channel(
            code=code,
            name=name,
            currency_code=currency,
            cash_control_enabled=cash_control,
            require_opening_count=require_opening_count,
            variance_notification_threshold_cents=variance_threshold,
        )
        db.session.commit()
    except ChannelError as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Created channel: {channel.name} (ID: {channel.id}, Code: {channel.code})")


# =============================================================================
# LEDGER
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Ledger inspection commands."""


@ledger_group.command('verify')
@click.option('--channel-id', type=int, default=None, help='Limit to one channel')
@with_appcontext
def verify_ledger(channel_id):
    """Check that every journal entry balances."""
    unbalanced = find_unbalanced_entries(channel_id)
    if unbalanced:
        click.echo(f"FAIL {len(unbalanced)} unbalanced journal entries: {', '.join(str(i) for i in unbalanced)}")
        raise SystemExit(1)
    click.echo("PASS All journal entries balance")


# =============================================================================
# PERIODS
# =============================================================================

@click.group('periods')
def periods_group():
    """Accounting period commands."""


@periods_group.command('status')
@click.option('--channel-id', type=int, required=True, help='Channel id')
@click.option('--end', 'end_date', required=True, help='Period end date (YYYY-MM-DD)')
@with_appcontext
def period_status(channel_id, end_date):
    """Show whether the period ending on --end can be closed."""
    status = get_period_status(channel_id=channel_id, period_end_date=parse_iso_date(end_date))
    period = status.current_period
    click.echo(f"Period {period.start_date.isoformat()} .. {period.end_date.isoformat()} ({period.status})")
    if status.is_locked:
        click.echo(f"LOCKED through {status.lock_end_date.isoformat()}")
    if status.can_close:
        click.echo("PASS Period can be closed")
        return
    click.echo("BLOCKED Missing reconciliations:")
    for item in status.missing_reconciliations:
        click.echo(f"  - {item['scope']} {item['scopeRefId']}: {item['reason']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(channels_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(periods_group)
