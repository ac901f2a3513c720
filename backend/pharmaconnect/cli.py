# Overview: Flask CLI command groups for bootstrap, user management and order inspection.

# backend/pharmaconnect/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Database bootstrap:
# - python -m flask marketplace init-db
#   Create all tables (development; use `flask db upgrade` for real deployments).
# - python -m flask marketplace reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users list [--role warehouse]
#   List marketplace parties.
# - python -m flask users create --username central --role warehouse --phone "+20100000000"
#   Create a pharmacy, warehouse or admin party.
# - python -m flask users issue-token central
#   Print a bearer token for a user (development only).
#
# Orders:
# - python -m flask orders timeline 42
#   Print an order's event timeline (bootstraps legacy orders).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .permissions import VALID_ROLES
from .decorators import issue_token
from .errors import MarketplaceError
from .services.event_service import get_order_timeline
from .time_utils import to_utc_z, utcnow


@click.group('marketplace')
def marketplace_group():
    """Database bootstrap commands."""


@marketplace_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@marketplace_group.command('reset-db')
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


@click.group('users')
def users_group():
    """Marketplace party management."""


@users_group.command('list')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), help='Filter by role')
@with_appcontext
def list_users(role):
    """List users with role and active status."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)
    users = query.order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Username':<25} {'Role':<12} {'Phone':<18} {'Active'}")
    click.echo("="*80)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<25} {user.role:<12} {user.phone or '-':<18} {active_str}")
    click.echo("="*80 + "\n")


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), prompt=True, help='Role')
@click.option('--email', default=None, help='Email address')
@click.option('--phone', default=None, help='Phone number (enables SMS copies)')
@click.option('--address', default=None, help='Postal address')
@with_appcontext
def create_user_cli(username, role, email, phone, address):
    """Create a pharmacy, warehouse or admin user."""
    if db.session.query(User).filter_by(username=username).first():
        click.echo(f"FAIL Username '{username}' already exists")
        return

    user = User(
        username=username,
        role=role,
        email=email,
        phone=phone,
        address=address,
        is_active=True,
        created_at=utcnow(),
    )
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created {role} '{username}' (ID: {user.id})")


@users_group.command('issue-token')
@click.argument('username')
@with_appcontext
def issue_token_cli(username):
    """Print a bearer token for USERNAME."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return
    if not user.is_active:
        click.echo(f"FAIL User '{username}' is deactivated")
        return
    click.echo(issue_token(user))


@click.group('orders')
def orders_group():
    """Order inspection commands."""


@orders_group.command('timeline')
@click.argument('order_id', type=int)
@with_appcontext
def order_timeline_cli(order_id):
    """Print the event timeline of ORDER_ID."""
    try:
        events = get_order_timeline(order_id)
    except MarketplaceError as e:
        click.echo(f"FAIL {e.message}")
        return

    for event in events:
        transition = ""
        if event.from_status or event.to_status:
            transition = f" {event.from_status or '-'} -> {event.to_status or '-'}"
        click.echo(f"{to_utc_z(event.created_at)}  {event.event_type:<32}{transition}  {event.message or ''}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(marketplace_group)
    app.cli.add_command(users_group)
    app.cli.add_command(orders_group)
