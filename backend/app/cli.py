# Overview: Flask CLI command groups for bootstrap, inspection, and automation setup.

# backend/app/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to app (PowerShell: $env:FLASK_APP="app").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and one default user per role.
# - python -m flask system reset-db --yes
#   Drop and recreate every table (development only).
# - python -m flask system verify-history [--request-id 7]
#   Replay stored request histories against the transition table.
#
# Users:
# - python -m flask users list [--role admin] [--active-only]
# - python -m flask users create --email gm@vista.local --name "GM" --password "Password123!" --role general_manager
# - python -m flask users deactivate someone@vista.local
#
# Cart automation:
# - python -m flask automation generate-key
#   Print a fresh base64 ENCRYPTION_KEY.
# - python -m flask automation set-credentials --identity buyer@example.com --marketplace www.amazon.com.mx
#   Store (encrypted) retailer credentials; prompts for the secret.
# - python -m flask automation status
#   Show the stored account (never the secret) and the browser session state.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import PurchaseRequest, User
from .models.auth import ROLE_ADMIN, VALID_ROLES
from .services.auth_service import create_user, deactivate_user, PasswordValidationError
from .services import approval_service, automation_config_service
from .services.approval_service import HistoryIntegrityError
from .services.credential_vault import CryptoError, generate_key
from .validation import ValidationError


DEFAULT_USERS = (
    ("admin@vista.local", "Admin", "admin"),
    ("gm@vista.local", "General Manager", "general_manager"),
    ("scm@vista.local", "Supply Chain Manager", "supply_chain_manager"),
    ("employee@vista.local", "Employee", "employee"),
)


@click.group('system')
def system_group():
    """Schema bootstrap and history checks."""


@system_group.command('init')
@click.option('--password', default='Password123!', show_default=True, help='Password for the default users')
@with_appcontext
def init_system(password):
    """
    Create tables and one default user per role.

    Users: admin@vista.local, gm@vista.local, scm@vista.local, employee@vista.local

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing system...")
    db.create_all()
    click.echo("PASS Tables ready")

    for email, name, role in DEFAULT_USERS:
        if db.session.query(User).filter_by(email=email).first():
            click.echo(f"SKIP User {email} already exists")
            continue
        try:
            create_user(email=email, name=name, password=password, role=role)
        except PasswordValidationError as e:
            raise click.ClickException(f"Password validation failed: {e}")
        click.echo(f"PASS Created user {email} ({role})")

    click.echo("DONE System initialized")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@with_appcontext
def reset_db(yes):
    """Drop and recreate every table. Development and tests only."""
    if not yes:
        click.confirm(f"Drop all data in {db.engine.url.render_as_string(hide_password=True)}?", abort=True)
    db.drop_all()
    db.create_all()
    click.echo("PASS Schema recreated (empty). Next: python -m flask system init")


@system_group.command('verify-history')
@click.option('--request-id', type=int, help='Check a single request')
@with_appcontext
def verify_history_cli(request_id):
    """Replay each request's history and check it ends in the stored status."""
    query = db.session.query(PurchaseRequest).order_by(PurchaseRequest.id)
    if request_id:
        query = query.filter(PurchaseRequest.id == request_id)

    checked = 0
    failures = 0
    for req in query.all():
        checked += 1
        try:
            approval_service.verify_request_history(req)
        except HistoryIntegrityError as e:
            failures += 1
            click.echo(f"FAIL {req.request_number}: {e}")

    click.echo(f"Checked {checked} requests, {failures} with invalid history.")
    if failures:
        raise SystemExit(1)


@click.group('users')
def users_group():
    """User accounts."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--name', prompt=True, help='Display name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), prompt=True, help='Role')
@click.option('--department', default=None, help='Department')
@with_appcontext
def create_user_cli(email, name, password, role, department):
    """Create a user. The password must pass the strength rules."""
    try:
        user = create_user(email=email, name=name, password=password, role=role, department=department)
    except (PasswordValidationError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created {user.email} as {user.role} (id {user.id})")


@users_group.command('deactivate')
@click.argument('email')
@with_appcontext
def deactivate_user_cli(email):
    """Block a user from logging in and revoke their sessions."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if user is None:
        raise click.ClickException(f"No user with email {email}")
    if not user.is_active:
        click.echo(f"SKIP {user.email} is already inactive")
        return
    revoked = deactivate_user(user)
    click.echo(f"PASS Deactivated {user.email}; revoked {revoked} session(s)")


@users_group.command('list')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), help='Filter by role')
@click.option('--active-only', is_flag=True, help='Hide deactivated users')
@with_appcontext
def list_users(role, active_only):
    """Table of users ordered by id."""
    query = db.session.query(User).order_by(User.id)
    if role:
        query = query.filter_by(role=role)
    if active_only:
        query = query.filter(User.is_active.is_(True))

    users = query.all()
    if not users:
        click.echo("No users found.")
        return

    rule = "-" * 96
    click.echo(rule)
    click.echo(f"{'ID':<5} {'Email':<32} {'Name':<25} {'Role':<24} Active")
    click.echo(rule)
    for user in users:
        click.echo(f"{user.id:<5} {user.email:<32} {user.name:<25} {user.role:<24} {'yes' if user.is_active else 'no'}")
    click.echo(rule)


@click.group('automation')
def automation_group():
    """Cart automation account and session commands."""


@automation_group.command('generate-key')
def generate_key_cli():
    """Print a new random ENCRYPTION_KEY (base64)."""
    click.echo(generate_key())


@automation_group.command('set-credentials')
@click.option('--identity', prompt=True, help='Retailer login (email or phone)')
@click.option('--secret', prompt=True, hide_input=True, confirmation_prompt=True, help='Retailer password')
@click.option('--marketplace', default=None, help='Retailer domain, e.g. www.amazon.com.mx')
@click.option('--inactive', is_flag=True, help='Store the account disabled')
@with_appcontext
def set_credentials_cli(identity, secret, marketplace, inactive):
    """Store the retailer account; the secret is encrypted before it is saved."""
    actor = db.session.query(User).filter_by(role=ROLE_ADMIN, is_active=True).order_by(User.id).first()
    if actor is None:
        raise click.ClickException("No active admin user. Run 'python -m flask system init' first.")

    try:
        config = automation_config_service.save_config(
            actor,
            identity=identity,
            secret=secret,
            marketplace=marketplace,
            is_active=not inactive,
        )
    except (ValidationError, CryptoError) as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Stored automation account {config.identity} on {config.marketplace}")


@automation_group.command('status')
@with_appcontext
def automation_status_cli():
    """Show the stored account and the browser session state."""
    config = automation_config_service.describe_config()
    click.echo(f"Account:      {config['identity'] or '(not configured)'}")
    click.echo(f"Marketplace:  {config['marketplace']}")
    click.echo(f"Secret:       {'stored' if config['has_secret'] else 'missing'}")
    click.echo(f"Active:       {'Yes' if config['is_active'] else 'No'}")
    click.echo(f"Last test:    {config['last_test_at'] or '-'} {config['test_status'] or ''}")

    queue = current_app.extensions.get("cart_jobs")
    if queue is not None:
        status = queue.status()
        click.echo(f"Worker:       {status['worker_mode']} ({'enabled' if status['enabled'] else 'disabled'})")
        click.echo(f"Queue depth:  {status['queue_depth']}")
        click.echo(f"Logged in:    {'Yes' if status['logged_in'] else 'No'}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(automation_group)
