"""Webmail proxy CLI interface."""

import sys
from pathlib import Path

import click
from keyring.errors import KeyringError

from webmail_proxy.lib.config import app_config, storage_config
from webmail_proxy.lib.logger import get_logger, hash_email
from webmail_proxy.lib.migrations import MigrationManager
from webmail_proxy.lib.session_db import SessionDatabase
from webmail_proxy.lib.utils import ensure_secure_directory, validate_email_address
from webmail_proxy.mail.discovery import MailDiscovery
from webmail_proxy.models.account import utcnow
from webmail_proxy.storage.secrets import ENCRYPTION_KEY_KEY, JWT_SECRET_KEY, SecretStore

logger = get_logger(__name__)


@click.group()
@click.version_option(version="0.1.0", prog_name="webmail-proxy")
def cli():
    """Webmail Proxy - REST backend for IMAP/SMTP webmail clients."""
    pass


@cli.command()
@click.option("--host", default=None, help="Bind address (default: HOST)")
@click.option("--port", type=int, default=None, help="Port (default: PORT)")
@click.option("--debug", is_flag=True, help="Run with the Flask debugger")
def serve(host, port, debug):
    """Run the HTTP API server."""
    from webmail_proxy.api.app import create_app

    host = host or app_config.host
    port = port or app_config.port

    try:
        app = create_app()
    except Exception as e:
        click.echo(f"✗ Failed to start: {e}", err=True)
        sys.exit(1)

    sessions = app.extensions["webmail_proxy"].sessions
    sessions.start_cleanup_thread()
    click.echo(f"Webmail proxy listening on http://{host}:{port} ({app_config.environment})")
    try:
        app.run(host=host, port=port, debug=debug, threaded=True, use_reloader=False)
    finally:
        sessions.stop_cleanup_thread()


def _migration_manager(db_path) -> MigrationManager:
    path = Path(db_path) if db_path else storage_config.database_path
    ensure_secure_directory(path.parent, mode=0o700)
    return MigrationManager(path)


@cli.command()
@click.option("--target", type=int, default=None, help="Target schema version (default: latest)")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None, help="Database file")
def migrate(target, db_path):
    """Apply pending schema migrations."""
    manager = _migration_manager(db_path)
    before = manager.get_current_version()

    try:
        manager.migrate(target)
    except Exception as e:
        click.echo(f"✗ Migration failed: {e}", err=True)
        sys.exit(1)

    after = manager.get_current_version()
    if after == before:
        click.echo(f"Schema already at version {after}")
    else:
        click.echo(f"✓ Migrated schema from version {before} to {after}")


@cli.command()
@click.option("--target", type=int, required=True, help="Version to roll back to")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None, help="Database file")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def rollback(target, db_path, yes):
    """Roll the schema back to an earlier version."""
    manager = _migration_manager(db_path)
    current = manager.get_current_version()
    if target >= current:
        click.echo(f"Schema is at version {current}; nothing to roll back")
        return

    if not yes and not click.confirm(f"Roll back schema from {current} to {target}? Data may be lost"):
        click.echo("Rollback cancelled.")
        return

    try:
        manager.rollback(target)
    except Exception as e:
        click.echo(f"✗ Rollback failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Rolled back schema to version {target}")


@cli.command()
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None, help="Database file")
def sweep(db_path):
    """Delete expired sessions."""
    db = SessionDatabase(db_path)
    try:
        deleted = db.delete_expired_sessions(utcnow())
        click.echo(f"✓ Deleted {deleted} expired sessions")
    finally:
        db.close()


@cli.command()
@click.argument("email")
def discover(email):
    """Show the IMAP/SMTP settings discovered for EMAIL."""
    if not validate_email_address(email):
        click.echo("✗ Invalid email address", err=True)
        sys.exit(1)

    result = MailDiscovery().discover(email.lower())
    click.echo(f"Source: {result.source}{'' if result.found else ' (guessed)'}")
    for label, endpoint in (("IMAP", result.config.imap), ("SMTP", result.config.smtp)):
        click.echo(f"  {label}: {endpoint.host}:{endpoint.port} ({endpoint.security_mode().value})")


@cli.command("init-secrets")
@click.option("--force", is_flag=True, help="Replace existing secrets")
def init_secrets(force):
    """Generate the JWT and encryption secrets in the OS keyring."""
    click.echo("Secret Setup")
    click.echo("============")

    if force and not click.confirm(
        "Replacing secrets signs out every user and makes stored passwords unreadable. Continue?"
    ):
        click.echo("Setup cancelled.")
        return

    store = SecretStore()
    try:
        for name in (JWT_SECRET_KEY, ENCRYPTION_KEY_KEY):
            _, created = store.generate(name, force=force)
            click.echo(f"{'✓ Generated' if created else '• Kept existing'} {name}")
    except KeyringError as e:
        click.echo(f"✗ Keyring error: {e}", err=True)
        sys.exit(1)

    click.echo("  Secrets saved securely in system keyring")


@cli.command()
@click.argument("email")
@click.option("--revoke-all", is_flag=True, help="Revoke every session for the account")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None, help="Database file")
def sessions(email, revoke_all, db_path):
    """List (or revoke) the sessions of EMAIL."""
    db = SessionDatabase(db_path)
    try:
        user = db.get_user_by_email(email.lower())
        if user is None:
            click.echo(f"✗ No account for {email}", err=True)
            sys.exit(1)

        if revoke_all:
            deleted = db.delete_user_sessions(user.id)
            logger.info(f"Revoked {deleted} sessions for user {hash_email(email)} from CLI")
            click.echo(f"✓ Revoked {deleted} sessions")
            return

        rows = db.list_user_sessions(user.id)
        if not rows:
            click.echo("No active sessions.")
            return

        now = utcnow()
        for session in rows:
            state = "expired" if session.is_expired(now) else "active"
            click.echo(f"Session: {session.jti[:8]}… ({state})")
            click.echo(f"  Created: {session.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
            click.echo(f"  Last used: {session.last_used_at.strftime('%Y-%m-%d %H:%M:%S')}")
            click.echo(f"  Expires: {session.expires_at.strftime('%Y-%m-%d %H:%M:%S')}")
            if session.ip_address:
                click.echo(f"  IP: {session.ip_address}")
            click.echo()
    finally:
        db.close()


if __name__ == "__main__":
    cli()
