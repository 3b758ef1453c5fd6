"""CLI commands for the VERI*FACTU API."""

import json
from dataclasses import asdict

import click

from verifactu_api.db.migrations import head_revision, upgrade_to_head
from verifactu_api.db.seed import seed_all
from verifactu_api.db.session import SessionLocal, engine
from verifactu_api.ledger.service import RegistryService
from verifactu_api.monitoring.certificate_monitor import CertificateMonitor
from verifactu_api.transmission.worker import SubmissionWorker


@click.group()
def cli():
    """VERI*FACTU API CLI."""
    pass


@cli.command("init-db")
def init_db():
    """Apply database migrations up to head."""
    upgrade_to_head(engine)
    click.echo(f"✓ Schema at revision {head_revision()}.")


@cli.command()
def seed():
    """Seed initial data."""
    click.echo("Seeding initial data...")
    db = SessionLocal()
    try:
        seed_all(db)
        click.echo("✓ Seed data created.")
    except Exception as e:
        click.echo(f"✗ Error seeding data: {e}", err=True)
        db.rollback()
    finally:
        db.close()


@cli.command()
@click.option("--tenant", "tenant_id", type=int, default=None, help="Run a single tenant (ignores auto-submit).")
def tick(tenant_id):
    """Run one submission worker tick."""
    worker = SubmissionWorker()
    if tenant_id is not None:
        result = worker.run_tenant(tenant_id, manual=True)
        click.echo(json.dumps(asdict(result)))
    else:
        click.echo(json.dumps(worker.tick().as_dict()))


@cli.command("check-certificates")
def check_certificates():
    """Check certificate expiry for all enabled tenants and notify."""
    db = SessionLocal()
    try:
        statuses = CertificateMonitor(db).check_all()
        for status in statuses:
            click.echo(f"tenant {status.tenant_id}: {status.level} ({status.message})")
    finally:
        db.close()


@cli.command("verify-chain")
@click.argument("tenant_id", type=int)
def verify_chain(tenant_id):
    """Replay a tenant's hash chain."""
    db = SessionLocal()
    try:
        valid, error = RegistryService(db).verify_chain(tenant_id)
    finally:
        db.close()
    if valid:
        click.echo(f"✓ Chain for tenant {tenant_id} is intact.")
    else:
        click.echo(f"✗ Chain for tenant {tenant_id} is broken: {error}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
