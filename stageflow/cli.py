"""CLI tools for Stageflow administration."""

import asyncio

import click
from sqlalchemy.exc import IntegrityError

from stageflow.core.errors import ConfigurationError
from stageflow.db.models import Organization
from stageflow.db.session import SessionLocal


@click.group()
def cli():
    """Stageflow CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Organization name")
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, no spaces)")
@click.option("--timezone", default="America/New_York", show_default=True, help="IANA timezone")
def create_org(name: str, slug: str, timezone: str):
    """
    Create an organization (tenant).

    Example:
        python -m stageflow.cli create-org --name "Acme Events" --slug "acme" --timezone "America/Chicago"
    """
    from stageflow.services import entity_service

    slug = slug.lower().strip()
    if not slug.replace("-", "").replace("_", "").isalnum():
        click.echo("❌ Slug must be alphanumeric (with optional hyphens/underscores)")
        return

    db = SessionLocal()
    try:
        if db.query(Organization).filter(Organization.slug == slug).first():
            click.echo(f"❌ Organization with slug '{slug}' already exists")
            return
        org = entity_service.create_org(db, name=name, slug=slug, timezone=timezone)
        click.echo(f"✓ Created organization: {name}")
        click.echo(f"  ID: {org.id}")
        click.echo(f"  Timezone: {org.timezone}")
    except (ConfigurationError, IntegrityError) as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--org-slug", required=True, help="Organization slug")
@click.option("--email", required=True, help="User email")
@click.option("--name", "display_name", required=True, help="Display name")
@click.option("--phone", default=None, help="Phone number for owner SMS steps")
def create_user(org_slug: str, email: str, display_name: str, phone: str | None):
    """
    Create an owning user that automation steps can notify.

    Example:
        python -m stageflow.cli create-user --org-slug acme --email "sam@acme.com" --name "Sam"
    """
    from stageflow.services import entity_service

    db = SessionLocal()
    try:
        org = db.query(Organization).filter(Organization.slug == org_slug.lower()).first()
        if not org:
            click.echo(f"❌ Organization not found: {org_slug}")
            return
        user = entity_service.create_user(db, org.id, email=email, display_name=display_name, phone=phone)
        click.echo(f"✓ Created user {user.email}")
        click.echo(f"  ID: {user.id}")
    except (ValueError, IntegrityError) as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--count", default=1, show_default=True, help="Number of sweeps to run")
def sweep(count: int):
    """
    Run dispatcher sweeps once, without the polling loop.

    Example:
        python -m stageflow.cli sweep --count 1
    """
    from stageflow.services.dispatcher import Dispatcher

    dispatcher = Dispatcher()

    async def _run():
        for _ in range(count):
            with SessionLocal() as db:
                result = await dispatcher.run_sweep(db)
            click.echo(
                f"✓ claimed={result.claimed} sent={result.sent} retried={result.retried} "
                f"failed={result.failed} canceled={result.canceled} skipped={result.skipped} reclaimed={result.reclaimed}"
            )

    asyncio.run(_run())


if __name__ == "__main__":
    cli()
