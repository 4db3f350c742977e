"""Tests for the admin CLI."""
from click.testing import CliRunner

from stageflow.cli import cli
from stageflow.db.models import Organization, User


def test_create_org_and_user(db):
    runner = CliRunner()

    result = runner.invoke(
        cli, ["create-org", "--name", "Acme Events", "--slug", "Acme", "--timezone", "America/Chicago"]
    )
    assert result.exit_code == 0
    assert "Created organization" in result.output

    result = runner.invoke(
        cli,
        ["create-user", "--org-slug", "acme", "--email", "Sam@Acme.test", "--name", "Sam", "--phone", "5550104000"],
    )
    assert result.exit_code == 0

    org = db.query(Organization).filter(Organization.slug == "acme").one()
    user = db.query(User).filter(User.organization_id == org.id).one()
    assert org.timezone == "America/Chicago"
    assert user.email == "sam@acme.test"
    assert user.phone == "+15550104000"


def test_create_org_rejects_bad_input(db):
    runner = CliRunner()

    result = runner.invoke(cli, ["create-org", "--name", "Bad", "--slug", "has space"])
    assert "Slug must be alphanumeric" in result.output

    result = runner.invoke(cli, ["create-org", "--name", "Bad", "--slug", "bad", "--timezone", "Mars/Olympus"])
    assert "Unknown timezone" in result.output
    assert db.query(Organization).count() == 0


def test_sweep_with_nothing_due(db):
    result = CliRunner().invoke(cli, ["sweep"])

    assert result.exit_code == 0
    assert "claimed=0" in result.output
