"""
Tests for the moraine command line.
"""

import json

import pytest
from click.testing import CliRunner

from conftest import ACCOUNT, BACKEND, CERTIFICATE, DOMAIN, FRONTEND, FRONTEND_BUCKET, REGION, SECRETS
from conftest import RecordingBuilder, prepare_standard_site
from moraine.cli.main import cli
from moraine.providers.local import LocalProvider

CLEARED = [
    "MORAINE_ACCOUNT",
    "CDK_DEFAULT_ACCOUNT",
    "MORAINE_REGION",
    "CDK_DEFAULT_REGION",
    "AWS_REGION",
    "DOMAIN_NAME",
    "MORAINE_SERVICE",
    "AWS_PROFILE",
]


@pytest.fixture
def local(config, monkeypatch):
    """A prepared in-memory provider handed to every command."""
    provider = LocalProvider(config)
    prepare_standard_site(provider)
    monkeypatch.setattr("moraine.cli.main.create_provider", lambda cfg: provider)
    monkeypatch.setattr("moraine.cli.main.BuildRunner", lambda build_dir: RecordingBuilder())
    return provider


@pytest.fixture
def run(tmp_path):
    """Invoke the CLI against the test account with a scrubbed environment."""
    runner = CliRunner()
    state_file = tmp_path / "cli-state.yaml"

    def invoke(*args, domain=DOMAIN, secrets=SECRETS):
        env = {key: None for key in CLEARED}
        env.update({name: None for name in SECRETS})
        env.update(secrets)
        options = ["--account", ACCOUNT, "--region", REGION, "--state-file", str(state_file)]
        if domain:
            options += ["--domain", domain]
        return runner.invoke(cli, options + list(args), env=env)

    invoke.state_file = state_file
    return invoke


class TestPlanCommand:
    """Tests for 'moraine plan'."""

    def test_text(self, run):
        result = run("plan")

        assert result.exit_code == 0
        assert "Deploy Order:" in result.output
        assert f"1. {CERTIFICATE}" in result.output
        assert f"3. {FRONTEND}" in result.output
        assert f"{CERTIFICATE}.CertificateArn" in result.output

    def test_json(self, run):
        result = run("plan", "--format", "json")

        assert result.exit_code == 0
        summary = json.loads(result.output)
        assert summary["order"] == [CERTIFICATE, BACKEND, FRONTEND]
        assert summary["regions"] == ["us-east-1", REGION]

    def test_invalid_plan_file(self, run, tmp_path):
        plan_file = tmp_path / "plan.yaml"
        plan_file.write_text("stacks: 3\n")

        result = run("--plan", str(plan_file), "plan")

        assert result.exit_code == 1
        assert "Invalid plan" in result.output


class TestDeployCommand:
    """Tests for 'moraine deploy'."""

    def test_success(self, run, local):
        result = run("deploy")

        assert result.exit_code == 0
        assert "Deployment: Complete" in result.output
        assert f"✓ {FRONTEND} [{REGION}]" in result.output
        assert f"WebsiteURL: https://{DOMAIN}" in result.output
        assert run.state_file.exists()

    def test_partial_failure(self, run, local):
        local.platform.fail_deploy[BACKEND] = "Service did not stabilize"

        result = run("deploy")

        assert result.exit_code == 1
        assert "Deployment: PartiallyFailed" in result.output
        assert f"✓ {CERTIFICATE}" in result.output
        assert f"✗ {BACKEND} failed at step 'deploy'" in result.output
        assert f"- {FRONTEND} skipped: depends on failed stack '{BACKEND}'" in result.output

    def test_missing_secret(self, run, local):
        secrets = {key: value for key, value in SECRETS.items() if key != "OPENAI_API_KEY"}

        result = run("deploy", secrets=secrets)

        assert result.exit_code == 1
        assert "Deployment aborted" in result.output
        assert "OPENAI_API_KEY" in result.output
        assert local.platform.calls == []

    def test_missing_domain(self, run, local):
        result = run("deploy", domain=None)

        assert result.exit_code == 1
        assert "Missing required input: domain root" in result.output
        assert local.toolkit.calls == []


class TestDestroyCommand:
    """Tests for 'moraine destroy'."""

    def test_destroy(self, run, local):
        run("deploy")
        local.object_store.create_bucket(FRONTEND_BUCKET, ["index.html"])

        result = run("destroy")

        assert result.exit_code == 0
        assert "Teardown: complete" in result.output
        assert f"✓ {FRONTEND} destroyed (drained {FRONTEND_BUCKET})" in result.output
        assert local.platform.stacks.keys() <= {("CDKToolkit", "us-east-1"), ("CDKToolkit", REGION)}

    def test_force_after_stuck_delete(self, run, local):
        run("deploy")
        local.object_store.create_bucket(FRONTEND_BUCKET, ["index.html"], policy=True)
        local.platform.stuck_resources[FRONTEND] = {"WebsiteBucketPolicy"}

        first = run("destroy")

        assert first.exit_code == 1
        assert f"✗ {FRONTEND} is DeleteFailed" in first.output
        assert f"- {BACKEND} kept: still used by '{FRONTEND}'" in first.output

        second = run("destroy", "--force")

        assert second.exit_code == 0
        assert "forced" in second.output
        assert "Teardown: complete" in second.output


class TestBootstrapCommand:
    """Tests for 'moraine bootstrap'."""

    def test_idempotent(self, run, local):
        first = run("bootstrap")
        second = run("bootstrap")

        assert first.exit_code == 0
        assert f"✓ aws://{ACCOUNT}/us-east-1 bootstrapped" in first.output
        assert f"✓ aws://{ACCOUNT}/{REGION} already bootstrapped" in second.output
        assert len(local.toolkit.calls) == 2

    def test_wrong_account(self, run, config, monkeypatch):
        provider = LocalProvider(config, account="999999999999")
        monkeypatch.setattr("moraine.cli.main.create_provider", lambda cfg: provider)

        result = run("bootstrap")

        assert result.exit_code == 1
        assert "999999999999" in result.output
        assert provider.toolkit.calls == []
