"""
Tests for the teardown coordinator.
"""

import pytest

from conftest import BACKEND, CERTIFICATE, FRONTEND, FRONTEND_BUCKET, REGION, RecordingBuilder, simple
from moraine.core import DeployLedger, DeploymentPlan
from moraine.core.stack import StackStatus
from moraine.errors import PlatformOperationFailed
from moraine.operations import DeploymentOrchestrator, StackOperator, TeardownCoordinator


def deploy(plan, provider, ledger=None):
    report = DeploymentOrchestrator.from_provider(
        plan, provider, builder=RecordingBuilder(), ledger=ledger
    ).run()
    assert not report.failed
    return report


def teardown(plan, provider, ledger=None, force=False):
    return TeardownCoordinator.from_provider(plan, provider, ledger=ledger, force=force).run()


@pytest.fixture
def deployed_site(standard_site, provider, config):
    """Standard site deployed, with a populated and policy-protected bucket."""
    ledger = DeployLedger(config.state_file)
    deploy(standard_site, provider, ledger)
    provider.object_store.create_bucket(FRONTEND_BUCKET, ["index.html", "assets/app.js"], policy=True)
    return standard_site


class TestTeardown:
    """Tests for ordinary teardown."""

    def test_reverse_order_and_drain(self, deployed_site, provider, config):
        """The frontend bucket is drained, then stacks go consumers first."""
        ledger = DeployLedger.load(config.state_file)

        report = teardown(deployed_site, provider, ledger)

        assert report.complete
        assert report.order == [FRONTEND, BACKEND, CERTIFICATE]
        assert provider.platform.calls_for("delete") == [FRONTEND, BACKEND, CERTIFICATE]
        assert report.results[FRONTEND].drained == [FRONTEND_BUCKET]
        assert provider.object_store.calls[0] == ("drain", FRONTEND_BUCKET)
        assert DeployLedger.load(config.state_file).deploy_order == []

    def test_exact_reverse_of_recorded_order(self, config, provider):
        """Independent stacks are destroyed in the reverse of how they were deployed."""
        plan = DeploymentPlan([simple("a"), simple("b"), simple("c")], config)
        deploy(plan, provider)
        ledger = DeployLedger(config.state_file)
        for name in ["b", "c", "a"]:
            ledger.record_deploy(name, REGION, {})

        report = teardown(plan, provider, ledger)

        assert report.order == ["a", "c", "b"]
        assert provider.platform.calls_for("delete") == ["a", "c", "b"]

    def test_blocked_delete_drains_and_retries(self, config, provider):
        """Storage without the drain flag is drained only after the platform refuses."""
        provider.platform.add_resource("data", "DataBucket", "AWS::S3::Bucket", "data-bucket")
        plan = DeploymentPlan([simple("data")], config)
        deploy(plan, provider)
        provider.object_store.create_bucket("data-bucket", ["report.csv"])

        report = teardown(plan, provider)

        result = report.results["data"]
        assert result.succeeded
        assert result.drained == ["data-bucket"]
        assert provider.platform.calls_for("delete") == ["data", "data"]

    def test_status_api_error_keeps_producers(self, deployed_site, provider, config):
        """A rejected status call is reported and the producers are left in place."""
        provider.platform.unavailable[FRONTEND] = "Rate exceeded"

        report = teardown(deployed_site, provider, DeployLedger.load(config.state_file))

        frontend = report.results[FRONTEND]
        assert isinstance(frontend.error, PlatformOperationFailed)
        assert frontend.error.step == "status"
        assert report.results[BACKEND].skipped_because == f"still used by '{FRONTEND}'"
        assert provider.platform.calls_for("delete") == []

    def test_ledger_saved_after_each_destroy(self, deployed_site, provider, config, monkeypatch):
        """Stacks destroyed before an interruption are already forgotten."""
        destroy_stack = TeardownCoordinator.destroy_stack

        def interrupt_at_certificate(coordinator, stack):
            if stack.name == CERTIFICATE:
                raise KeyboardInterrupt
            return destroy_stack(coordinator, stack)

        monkeypatch.setattr(TeardownCoordinator, "destroy_stack", interrupt_at_certificate)

        with pytest.raises(KeyboardInterrupt):
            teardown(deployed_site, provider, DeployLedger.load(config.state_file))

        assert DeployLedger.load(config.state_file).deploy_order == [CERTIFICATE]

    def test_already_destroyed(self, config, provider):
        plan = DeploymentPlan([simple("a")], config)

        report = teardown(plan, provider)

        assert report.complete
        assert provider.platform.calls_for("delete") == []


class TestStuckDelete:
    """Tests for stacks that end in DeleteFailed."""

    def test_without_force(self, deployed_site, provider):
        """Without --force the stuck stack and its producers are left alone."""
        provider.platform.stuck_resources[FRONTEND] = {"WebsiteBucketPolicy"}

        report = teardown(deployed_site, provider)

        assert not report.complete
        frontend = report.results[FRONTEND]
        assert frontend.status == StackStatus.DELETE_FAILED
        assert isinstance(frontend.error, PlatformOperationFailed)
        assert report.results[BACKEND].skipped_because == f"still used by '{FRONTEND}'"
        assert report.results[CERTIFICATE].skipped_because == f"still used by '{FRONTEND}'"
        assert provider.platform.calls_for("delete") == [FRONTEND]

    def test_force_retains_blockers(self, deployed_site, provider):
        """The forced path skips the stuck policy and resumes the delete."""
        provider.platform.stuck_resources[FRONTEND] = {"WebsiteBucketPolicy"}

        report = teardown(deployed_site, provider, force=True)

        frontend = report.results[FRONTEND]
        assert report.complete
        assert frontend.forced
        assert frontend.retained == ["WebsiteBucketPolicy"]

    def test_second_pass_with_force(self, deployed_site, provider):
        """A stack left in DeleteFailed by an earlier run is recovered by a forced run."""
        provider.platform.stuck_resources[FRONTEND] = {"WebsiteBucketPolicy"}
        teardown(deployed_site, provider)

        report = teardown(deployed_site, provider, force=True)

        assert report.complete
        assert report.results[FRONTEND].forced

    def test_out_of_band_last_resort(self, deployed_site, provider):
        """When retaining is refused, the bucket is removed directly and the delete retried."""
        provider.platform.stuck_resources[FRONTEND] = {"WebsiteBucket"}
        provider.platform.reject_retain = True

        report = teardown(deployed_site, provider, force=True)

        assert report.complete
        assert ("remove_policy", FRONTEND_BUCKET) in provider.object_store.calls
        assert ("delete", FRONTEND_BUCKET) in provider.object_store.calls
        assert not provider.object_store.exists(FRONTEND_BUCKET, REGION)

    def test_manual_pass_needed(self, config, provider):
        """Resources that cannot be removed out-of-band leave the stack for a manual pass."""
        provider.platform.add_resource("cdn", "Distribution", "AWS::CloudFront::Distribution", "E123")
        provider.platform.stuck_resources["cdn"] = {"Distribution"}
        provider.platform.reject_retain = True
        plan = DeploymentPlan([simple("cdn")], config)
        StackOperator(provider.platform, config).deploy(plan.get("cdn"), {})

        report = teardown(plan, provider, force=True)

        result = report.results["cdn"]
        assert result.needs_manual_pass
        assert result.status == StackStatus.DELETE_FAILED
        assert report.remaining == [result]
