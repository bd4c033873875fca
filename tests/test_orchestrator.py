"""
Tests for the deployment orchestrator.
"""

import pytest

from conftest import (
    ACCOUNT,
    BACKEND,
    CERTIFICATE,
    FRONTEND,
    REGION,
    RecordingBuilder,
    simple,
)
from moraine.core import DeployLedger, DeploymentPlan, standard_plan
from moraine.core.stack import StackStatus
from moraine.errors import BootstrapFailed, BuildFailed, ConfigurationError
from moraine.operations import DeploymentOrchestrator, PlanStatus
from moraine.providers.local import LocalProvider


def orchestrate(plan, provider, builder=None, ledger=None):
    return DeploymentOrchestrator.from_provider(
        plan, provider, builder=builder or RecordingBuilder(), ledger=ledger
    ).run()


class TestStandardDeploy:
    """Tests for deploying the standard certificate/backend/frontend plan."""

    def test_complete(self, standard_site, provider, builder):
        report = orchestrate(standard_site, provider, builder)

        assert report.status is PlanStatus.COMPLETE
        assert report.order == [CERTIFICATE, BACKEND, FRONTEND]
        assert all(result.status == StackStatus.DEPLOYED for result in report.results.values())
        assert provider.platform.calls_for("create") == [CERTIFICATE, BACKEND, FRONTEND]

    def test_regions_bootstrapped_first(self, standard_site, provider, builder):
        report = orchestrate(standard_site, provider, builder)

        assert provider.toolkit.calls == [(ACCOUNT, "us-east-1"), (ACCOUNT, REGION)]
        assert [record.region for record in report.bootstrap] == ["us-east-1", REGION]

    def test_outputs_feed_consumers(self, standard_site, provider, builder):
        """Certificate and backend outputs become frontend parameters."""
        orchestrate(standard_site, provider, builder)

        frontend = standard_site.get(FRONTEND)
        assert frontend.parameters["CertificateArnParam"] == "arn:aws:acm:us-east-1:123:certificate/abc"
        assert frontend.parameters["ApiEndpoint"] == "https://api.example.com/"
        assert frontend.outputs["CertificateArn"] == "arn:aws:acm:us-east-1:123:certificate/abc"

    def test_backend_gets_newest_image_and_secrets(self, standard_site, provider, builder):
        orchestrate(standard_site, provider, builder)

        backend = standard_site.get(BACKEND)
        assert backend.parameters["ImageUri"] == "registry.local/resume-bot-backend:v3"
        assert backend.parameters["OpenAiApiKey"] == "sk-test"
        assert backend.parameters["LangsmithApiKey"] == "ls-test"

    def test_frontend_built_with_endpoint(self, standard_site, provider, builder):
        orchestrate(standard_site, provider, builder)

        assert builder.calls == [(FRONTEND, {"VITE_API_URL": "https://api.example.com/"})]

    def test_ledger_records_order(self, standard_site, provider, builder, config):
        ledger = DeployLedger(config.state_file)

        orchestrate(standard_site, provider, builder, ledger)

        saved = DeployLedger.load(config.state_file)
        assert saved.deploy_order == [CERTIFICATE, BACKEND, FRONTEND]
        assert saved.outputs[BACKEND]["APIEndpoint"] == "https://api.example.com/"

    def test_redeploy_is_idempotent(self, standard_site, provider, config):
        """A second run with unchanged inputs succeeds with the same outputs."""
        first = orchestrate(standard_site, provider, ledger=DeployLedger(config.state_file))

        rerun_plan = DeploymentPlan(standard_plan(), config)
        second = orchestrate(rerun_plan, provider, ledger=DeployLedger.load(config.state_file))

        assert second.status is PlanStatus.COMPLETE
        for name in second.order:
            assert second.outputs(name) == first.outputs(name)
            assert second.results[name].unchanged
        assert provider.platform.calls_for("create") == [CERTIFICATE, BACKEND, FRONTEND]
        assert len(provider.toolkit.calls) == 2


class TestPartialFailure:
    """Tests for failure isolation."""

    @pytest.fixture
    def chain(self, config):
        # a -> b -> d, c independent
        descriptors = [
            simple("a", outputs=["Out"]),
            simple("b", outputs=["Out"], inputs={"X": "a.Out"}),
            simple("c"),
            simple("d", inputs={"Y": "b.Out"}),
        ]
        return DeploymentPlan(descriptors, config)

    def test_dependents_never_invoked(self, chain, provider):
        """A failed producer blocks its consumers, independent stacks still deploy."""
        provider.platform.fail_deploy["a"] = "Resource creation cancelled"

        report = orchestrate(chain, provider)

        assert report.status is PlanStatus.PARTIALLY_FAILED
        assert report.results["a"].status == StackStatus.FAILED
        assert report.results["a"].step == "deploy"
        assert "Resource creation cancelled" in str(report.results["a"].error)
        assert report.results["b"].skipped_because == "depends on failed stack 'a'"
        assert report.results["d"].skipped_because == "depends on failed stack 'a'"
        assert report.results["c"].succeeded
        assert provider.platform.calls_for("create") == ["a", "c"]

    def test_failed_report_lists(self, chain, provider):
        provider.platform.fail_deploy["b"] = "boom"

        report = orchestrate(chain, provider)

        assert [r.name for r in report.succeeded] == ["a", "c"]
        assert [r.name for r in report.failed] == ["b"]
        assert [r.name for r in report.skipped] == ["d"]

    def test_missing_output_blocks_consumer(self, config, provider):
        plan = DeploymentPlan([simple("a"), simple("b", inputs={"X": "a.Url"})], config)

        report = orchestrate(plan, provider)

        assert report.results["a"].succeeded
        assert report.results["b"].step == "resolve-inputs"
        assert report.results["b"].status == StackStatus.FAILED
        assert provider.platform.calls_for("create") == ["a"]

    def test_registry_failure(self, standard_site, provider, builder):
        """No deployable image fails the backend and everything that needs it."""
        provider.registry.repositories.clear()

        report = orchestrate(standard_site, provider, builder)

        assert report.results[CERTIFICATE].succeeded
        assert report.results[BACKEND].step == "resolve-artifact"
        assert report.results[FRONTEND].skipped
        assert builder.calls == []

    def test_build_failure(self, standard_site, provider):
        class FailingBuilder(RecordingBuilder):
            def run(self, stack, parameters):
                if stack.descriptor.build is not None:
                    raise BuildFailed("npm exited with code 1", stack=stack.name)

        report = orchestrate(standard_site, provider, FailingBuilder())

        assert report.results[FRONTEND].step == "build"
        assert FRONTEND not in provider.platform.calls_for("create")

    def test_bootstrap_failure_is_fatal(self, standard_site, provider, builder):
        provider.toolkit.fail_regions.add("us-east-1")

        report = orchestrate(standard_site, provider, builder)

        assert report.status is PlanStatus.PARTIALLY_FAILED
        assert isinstance(report.error, BootstrapFailed)
        assert all(result.skipped for result in report.results.values())
        assert provider.platform.calls_for("create") == []

    def test_status_api_error_is_isolated(self, chain, provider):
        """A rejected status call fails that stack only, and the run still reports."""
        provider.platform.unavailable["a"] = "Rate exceeded"

        report = orchestrate(chain, provider)

        assert report.status is PlanStatus.PARTIALLY_FAILED
        assert report.results["a"].status == StackStatus.FAILED
        assert report.results["a"].step == "status"
        assert "Rate exceeded" in str(report.results["a"].error)
        assert report.results["b"].skipped_because == "depends on failed stack 'a'"
        assert report.results["c"].succeeded

    def test_ledger_saved_after_each_stack(self, standard_site, provider, config):
        """Stacks deployed before an interruption stay recorded."""
        class InterruptedBuilder(RecordingBuilder):
            def run(self, stack, parameters):
                if stack.descriptor.build is not None:
                    raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            orchestrate(standard_site, provider, InterruptedBuilder(), DeployLedger(config.state_file))

        assert DeployLedger.load(config.state_file).deploy_order == [CERTIFICATE, BACKEND]
        assert provider.platform.calls_for("create") == []


class TestValidation:
    """Configuration problems abort before any cloud call."""

    def test_missing_secret(self, config):
        config = config.model_copy(update={"secrets": {}})
        provider = LocalProvider(config)
        plan = DeploymentPlan(standard_plan(), config)

        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY") as excinfo:
            orchestrate(plan, provider)
        assert excinfo.value.stack == BACKEND
        assert provider.platform.calls == []
        assert provider.toolkit.calls == []

    def test_missing_domain(self, config):
        config = config.model_copy(update={"domain_root": None})
        provider = LocalProvider(config)

        with pytest.raises(ConfigurationError, match="domain root"):
            orchestrate(DeploymentPlan([simple("a")], config), provider)
        assert provider.toolkit.calls == []

    def test_wrong_account(self, config):
        provider = LocalProvider(config, account="999999999999")

        with pytest.raises(ConfigurationError, match="999999999999"):
            orchestrate(DeploymentPlan([simple("a")], config), provider)
        assert provider.toolkit.calls == []
