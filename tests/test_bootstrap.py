"""
Tests for region bootstrap.
"""

import pytest

from conftest import ACCOUNT, REGION
from moraine.core.stack import StackStatus
from moraine.errors import BootstrapFailed
from moraine.operations import RegionBootstrapper


@pytest.fixture
def bootstrapper(provider, config):
    return RegionBootstrapper(provider.platform, provider.toolkit, config, sleep=lambda s: None)


class TestRegionBootstrapper:
    """Tests for RegionBootstrapper."""

    def test_bootstraps_fresh_region(self, bootstrapper, provider):
        record = bootstrapper.ensure_bootstrapped(ACCOUNT, REGION)

        assert record.bootstrapped
        assert record.created
        assert record.version == 21
        assert provider.toolkit.calls == [(ACCOUNT, REGION)]

    def test_repeat_is_noop(self, bootstrapper, provider):
        """Bootstrapping the same region twice runs the toolkit once."""
        bootstrapper.ensure_bootstrapped(ACCOUNT, REGION)
        again = bootstrapper.ensure_bootstrapped(ACCOUNT, REGION)

        assert again.bootstrapped
        assert provider.toolkit.calls == [(ACCOUNT, REGION)]

    def test_existing_marker_accepted(self, provider, config):
        """A healthy marker from an earlier run is success without side effects."""
        provider.toolkit.bootstrap(ACCOUNT, REGION)
        provider.toolkit.calls.clear()

        record = RegionBootstrapper(provider.platform, provider.toolkit, config).ensure_bootstrapped(
            ACCOUNT, REGION
        )

        assert record.bootstrapped
        assert not record.created
        assert provider.toolkit.calls == []

    def test_each_region_separately(self, bootstrapper, provider):
        records = bootstrapper.ensure_all(ACCOUNT, ["us-east-1", REGION])

        assert [record.region for record in records] == ["us-east-1", REGION]
        assert provider.toolkit.calls == [(ACCOUNT, "us-east-1"), (ACCOUNT, REGION)]

    def test_unreadable_marker(self, bootstrapper, provider):
        provider.platform.unavailable["CDKToolkit"] = "Rate exceeded"

        with pytest.raises(BootstrapFailed, match="Rate exceeded") as excinfo:
            bootstrapper.ensure_bootstrapped(ACCOUNT, REGION)
        assert excinfo.value.region == REGION
        assert provider.toolkit.calls == []

    def test_failure_is_raised(self, bootstrapper, provider):
        provider.toolkit.fail_regions.add("us-east-1")

        with pytest.raises(BootstrapFailed) as excinfo:
            bootstrapper.ensure_all(ACCOUNT, ["us-east-1", REGION])
        assert excinfo.value.region == "us-east-1"
        assert provider.toolkit.calls == [(ACCOUNT, "us-east-1")]

    def test_marker_stuck_in_progress(self, bootstrapper, provider):
        """A marker that never settles fails the bootstrap instead of waiting forever."""
        provider.platform.put_stack("CDKToolkit", REGION, StackStatus.DEPLOYING, "UPDATE_IN_PROGRESS")

        with pytest.raises(BootstrapFailed, match="still changing"):
            bootstrapper.ensure_bootstrapped(ACCOUNT, REGION)
        assert provider.toolkit.calls == []

    def test_failed_marker_is_rebootstrapped(self, bootstrapper, provider):
        provider.platform.put_stack("CDKToolkit", REGION, StackStatus.FAILED, "UPDATE_ROLLBACK_COMPLETE")

        record = bootstrapper.ensure_bootstrapped(ACCOUNT, REGION)

        assert record.created
        assert provider.toolkit.calls == [(ACCOUNT, REGION)]


class TestBootstrapVersion:
    """Tests for the optional minimum bootstrap version."""

    def test_old_version_accepted_by_default(self, provider, config):
        provider.toolkit.version = 6
        provider.toolkit.bootstrap(ACCOUNT, REGION)

        record = RegionBootstrapper(provider.platform, provider.toolkit, config).ensure_bootstrapped(
            ACCOUNT, REGION
        )

        assert record.version == 6
        assert not record.created

    def test_old_version_is_upgraded(self, provider, config):
        provider.toolkit.version = 6
        provider.toolkit.bootstrap(ACCOUNT, REGION)
        provider.toolkit.version = 21
        config = config.model_copy(update={"min_bootstrap_version": 20})

        record = RegionBootstrapper(provider.platform, provider.toolkit, config).ensure_bootstrapped(
            ACCOUNT, REGION
        )

        assert record.created
        assert record.version == 21

    def test_upgrade_that_stays_old_fails(self, provider, config):
        provider.toolkit.version = 6
        config = config.model_copy(update={"min_bootstrap_version": 20})

        with pytest.raises(BootstrapFailed, match="usable marker"):
            RegionBootstrapper(provider.platform, provider.toolkit, config).ensure_bootstrapped(
                ACCOUNT, REGION
            )
