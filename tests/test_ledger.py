"""
Tests for the deploy ledger.
"""

import pytest

from moraine.core import DeployLedger
from moraine.errors import ConfigurationError


class TestDeployLedger:
    """Tests for DeployLedger."""

    def test_missing_file_is_empty(self, tmp_path):
        ledger = DeployLedger.load(tmp_path / "none.yaml")

        assert ledger.deploy_order == []
        assert ledger.outputs == {}

    def test_save_and_load(self, tmp_path):
        """Order, regions and outputs survive a save."""
        path = tmp_path / "state" / "ledger.yaml"
        ledger = DeployLedger(path)
        ledger.record_deploy("cert", "us-east-1", {"CertificateArn": "arn:1"})
        ledger.record_deploy("api", "ca-central-1", {"APIEndpoint": "https://api/"})
        ledger.save()

        loaded = DeployLedger.load(path)

        assert loaded.deploy_order == ["cert", "api"]
        assert loaded.regions == {"cert": "us-east-1", "api": "ca-central-1"}
        assert loaded.outputs["api"] == {"APIEndpoint": "https://api/"}

    def test_redeploy_keeps_position(self, tmp_path):
        """A redeployed stack keeps its first position but gets new outputs."""
        ledger = DeployLedger(tmp_path / "ledger.yaml")
        ledger.record_deploy("a", "r", {"X": "1"})
        ledger.record_deploy("b", "r", {})
        ledger.record_deploy("a", "r", {"X": "2"})

        assert ledger.deploy_order == ["a", "b"]
        assert ledger.outputs["a"] == {"X": "2"}

    def test_record_destroy(self, tmp_path):
        ledger = DeployLedger(tmp_path / "ledger.yaml")
        ledger.record_deploy("a", "r", {"X": "1"})
        ledger.record_destroy("a")
        ledger.record_destroy("never-deployed")

        assert ledger.deploy_order == []
        assert "a" not in ledger.outputs

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "ledger.yaml"
        path.write_text("stacks: [unclosed\n")

        with pytest.raises(ConfigurationError, match="not valid YAML"):
            DeployLedger.load(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "ledger.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            DeployLedger.load(path)
