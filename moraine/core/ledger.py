"""
DeployLedger: what was deployed, in which order, with which outputs.

The ledger is a small YAML file next to the project. Teardown reads it to
destroy stacks in the exact reverse of the recorded deploy order.
"""

import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from moraine.errors import ConfigurationError

logger = logging.getLogger(__name__)


class DeployLedger:
    """
    Recorded deploy order and outputs.

    The order only ever grows by appending: a stack redeployed later keeps
    its original position, so the recorded order stays topological across
    partial runs.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.deploy_order: list[str] = []
        self.outputs: dict[str, dict[str, Any]] = {}
        self.regions: dict[str, str] = {}

    @classmethod
    def load(cls, path: str | Path) -> "DeployLedger":
        """Load a ledger, or start an empty one if the file does not exist."""
        ledger = cls(path)
        if not ledger.path.exists():
            return ledger

        with ledger.path.open("r", encoding="utf-8") as handle:
            try:
                data = yaml.safe_load(handle) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"State file {ledger.path} is not valid YAML: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"State file {ledger.path} must contain a mapping")

        for entry in data.get("stacks", []):
            name = entry["name"]
            ledger.deploy_order.append(name)
            ledger.outputs[name] = dict(entry.get("outputs") or {})
            if entry.get("region"):
                ledger.regions[name] = entry["region"]
        return ledger

    def record_deploy(self, name: str, region: str, outputs: Mapping[str, Any]) -> None:
        """Record a successful deploy."""
        if name not in self.deploy_order:
            self.deploy_order.append(name)
        self.outputs[name] = dict(outputs)
        self.regions[name] = region

    def record_destroy(self, name: str) -> None:
        """Forget a destroyed stack."""
        if name in self.deploy_order:
            self.deploy_order.remove(name)
        self.outputs.pop(name, None)
        self.regions.pop(name, None)

    def save(self) -> None:
        """Write the ledger to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "stacks": [
                {
                    "name": name,
                    "region": self.regions.get(name),
                    "outputs": self.outputs.get(name, {}),
                }
                for name in self.deploy_order
            ]
        }
        with self.path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False)
        logger.debug("Saved deploy ledger with %d stack(s) to %s", len(self.deploy_order), self.path)

    def __repr__(self) -> str:
        return f"DeployLedger(path={self.path}, stacks={self.deploy_order})"
