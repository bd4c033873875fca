"""
Load stack descriptors from a YAML plan file.

Example plan:

    stacks:
      - name: "{service}-certificate"
        region: us-east-1
        outputs: [CertificateArn]
        parameters:
          DomainName: "{domain_root}"
      - name: "{service}-frontend"
        inputs:
          CertificateArnParam: "{service}-certificate.CertificateArn"
        drain: true
"""

from pathlib import Path

import yaml
from pydantic import ValidationError

from moraine.core.stack import StackDescriptor
from moraine.errors import ConfigurationError


def load_plan_file(path: str | Path) -> list[StackDescriptor]:
    """
    Parse a plan file into descriptors, keeping declaration order.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    plan_path = Path(path)
    if not plan_path.is_file():
        raise ConfigurationError(f"Plan file not found: {plan_path}", step="plan")

    with plan_path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Plan file {plan_path} is not valid YAML: {e}", step="plan") from e

    return parse_plan(data, source=str(plan_path))


def parse_plan(data: object, source: str = "<plan>") -> list[StackDescriptor]:
    """Validate already-loaded plan data."""
    if not isinstance(data, dict) or not isinstance(data.get("stacks"), list):
        raise ConfigurationError(f"{source} must contain a 'stacks' list", step="plan")

    descriptors = []
    for position, row in enumerate(data["stacks"], 1):
        if not isinstance(row, dict):
            raise ConfigurationError(f"{source}: stack entry {position} must be a mapping", step="plan")
        try:
            descriptors.append(StackDescriptor.model_validate(row))
        except ValidationError as e:
            name = row.get("name", f"#{position}")
            raise ConfigurationError(f"{source}: invalid stack '{name}': {e}", step="plan") from e

    if not descriptors:
        raise ConfigurationError(f"{source} declares no stacks", step="plan")
    return descriptors
