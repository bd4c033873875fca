"""
Deployment configuration.

The configuration is read once (from CLI options and the process
environment) and then threaded, immutable, into every component.
"""

from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from moraine.errors import ConfigurationError


class RetryPolicy(BaseModel):
    """
    Bounded polling policy for long-running platform operations.

    Example:
        # Poll every 30 seconds for up to an hour
        policy = RetryPolicy(interval_seconds=30, max_attempts=120)

        # Exponential backoff capped at one minute
        policy = RetryPolicy(interval_seconds=5, backoff=2.0, max_interval_seconds=60)
    """

    model_config = ConfigDict(frozen=True)

    interval_seconds: float = Field(default=10.0, description="Delay before the first re-poll")
    max_attempts: int = Field(default=180, description="Maximum number of status polls")
    backoff: float = Field(default=1.0, description="Multiplier applied to the delay after each poll")
    max_interval_seconds: float = Field(default=60.0, description="Upper bound for a single delay")

    @field_validator("interval_seconds", "max_interval_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("intervals must not be negative")
        return value

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value

    @field_validator("backoff")
    @classmethod
    def _backoff_at_least_one(cls, value: float) -> float:
        if value < 1.0:
            raise ValueError("backoff must be >= 1.0")
        return value

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each re-poll (max_attempts - 1 values)."""
        delay = self.interval_seconds
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_interval_seconds)
            delay *= self.backoff

    @property
    def ceiling_seconds(self) -> float:
        """Total time the policy is willing to wait."""
        return sum(self.delays())


_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "account_id": ("MORAINE_ACCOUNT", "CDK_DEFAULT_ACCOUNT"),
    "default_region": ("MORAINE_REGION", "CDK_DEFAULT_REGION", "AWS_REGION"),
    "domain_root": ("DOMAIN_NAME",),
    "service_name": ("MORAINE_SERVICE",),
    "profile": ("AWS_PROFILE",),
}


class DeploymentConfig(BaseModel):
    """
    Immutable deployment configuration.

    Example:
        config = DeploymentConfig(
            account_id="123456789012",
            default_region="ca-central-1",
            domain_root="example.com",
        )

        # Or from the process environment, with CLI overrides on top
        config = DeploymentConfig.from_env(os.environ, profile="prod")
    """

    model_config = ConfigDict(frozen=True)

    account_id: str | None = Field(default=None, description="Target cloud account ID")
    default_region: str | None = Field(default=None, description="Region for stacks without a pinned region")
    domain_root: str | None = Field(default=None, description="Domain used to derive DNS and resource names")
    service_name: str = Field(default="resume-bot", description="Service naming root")
    certificate_region: str = Field(
        default="us-east-1", description="Region certificates must live in for the CDN"
    )
    profile: str | None = Field(default=None, description="Credential profile name")
    template_dir: Path = Field(default=Path("cdk.out"), description="Directory of synthesized templates")
    state_file: Path = Field(default=Path(".moraine/state.yaml"), description="Deploy ledger location")
    min_bootstrap_version: int | None = Field(
        default=None, description="Re-bootstrap regions whose marker reports an older version"
    )
    secrets: dict[str, str] = Field(default_factory=dict, description="Secret values by name")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls, environ: Mapping[str, str], secret_names: list[str] | None = None,
                 **overrides: Any) -> "DeploymentConfig":
        """
        Build a configuration from environment variables.

        Explicit overrides (typically CLI options) win over the environment;
        overrides set to None are ignored.

        Args:
            environ: Environment mapping (usually os.environ)
            secret_names: Secret names to pick up from the environment
            **overrides: Field values that take precedence

        Returns:
            DeploymentConfig instance
        """
        values: dict[str, Any] = {}
        for field_name, keys in _ENV_KEYS.items():
            for key in keys:
                if environ.get(key):
                    values[field_name] = environ[key]
                    break

        if secret_names:
            values["secrets"] = {
                name: environ[name] for name in secret_names if environ.get(name)
            }

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def require(self) -> "DeploymentConfig":
        """
        Check that every required input is present.

        Raises:
            ConfigurationError: Naming the first missing input
        """
        required = {
            "account_id": "target account identifier (MORAINE_ACCOUNT / CDK_DEFAULT_ACCOUNT)",
            "default_region": "default region (MORAINE_REGION / CDK_DEFAULT_REGION)",
            "domain_root": "domain root (DOMAIN_NAME)",
        }
        for field_name, label in required.items():
            if not getattr(self, field_name):
                raise ConfigurationError(f"Missing required input: {label}", step="configure")
        return self

    def naming(self) -> dict[str, str]:
        """Substitution values for per-stack names and parameters."""
        return {
            "account": self.account_id or "",
            "region": self.default_region or "",
            "domain_root": self.domain_root or "",
            "service": self.service_name,
            "certificate_region": self.certificate_region,
        }

    def secret(self, name: str, stack: str | None = None) -> str:
        """
        Look up a secret value.

        Raises:
            ConfigurationError: If the secret is absent or empty
        """
        value = self.secrets.get(name)
        if not value:
            raise ConfigurationError(
                f"Missing required secret value '{name}'", stack=stack, step="configure"
            )
        return value
