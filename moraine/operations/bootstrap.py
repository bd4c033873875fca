"""
RegionBootstrapper: make sure every region has its provisioning prerequisites.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from moraine.config import DeploymentConfig
from moraine.core.stack import StackStatus
from moraine.errors import BootstrapFailed, PlatformOperationFailed
from moraine.operations.polling import poll
from moraine.providers.base import BootstrapToolkit, StackPlatform, StackSnapshot

logger = logging.getLogger(__name__)


@dataclass
class BootstrapRecord:
    """Bootstrap state of one (account, region) pair."""

    account: str
    region: str
    bootstrapped: bool = False
    version: int | None = None
    created: bool = False
    """True when this process ran the toolkit for the region."""


def _version(snapshot: StackSnapshot | None, output: str) -> int | None:
    if snapshot is None:
        return None
    raw = snapshot.outputs.get(output)
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


class RegionBootstrapper:
    """
    Idempotent per-region bootstrap.

    A region counts as bootstrapped when its marker stack exists and is
    healthy. When ``min_bootstrap_version`` is configured, a marker that
    reports an older version is upgraded by re-running the toolkit;
    otherwise any healthy marker is accepted.

    Records are kept for the life of the bootstrapper, so asking twice for
    the same region only checks the platform once.
    """

    def __init__(self, platform: StackPlatform, toolkit: BootstrapToolkit,
                 config: DeploymentConfig, sleep: Callable[[float], None] = time.sleep):
        self.platform = platform
        self.toolkit = toolkit
        self.config = config
        self.sleep = sleep
        self.records: dict[tuple[str, str], BootstrapRecord] = {}

    def _marker(self, region: str) -> StackSnapshot | None:
        try:
            result = poll(
                lambda: self.platform.describe(self.toolkit.marker_stack, region),
                lambda snapshot: snapshot is None or snapshot.status.is_terminal,
                self.config.retry,
                sleep=self.sleep,
                label=f"bootstrap marker in {region}",
            )
        except PlatformOperationFailed as e:
            raise BootstrapFailed(
                f"Could not read the bootstrap marker stack in {region}: {e.message}", region=region
            ) from e
        if result.timed_out:
            raise BootstrapFailed(
                f"Bootstrap marker stack in {region} is still changing; retry later", region=region
            )
        return result.value

    def _is_current(self, snapshot: StackSnapshot | None) -> bool:
        if snapshot is None or snapshot.status != StackStatus.DEPLOYED:
            return False
        minimum = self.config.min_bootstrap_version
        if minimum is None:
            return True
        version = _version(snapshot, self.toolkit.version_output)
        return version is not None and version >= minimum

    def ensure_bootstrapped(self, account: str, region: str) -> BootstrapRecord:
        """
        Bootstrap a region unless it already is.

        Returns:
            The region's BootstrapRecord

        Raises:
            BootstrapFailed: If prerequisites cannot be established
        """
        key = (account, region)
        record = self.records.get(key)
        if record is not None and record.bootstrapped:
            return record

        record = BootstrapRecord(account=account, region=region)
        self.records[key] = record

        snapshot = self._marker(region)
        if self._is_current(snapshot):
            record.bootstrapped = True
            record.version = _version(snapshot, self.toolkit.version_output)
            logger.info("Region %s already bootstrapped for account %s", region, account)
            return record

        if snapshot is None:
            logger.info("Bootstrapping %s for account %s", region, account)
        elif snapshot.status != StackStatus.DEPLOYED:
            logger.info("Bootstrap marker in %s is %s; re-running bootstrap", region, snapshot.raw_status)
        else:
            logger.info(
                "Bootstrap version %s in %s is older than %s; upgrading",
                _version(snapshot, self.toolkit.version_output), region, self.config.min_bootstrap_version,
            )

        self.toolkit.bootstrap(account, region)
        record.created = True

        snapshot = self._marker(region)
        if not self._is_current(snapshot):
            status = snapshot.raw_status if snapshot else "missing"
            raise BootstrapFailed(
                f"Bootstrap of aws://{account}/{region} did not produce a usable marker stack ({status})",
                region=region,
            )

        record.bootstrapped = True
        record.version = _version(snapshot, self.toolkit.version_output)
        logger.info("Bootstrapped %s (version %s)", region, record.version)
        return record

    def ensure_all(self, account: str, regions: Iterable[str]) -> list[BootstrapRecord]:
        """Bootstrap every region; the first failure stops and is raised."""
        return [self.ensure_bootstrapped(account, region) for region in regions]
