"""Vulnerability scanner backends and scanner selection."""

from security_operator.cluster import ClusterClient
from security_operator.config import Settings
from security_operator.exceptions import ConfigurationException
from security_operator.resources import ResourceRegistry
from security_operator.scanners.aqua import AquaScanner
from security_operator.scanners.base import (
    AsyncScanner,
    ScanMode,
    ScanOutcome,
    Scanner,
    SyncScanner,
)
from security_operator.scanners.names import NameGenerator, RandomNameGenerator
from security_operator.scanners.trivy import TrivyScanner

__all__ = [
    "AquaScanner",
    "AsyncScanner",
    "NameGenerator",
    "RandomNameGenerator",
    "ScanMode",
    "ScanOutcome",
    "Scanner",
    "SyncScanner",
    "TrivyScanner",
    "build_scanner",
]


def build_scanner(
    settings: Settings,
    cluster: ClusterClient | None = None,
    registry: ResourceRegistry | None = None,
    name_generator: NameGenerator | None = None,
) -> Scanner:
    """
    Build the one scanner enabled in ``settings``.

    Raises:
        ConfigurationException: if no scanner or more than one is enabled,
            or the enabled scanner is missing what it needs
    """
    enabled = settings.enabled_scanners
    if not enabled:
        raise ConfigurationException("no vulnerability scanner enabled")
    if len(enabled) > 1:
        raise ConfigurationException(
            f"multiple vulnerability scanners enabled: {', '.join(enabled)}"
        )

    if settings.scanner_trivy_enabled:
        return TrivyScanner.from_settings(settings)

    if cluster is None or registry is None:
        raise ConfigurationException("the aqua scanner needs a cluster client and registry")
    if not settings.aqua_server_url:
        raise ConfigurationException("aqua_server_url must be set when the aqua scanner is enabled")
    return AquaScanner.from_settings(settings, cluster, registry, name_generator=name_generator)
