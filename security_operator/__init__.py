"""
Security Operator - Application Package
=======================================
Kubernetes operator that keeps a vulnerability report per workload
container up to date, plus the read-only API serving those reports.
"""

from security_operator.config import Settings, get_settings

from security_operator.exceptions import (
    OperatorException,
    ConfigurationException,
    ScanException,
    TransientScanException,
    FatalScanException,
    ScannerUnreachableException,
    ScanTimeoutException,
    InvalidImageException,
    UnsupportedImageException,
    ImageNotFoundException,
    ResultParseException,
    RequeueException,
    ClusterException,
)

from security_operator.resources import (
    ContainerImage,
    WorkloadRef,
    ScanJobRef,
    ScanJobPhase,
    EventKind,
    WorkloadEvent,
    ScanJobEvent,
    ResourceRegistry,
    build_registry,
)

from security_operator.schemas import Severity, Finding, ScannerInfo, ReportData

from security_operator.store import ReportKey, ReportStore

from security_operator.scanners import (
    Scanner,
    SyncScanner,
    AsyncScanner,
    ScanOutcome,
    TrivyScanner,
    AquaScanner,
    RandomNameGenerator,
    build_scanner,
)

from security_operator.controller import Controller, ReconcileResult
from security_operator.operator import Operator

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Exceptions
    "OperatorException",
    "ConfigurationException",
    "ScanException",
    "TransientScanException",
    "FatalScanException",
    "ScannerUnreachableException",
    "ScanTimeoutException",
    "InvalidImageException",
    "UnsupportedImageException",
    "ImageNotFoundException",
    "ResultParseException",
    "RequeueException",
    "ClusterException",
    # Resources
    "ContainerImage",
    "WorkloadRef",
    "ScanJobRef",
    "ScanJobPhase",
    "EventKind",
    "WorkloadEvent",
    "ScanJobEvent",
    "ResourceRegistry",
    "build_registry",
    # Reports
    "Severity",
    "Finding",
    "ScannerInfo",
    "ReportData",
    "ReportKey",
    "ReportStore",
    # Scanners
    "Scanner",
    "SyncScanner",
    "AsyncScanner",
    "ScanOutcome",
    "TrivyScanner",
    "AquaScanner",
    "RandomNameGenerator",
    "build_scanner",
    # Control loops
    "Controller",
    "ReconcileResult",
    "Operator",
]

__version__ = "1.0.0"
