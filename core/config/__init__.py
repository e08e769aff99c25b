"""STEWARD configuration - built once at start-up, passed explicitly."""

from .settings import (
    BusSettings,
    ClassificationSettings,
    Credentials,
    DriverSettings,
    EngineConfig,
    ExecutorSettings,
    HIGH_RISK_THRESHOLD,
    RetrySettings,
    StorageSettings,
    load_config,
)

__all__ = [
    "BusSettings",
    "ClassificationSettings",
    "Credentials",
    "DriverSettings",
    "EngineConfig",
    "ExecutorSettings",
    "HIGH_RISK_THRESHOLD",
    "RetrySettings",
    "StorageSettings",
    "load_config",
]
