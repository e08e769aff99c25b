"""
Engine configuration.

One EngineConfig is built at process start by load_config() and passed to
every component. Credentials are read from the environment at that moment
and never re-read.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from core.policy import RiskPolicy
from core.errors import ConfigError


logger = logging.getLogger(__name__)


KNOWN_PROVIDERS = ("anthropic", "openai", "ollama")

# Risk at or above this always requires approval; a configured threshold may only lower it
HIGH_RISK_THRESHOLD = 70

DEFAULT_MODELS = {
    "anthropic": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4-turbo",
    "ollama": "gemma2:2b",
}


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_total_seconds: float = 120.0
    jitter: bool = True


@dataclass(frozen=True)
class ClassificationSettings:
    primary_provider: str = "anthropic"
    secondary_provider: Optional[str] = "openai"
    dual_validation: bool = True
    models: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    timeout_seconds: float = 30.0
    single_provider_min_confidence: float = 0.8
    consensus_min_confidence: float = 0.7
    max_risk_divergence: int = 20
    approval_risk_threshold: int = 70
    ollama_host: Optional[str] = None
    retry: RetrySettings = field(default_factory=RetrySettings)


@dataclass(frozen=True)
class ExecutorSettings:
    base_url: str = "https://graph.microsoft.com/v1.0"
    timeout_seconds: float = 30.0
    circuit_failure_threshold: int = 3
    circuit_failure_window: int = 300
    circuit_open_duration: int = 600
    retry: RetrySettings = field(default_factory=RetrySettings)


@dataclass(frozen=True)
class StorageSettings:
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "steward"
    audit_dir: Path = Path("data/audit")


@dataclass(frozen=True)
class BusSettings:
    contracts_dir: Path = Path(__file__).resolve().parents[2] / "bus" / "contracts"
    stream_prefix: str = "steward"
    max_stream_length: int = 10000


@dataclass(frozen=True)
class DriverSettings:
    worker_count: int = 4
    sweep_interval_seconds: int = 30
    auto_execute: bool = True


@dataclass(frozen=True)
class Credentials:
    """Secrets captured from the environment once, at start-up."""

    anthropic_api_key: Optional[str] = field(default=None, repr=False)
    openai_api_key: Optional[str] = field(default=None, repr=False)
    webhook_secret: Optional[str] = field(default=None, repr=False)
    management_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str],
        webhook_secret_env: str = "STEWARD_WEBHOOK_SECRET",
    ) -> "Credentials":
        return cls(
            anthropic_api_key=environ.get("ANTHROPIC_API_KEY") or None,
            openai_api_key=environ.get("OPENAI_API_KEY") or None,
            webhook_secret=environ.get(webhook_secret_env) or None,
            management_token=environ.get("STEWARD_MANAGEMENT_TOKEN") or None,
        )


@dataclass(frozen=True)
class EngineConfig:
    classification: ClassificationSettings = field(default_factory=ClassificationSettings)
    risk_policy: RiskPolicy = field(default_factory=RiskPolicy)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    bus: BusSettings = field(default_factory=BusSettings)
    driver: DriverSettings = field(default_factory=DriverSettings)
    approvers_file: Optional[Path] = None
    credentials: Credentials = field(default_factory=Credentials)


def _retry_settings(data: Optional[Dict[str, Any]]) -> RetrySettings:
    data = data or {}
    defaults = RetrySettings()
    return RetrySettings(
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        base_delay=float(data.get("base_delay", defaults.base_delay)),
        max_delay=float(data.get("max_delay", defaults.max_delay)),
        max_total_seconds=float(
            data.get("max_total_seconds", defaults.max_total_seconds)
        ),
        jitter=bool(data.get("jitter", defaults.jitter)),
    )


def _classification_settings(data: Dict[str, Any]) -> ClassificationSettings:
    defaults = ClassificationSettings()
    models = dict(DEFAULT_MODELS)
    models.update(data.get("models") or {})

    settings = ClassificationSettings(
        primary_provider=data.get("primary_provider", defaults.primary_provider),
        secondary_provider=data.get("secondary_provider", defaults.secondary_provider),
        dual_validation=bool(data.get("dual_validation", defaults.dual_validation)),
        models=models,
        timeout_seconds=float(data.get("timeout_seconds", defaults.timeout_seconds)),
        single_provider_min_confidence=float(
            data.get(
                "single_provider_min_confidence",
                defaults.single_provider_min_confidence,
            )
        ),
        consensus_min_confidence=float(
            data.get("consensus_min_confidence", defaults.consensus_min_confidence)
        ),
        max_risk_divergence=int(
            data.get("max_risk_divergence", defaults.max_risk_divergence)
        ),
        approval_risk_threshold=int(
            data.get("approval_risk_threshold", defaults.approval_risk_threshold)
        ),
        ollama_host=data.get("ollama_host"),
        retry=_retry_settings(data.get("retry")),
    )

    for provider in (settings.primary_provider, settings.secondary_provider):
        if provider is not None and provider not in KNOWN_PROVIDERS:
            raise ConfigError(f"Unknown classification provider: {provider}")

    for name in ("single_provider_min_confidence", "consensus_min_confidence"):
        value = getattr(settings, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"{name} must be between 0.0 and 1.0, got {value}")

    if not 0 <= settings.approval_risk_threshold <= HIGH_RISK_THRESHOLD:
        raise ConfigError(
            f"approval_risk_threshold must be between 0 and {HIGH_RISK_THRESHOLD}, "
            f"got {settings.approval_risk_threshold}"
        )

    return settings


def _executor_settings(data: Dict[str, Any]) -> ExecutorSettings:
    defaults = ExecutorSettings()
    return ExecutorSettings(
        base_url=data.get("base_url", defaults.base_url),
        timeout_seconds=float(data.get("timeout_seconds", defaults.timeout_seconds)),
        circuit_failure_threshold=int(
            data.get("circuit_failure_threshold", defaults.circuit_failure_threshold)
        ),
        circuit_failure_window=int(
            data.get("circuit_failure_window", defaults.circuit_failure_window)
        ),
        circuit_open_duration=int(
            data.get("circuit_open_duration", defaults.circuit_open_duration)
        ),
        retry=_retry_settings(data.get("retry")),
    )


def _storage_settings(data: Dict[str, Any], base_dir: Path) -> StorageSettings:
    defaults = StorageSettings()
    backend = data.get("backend", defaults.backend)
    if backend not in ("memory", "redis"):
        raise ConfigError(f"Unknown storage backend: {backend}")

    audit_dir = Path(data.get("audit_dir", defaults.audit_dir))
    if not audit_dir.is_absolute():
        audit_dir = base_dir / audit_dir

    return StorageSettings(
        backend=backend,
        redis_url=data.get("redis_url", defaults.redis_url),
        key_prefix=data.get("key_prefix", defaults.key_prefix),
        audit_dir=audit_dir,
    )


def _bus_settings(data: Dict[str, Any], base_dir: Path) -> BusSettings:
    defaults = BusSettings()
    contracts_dir = defaults.contracts_dir
    if "contracts_dir" in data:
        contracts_dir = Path(data["contracts_dir"])
        if not contracts_dir.is_absolute():
            contracts_dir = base_dir / contracts_dir
    return BusSettings(
        contracts_dir=contracts_dir,
        stream_prefix=data.get("stream_prefix", defaults.stream_prefix),
        max_stream_length=int(
            data.get("max_stream_length", defaults.max_stream_length)
        ),
    )


def _driver_settings(data: Dict[str, Any]) -> DriverSettings:
    defaults = DriverSettings()
    return DriverSettings(
        worker_count=max(1, int(data.get("worker_count", defaults.worker_count))),
        sweep_interval_seconds=max(
            1, int(data.get("sweep_interval_seconds", defaults.sweep_interval_seconds))
        ),
        auto_execute=bool(data.get("auto_execute", defaults.auto_execute)),
    )


def load_config(
    config_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineConfig:
    """
    Load engine configuration from YAML and the environment.

    Args:
        config_file: YAML file; None uses defaults for every section
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Immutable EngineConfig

    Raises:
        ConfigError: If the file is missing or a section is invalid
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    base_dir = Path.cwd()

    if config_file is not None:
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {config_file}")
        base_dir = config_file.resolve().parent

    approvers_file = data.get("approvers_file")
    if approvers_file is not None:
        approvers_file = Path(approvers_file)
        if not approvers_file.is_absolute():
            approvers_file = base_dir / approvers_file

    config = EngineConfig(
        classification=_classification_settings(data.get("classification") or {}),
        risk_policy=RiskPolicy.from_dict(data.get("risk_policy")),
        executor=_executor_settings(data.get("executor") or {}),
        storage=_storage_settings(data.get("storage") or {}, base_dir),
        bus=_bus_settings(data.get("bus") or {}, base_dir),
        driver=_driver_settings(data.get("driver") or {}),
        approvers_file=approvers_file,
        credentials=Credentials.from_environ(
            environ,
            webhook_secret_env=data.get("webhook_secret_env", "STEWARD_WEBHOOK_SECRET"),
        ),
    )

    logger.info(
        f"Configuration loaded: primary={config.classification.primary_provider}, "
        f"secondary={config.classification.secondary_provider}, "
        f"dual_validation={config.classification.dual_validation}, "
        f"storage={config.storage.backend}, "
        f"webhook_secret={'set' if config.credentials.webhook_secret else 'missing'}"
    )

    return config
