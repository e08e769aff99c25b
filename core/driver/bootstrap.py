"""Builds a fully wired OrchestrationDriver from an EngineConfig."""

import logging
from typing import Optional

import redis

from bus.python.steward_bus import ContractValidator, EventBus
from core.approval import (
    ApprovalStateMachine,
    ApprovalStore,
    ApproverDirectory,
    InMemoryApprovalStore,
    Notifier,
    RedisApprovalStore,
)
from core.audit import AuditLedger
from core.biometric import BiometricValidator
from core.classification import ActionPlanner, ClassificationOrchestrator, build_provider
from core.config import EngineConfig
from core.executor import (
    ActionExecutor,
    CircuitBreaker,
    HttpManagementClient,
    StaticTokenProvider,
)
from .driver import OrchestrationDriver
from .notifier import BusNotifier


logger = logging.getLogger(__name__)


def build_driver(
    config: EngineConfig,
    redis_client: Optional[redis.Redis] = None,
) -> OrchestrationDriver:
    """
    Wire every component from configuration.

    Args:
        config: Engine configuration
        redis_client: Redis connection (created from storage.redis_url when
            the redis backend is configured and none is given)

    Returns:
        OrchestrationDriver ready to run

    Raises:
        ConfigError: If the approvers file is configured but invalid
    """
    ledger = AuditLedger(config.storage.audit_dir)
    validator = ContractValidator(config.bus.contracts_dir)

    store: ApprovalStore
    event_bus: Optional[EventBus] = None
    notifier: Notifier

    if config.storage.backend == "redis":
        if redis_client is None:
            redis_client = redis.Redis.from_url(config.storage.redis_url)
        store = RedisApprovalStore(redis_client, key_prefix=config.storage.key_prefix)
        event_bus = EventBus(
            redis_client,
            config.bus.contracts_dir,
            stream_prefix=config.bus.stream_prefix,
            max_stream_length=config.bus.max_stream_length,
        )
        notifier = BusNotifier(event_bus)
    else:
        logger.warning(
            "Memory storage backend: approvals are lost on restart and "
            "notifications are not published"
        )
        store = InMemoryApprovalStore()
        notifier = Notifier()

    classification = config.classification
    primary = build_provider(
        classification.primary_provider, classification, config.credentials, validator
    )
    secondary = None
    if classification.dual_validation:
        secondary = build_provider(
            classification.secondary_provider,
            classification,
            config.credentials,
            validator,
        )

    orchestrator = ClassificationOrchestrator(
        primary, secondary, settings=classification, ledger=ledger
    )

    executor_settings = config.executor
    executor = ActionExecutor(
        HttpManagementClient(
            executor_settings.base_url,
            StaticTokenProvider(config.credentials.management_token),
            timeout_seconds=executor_settings.timeout_seconds,
        ),
        ledger=ledger,
        circuit_breaker=CircuitBreaker(
            failure_threshold=executor_settings.circuit_failure_threshold,
            failure_window=executor_settings.circuit_failure_window,
            circuit_open_duration=executor_settings.circuit_open_duration,
        ),
        retry=executor_settings.retry,
    )

    approver_directory = None
    if config.approvers_file is not None:
        approver_directory = ApproverDirectory.from_yaml(config.approvers_file)
    else:
        logger.warning("No approvers_file configured - approver authorization disabled")

    planner = ActionPlanner(executor_settings.base_url)
    state_machine = ApprovalStateMachine(
        store,
        validator=BiometricValidator(config.risk_policy),
        risk_policy=config.risk_policy,
        ledger=ledger,
        executor=executor,
        notifier=notifier,
        approver_directory=approver_directory,
        planner=planner,
    )

    return OrchestrationDriver(
        orchestrator,
        state_machine,
        executor,
        ledger=ledger,
        event_bus=event_bus,
        planner=planner,
        settings=config.driver,
        webhook_secret=config.credentials.webhook_secret,
        approval_risk_threshold=classification.approval_risk_threshold,
    )
