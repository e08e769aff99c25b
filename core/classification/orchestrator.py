"""
STEWARD Classification Orchestrator - multi-provider consensus.

Sends each request to a primary classifier and, when dual validation is on,
to a secondary classifier that sees the primary's answer. The two answers
are reconciled into one ClassificationResult.

Consensus rules:
1. Primary only: accept when confidence > 0.8 (no consensus, approval required)
2. Both answered: consensus iff same action type, risk within 20 points and
   both confidences > 0.7; confidence = min, risk = max
3. Anything else falls back to human_review with risk 100
4. Risk >= 70 always requires approval

Safety Invariants:
- A request is never dropped: provider failures become human_review
- Only a consensus result below the approval threshold may skip approval
- requires_approval=False implies risk_score < 70
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from core.audit import AuditLedger
from core.config import HIGH_RISK_THRESHOLD, ClassificationSettings
from core.errors import PermanentProviderError, StewardError
from core.models import (
    ActionType,
    AuditLogEntry,
    ClassificationRequest,
    ClassificationResult,
    ProviderClassification,
    ReviewParameters,
    parse_parameters,
)
from core.retry import is_transient, retry_async
from .providers import ClassificationProvider


logger = logging.getLogger(__name__)


HUMAN_REVIEW_RISK = 100

AUDIT_ACTOR = "classification-orchestrator"


class ClassificationOrchestrator:
    """
    Reconciles provider answers into a single classification.

    Invariants:
    - classify() never raises for provider failures
    - Exactly one audit entry per classification (when a ledger is attached)
    - Providers are called sequentially: secondary sees primary's output
    """

    def __init__(
        self,
        primary: Optional[ClassificationProvider],
        secondary: Optional[ClassificationProvider] = None,
        settings: Optional[ClassificationSettings] = None,
        ledger: Optional[AuditLedger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize orchestrator.

        Args:
            primary: Primary provider (None sends everything to human_review)
            secondary: Secondary provider for dual validation
            settings: Thresholds, dual validation flag and retry budget
            ledger: Audit ledger for classification entries
            sleep: Backoff sleep (injectable for tests)
        """
        self.primary = primary
        self.secondary = secondary
        self.settings = settings or ClassificationSettings()
        self.ledger = ledger
        self._sleep = sleep

        logger.info(
            f"ClassificationOrchestrator initialized: "
            f"primary={primary.name if primary else None}, "
            f"secondary={secondary.name if secondary else None}, "
            f"dual_validation={self.settings.dual_validation}"
        )

    async def _call(
        self,
        provider: ClassificationProvider,
        request: ClassificationRequest,
        context: Optional[ProviderClassification] = None,
    ) -> ProviderClassification:
        """
        Call one provider under the retry policy.

        Raises:
            PermanentProviderError: Non-transient failure or retries exhausted
        """
        retry = self.settings.retry
        try:
            return await retry_async(
                lambda: provider.classify(request, context),
                operation_name=f"{provider.name} classification",
                is_retryable=is_transient,
                max_attempts=retry.max_attempts,
                base_delay=retry.base_delay,
                max_delay=retry.max_delay,
                max_total_seconds=retry.max_total_seconds,
                jitter=retry.jitter,
                sleep=self._sleep,
            )
        except StewardError as e:
            if e.transient:
                raise PermanentProviderError(
                    f"{provider.name} retries exhausted: {e.message}"
                ) from e
            raise

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        """
        Classify a request through the configured providers.

        Args:
            request: Immutable classification request

        Returns:
            ClassificationResult (human_review on any failure or disagreement)
        """
        errors: List[str] = []

        if self.primary is None:
            result = self._human_review(request, [], "No primary classifier configured")
            self._audit(request, result, errors)
            return result

        try:
            primary = await self._call(self.primary, request)
        except StewardError as e:
            logger.warning(
                f"Primary classifier failed for request {request.request_id}: {e.message}"
            )
            errors.append(f"{self.primary.name}: {e.message}")
            result = self._human_review(
                request, [], f"Primary classifier failed: {e.message}"
            )
            self._audit(request, result, errors)
            return result

        secondary: Optional[ProviderClassification] = None
        if self.settings.dual_validation and self.secondary is not None:
            try:
                secondary = await self._call(self.secondary, request, context=primary)
            except StewardError as e:
                logger.warning(
                    f"Secondary classifier failed for request {request.request_id}, "
                    f"using primary alone: {e.message}"
                )
                errors.append(f"{self.secondary.name}: {e.message}")

        try:
            if secondary is None:
                result = self._single_provider(request, primary)
            else:
                result = self._reconcile(request, primary, secondary)
        except StewardError as e:
            errors.append(e.message)
            answers = [primary] + ([secondary] if secondary else [])
            result = self._human_review(
                request, answers, f"Unusable classification: {e.message}"
            )

        self._audit(request, result, errors)
        return result

    def _single_provider(
        self,
        request: ClassificationRequest,
        primary: ProviderClassification,
    ) -> ClassificationResult:
        if primary.action_type == ActionType.HUMAN_REVIEW:
            return self._human_review(
                request, [primary], primary.reasoning or "Classifier requested human review"
            )

        if primary.confidence <= self.settings.single_provider_min_confidence:
            return self._human_review(
                request,
                [primary],
                f"Single-provider confidence {primary.confidence:.2f} <= "
                f"{self.settings.single_provider_min_confidence}",
            )

        logger.info(
            f"Request {request.request_id} accepted from {primary.provider} alone: "
            f"action={primary.action_type.value}, risk={primary.risk_score}"
        )
        return ClassificationResult(
            request_id=request.request_id,
            action_type=primary.action_type,
            confidence=primary.confidence,
            risk_score=primary.risk_score,
            parameters=parse_parameters(primary.action_type, primary.parameters),
            affected_principals=list(primary.affected_principals),
            business_impact=primary.business_impact,
            # Never auto-executed without a second opinion
            requires_approval=True,
            consensus_achieved=False,
            providers=[primary.provider],
            reasoning=primary.reasoning,
        )

    def _disagreement(
        self,
        primary: ProviderClassification,
        secondary: ProviderClassification,
    ) -> Optional[str]:
        """Reason consensus failed, or None when the providers agree."""
        if ActionType.HUMAN_REVIEW in (primary.action_type, secondary.action_type):
            return "A classifier requested human review"
        if primary.action_type != secondary.action_type:
            return (
                f"Action type mismatch: {primary.action_type.value} vs "
                f"{secondary.action_type.value}"
            )
        divergence = abs(primary.risk_score - secondary.risk_score)
        if divergence > self.settings.max_risk_divergence:
            return (
                f"Risk divergence {divergence} exceeds "
                f"{self.settings.max_risk_divergence}"
            )
        threshold = self.settings.consensus_min_confidence
        low = [a for a in (primary, secondary) if a.confidence <= threshold]
        if low:
            return f"Confidence {low[0].confidence:.2f} from {low[0].provider} <= {threshold}"
        return None

    def _reconcile(
        self,
        request: ClassificationRequest,
        primary: ProviderClassification,
        secondary: ProviderClassification,
    ) -> ClassificationResult:
        reason = self._disagreement(primary, secondary)
        if reason is not None:
            logger.info(f"No consensus for request {request.request_id}: {reason}")
            return self._human_review(request, [primary, secondary], reason)

        risk_score = max(primary.risk_score, secondary.risk_score)
        requires_approval = (
            primary.requires_approval
            or secondary.requires_approval
            or risk_score >= min(self.settings.approval_risk_threshold, HIGH_RISK_THRESHOLD)
        )

        principals = list(primary.affected_principals)
        for principal in secondary.affected_principals:
            if principal not in principals:
                principals.append(principal)

        logger.info(
            f"Consensus for request {request.request_id}: "
            f"action={primary.action_type.value}, risk={risk_score}, "
            f"requires_approval={requires_approval}"
        )
        return ClassificationResult(
            request_id=request.request_id,
            action_type=primary.action_type,
            confidence=min(primary.confidence, secondary.confidence),
            risk_score=risk_score,
            parameters=parse_parameters(primary.action_type, primary.parameters),
            affected_principals=principals,
            business_impact=primary.business_impact or secondary.business_impact,
            requires_approval=requires_approval,
            consensus_achieved=True,
            providers=[primary.provider, secondary.provider],
            reasoning=primary.reasoning,
        )

    def _human_review(
        self,
        request: ClassificationRequest,
        answers: List[ProviderClassification],
        reason: str,
    ) -> ClassificationResult:
        """Fail-safe result: a human must look at this request."""
        principals: List[str] = []
        for answer in answers:
            for principal in answer.affected_principals:
                if principal not in principals:
                    principals.append(principal)

        return ClassificationResult(
            request_id=request.request_id,
            action_type=ActionType.HUMAN_REVIEW,
            confidence=min((a.confidence for a in answers), default=0.0),
            risk_score=HUMAN_REVIEW_RISK,
            parameters=ReviewParameters(reason=reason),
            affected_principals=principals,
            business_impact=next(
                (a.business_impact for a in answers if a.business_impact), ""
            ),
            requires_approval=True,
            consensus_achieved=False,
            providers=[a.provider for a in answers],
            reasoning=reason,
        )

    def _audit(
        self,
        request: ClassificationRequest,
        result: ClassificationResult,
        errors: List[str],
    ) -> None:
        if self.ledger is None:
            return

        self.ledger.record(
            AuditLogEntry(
                entity_id=request.request_id,
                tenant_id=request.tenant_id,
                action="classification",
                actor=AUDIT_ACTOR,
                success=result.action_type != ActionType.HUMAN_REVIEW,
                risk_score=result.risk_score,
                details={
                    "source": request.source,
                    "result": result.to_dict(),
                    "provider_errors": errors,
                },
            )
        )
