"""
STEWARD Classification Providers - LLM classifiers behind one interface.

Each provider turns a ClassificationRequest into a ProviderClassification:
- AnthropicClassifier: Claude via the anthropic SDK
- OpenAIClassifier: GPT via the openai SDK
- OllamaClassifier: locally served model via ollama

All three share the prompt builder and the JSON response parser. The
parsed payload must satisfy the classification_output contract before it
is accepted.

Error mapping:
- Rate limit, timeout, connection and 5xx failures raise TransientProviderError
- Authentication, bad request and malformed output raise PermanentProviderError
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import anthropic
import httpx
import ollama
import openai

from bus.python.steward_bus import ContractValidator
from core.errors import PermanentProviderError, StewardError, TransientProviderError
from core.models import (
    ActionType,
    ClassificationRequest,
    ProviderClassification,
    parse_parameters,
)


logger = logging.getLogger(__name__)


OUTPUT_CONTRACT = "classification_output"

MAX_OUTPUT_TOKENS = 1024

PARAMETER_HINTS = {
    ActionType.PASSWORD_RESET: '{"user": "<upn>", "force_change_on_next_sign_in": true}',
    ActionType.GROUP_MEMBERSHIP: '{"group": "<group name or id>", "members": ["<upn>"], "operation": "add|remove"}',
    ActionType.USER_ONBOARDING: '{"user": "<upn>", "display_name": "<name>", "department": "<department>"}',
    ActionType.USER_OFFBOARDING: '{"user": "<upn>", "revoke_sessions": true}',
    ActionType.PERMISSION_CHANGE: '{"target": "<principal or resource>", "changes": {"<setting>": "<value>"}}',
    ActionType.LICENSE_ASSIGNMENT: '{"user": "<upn>", "add_skus": ["<sku>"], "remove_skus": []}',
    ActionType.SECURITY_GROUP_CHANGE: '{"target": "<group>", "changes": {"<setting>": "<value>"}}',
    ActionType.CONDITIONAL_ACCESS_CHANGE: '{"target": "<policy>", "changes": {"<setting>": "<value>"}}',
    ActionType.HUMAN_REVIEW: '{"reason": "<why this needs a human>"}',
}


def build_prompt(
    request: ClassificationRequest,
    context: Optional[ProviderClassification] = None,
) -> str:
    """
    Build the classification prompt shared by every provider.

    Args:
        request: Request to classify
        context: Another provider's answer, when this call is the second opinion

    Returns:
        Prompt text
    """
    action_lines = "\n".join(
        f"- {action_type.value}: parameters {hint}"
        for action_type, hint in PARAMETER_HINTS.items()
    )
    context_lines = "\n".join(
        f"- {key}: {value}" for key, value in sorted(request.context.items())
    ) or "- (none)"

    prompt = f"""You classify administrative requests for a managed IT service provider.

CLIENT: {request.client_label} (tenant {request.tenant_id})
SOURCE: {request.source}

REQUEST:
{request.content}

REQUEST CONTEXT:
{context_lines}

ALLOWED ACTION TYPES:
{action_lines}

RISK SCORE GUIDE (0-100):
- 0-29: routine, single user, easily reversed
- 30-69: affects access or several users
- 70-89: privileged access, security groups, offboarding
- 90-100: tenant-wide security policy or irreversible change
"""

    if context is not None:
        prompt += f"""
A FIRST REVIEWER PROPOSED:
{json.dumps(context.to_dict(), sort_keys=True)}

Evaluate the request independently. Do not copy the first reviewer's answer
unless you reach the same conclusion on your own.
"""

    prompt += """
RESPOND WITH ONE JSON OBJECT AND NOTHING ELSE:
{"action_type": "<allowed action type>", "confidence": <0.0-1.0>,
 "risk_score": <0-100>, "parameters": {...}, "affected_principals": ["<upn>"],
 "business_impact": "<one sentence>", "requires_approval": <true|false>,
 "reasoning": "<one or two sentences>"}

If the request is ambiguous, unsafe or outside the allowed action types,
answer human_review. When uncertain, report lower confidence."""

    return prompt


def _extract_json(response_text: str) -> Dict[str, Any]:
    text = response_text.strip()
    if text.startswith("```"):
        # ```json ... ``` fences
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise PermanentProviderError("Provider response contains no JSON object")

    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError as e:
        raise PermanentProviderError(f"Provider response is not valid JSON: {e}")

    if not isinstance(payload, dict):
        raise PermanentProviderError("Provider response must be a JSON object")
    return payload


def parse_classification(
    response_text: str,
    provider: str,
    validator: ContractValidator,
) -> ProviderClassification:
    """
    Parse and validate a provider's raw answer.

    Args:
        response_text: Raw model output, optionally wrapped in a code fence
        provider: Provider name recorded on the result
        validator: Contract validator holding classification_output

    Returns:
        ProviderClassification

    Raises:
        PermanentProviderError: If the output is empty, not JSON, violates
            the contract, or carries unusable parameters
    """
    if not response_text or not response_text.strip():
        raise PermanentProviderError(f"Empty response from {provider}")

    payload = _extract_json(response_text)

    violations = validator.errors(payload, OUTPUT_CONTRACT)
    if violations:
        raise PermanentProviderError(
            f"{provider} output violates contract: {'; '.join(violations[:3])}"
        )

    action_type = ActionType.parse(payload["action_type"])
    # Typed parameters must parse now; a missing required key is malformed output
    parse_parameters(action_type, payload["parameters"])

    return ProviderClassification(
        provider=provider,
        action_type=action_type,
        confidence=float(payload["confidence"]),
        risk_score=int(payload["risk_score"]),
        parameters=dict(payload["parameters"]),
        affected_principals=list(payload.get("affected_principals", [])),
        business_impact=payload.get("business_impact", ""),
        requires_approval=bool(payload["requires_approval"]),
        reasoning=payload.get("reasoning", ""),
    )


def _map_sdk_error(provider: str, error: Exception, sdk: Any) -> StewardError:
    """Translate an anthropic/openai SDK exception into the engine taxonomy."""
    if isinstance(
        error, (sdk.RateLimitError, sdk.APIConnectionError, sdk.InternalServerError)
    ):
        return TransientProviderError(f"{provider} unavailable: {type(error).__name__}")
    if isinstance(error, sdk.APIStatusError) and error.status_code >= 500:
        return TransientProviderError(f"{provider} returned HTTP {error.status_code}")
    return PermanentProviderError(f"{provider} request failed: {type(error).__name__}")


class ClassificationProvider(ABC):
    """
    One classification backend.

    Invariants:
    - Raises only TransientProviderError or PermanentProviderError
    - Every call is bounded by timeout seconds
    """

    name: str = "provider"

    def __init__(self, model: str, validator: ContractValidator, timeout: float = 30.0):
        self.model = model
        self.validator = validator
        self.timeout = timeout

    @abstractmethod
    def _complete(self, prompt: str) -> str:
        """Blocking SDK call returning the raw model text."""

    def _translate(self, error: Exception) -> Optional[StewardError]:
        """Map an SDK exception; None means it is not an SDK error."""
        return None

    async def classify(
        self,
        request: ClassificationRequest,
        context: Optional[ProviderClassification] = None,
    ) -> ProviderClassification:
        """
        Classify a request.

        Args:
            request: Request to classify
            context: Primary provider's answer for a second opinion

        Returns:
            ProviderClassification

        Raises:
            TransientProviderError: Worth retrying
            PermanentProviderError: Not worth retrying
        """
        prompt = build_prompt(request, context)
        loop = asyncio.get_running_loop()

        try:
            response_text = await asyncio.wait_for(
                loop.run_in_executor(None, self._complete, prompt),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise TransientProviderError(
                f"{self.name} timed out after {self.timeout}s"
            )
        except StewardError:
            raise
        except Exception as e:
            mapped = self._translate(e)
            if mapped is None:
                logger.error(f"{self.name} unexpected error: {e}", exc_info=True)
                raise PermanentProviderError(
                    f"{self.name} failed - {type(e).__name__}"
                ) from e
            logger.warning(f"{self.name} call failed: {mapped.message}")
            raise mapped from e

        result = parse_classification(response_text, self.name, self.validator)
        logger.info(
            f"{self.name} classified request {request.request_id}: "
            f"action={result.action_type.value}, confidence={result.confidence:.2f}, "
            f"risk={result.risk_score}"
        )
        return result


class AnthropicClassifier(ClassificationProvider):
    """Claude via the anthropic SDK."""

    name = "anthropic"

    def __init__(
        self,
        model: str,
        validator: ContractValidator,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[anthropic.Anthropic] = None,
    ):
        super().__init__(model, validator, timeout)
        self._client = client or anthropic.Anthropic(api_key=api_key, timeout=timeout)

    def _complete(self, prompt: str) -> str:
        response = self._client.messages.create(
            model=self.model,
            max_tokens=MAX_OUTPUT_TOKENS,
            temperature=0.0,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text if response.content else ""

    def _translate(self, error: Exception) -> Optional[StewardError]:
        if isinstance(error, anthropic.APIError):
            return _map_sdk_error(self.name, error, anthropic)
        return None


class OpenAIClassifier(ClassificationProvider):
    """GPT via the openai SDK."""

    name = "openai"

    def __init__(
        self,
        model: str,
        validator: ContractValidator,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[openai.OpenAI] = None,
    ):
        super().__init__(model, validator, timeout)
        self._client = client or openai.OpenAI(api_key=api_key, timeout=timeout)

    def _complete(self, prompt: str) -> str:
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=MAX_OUTPUT_TOKENS,
            temperature=0.0,
            response_format={"type": "json_object"},
            messages=[{"role": "user", "content": prompt}],
        )
        if response.choices and response.choices[0].message.content:
            return response.choices[0].message.content
        return ""

    def _translate(self, error: Exception) -> Optional[StewardError]:
        if isinstance(error, openai.APIError):
            return _map_sdk_error(self.name, error, openai)
        return None


class OllamaClassifier(ClassificationProvider):
    """Locally served model via ollama."""

    name = "ollama"

    def __init__(
        self,
        model: str,
        validator: ContractValidator,
        host: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[ollama.Client] = None,
    ):
        super().__init__(model, validator, timeout)
        self._client = client or ollama.Client(host=host, timeout=timeout)

    def _complete(self, prompt: str) -> str:
        response = self._client.generate(
            model=self.model,
            prompt=prompt,
            format="json",
            options={"temperature": 0.0},
        )
        return response.get("response", "")

    def _translate(self, error: Exception) -> Optional[StewardError]:
        if isinstance(error, ollama.ResponseError):
            if error.status_code == 429 or error.status_code >= 500:
                return TransientProviderError(
                    f"{self.name} returned HTTP {error.status_code}"
                )
            return PermanentProviderError(f"{self.name} rejected request: {error.error}")
        if isinstance(error, (httpx.TransportError, ConnectionError)):
            return TransientProviderError(f"{self.name} unreachable: {error}")
        return None


def build_provider(
    name: Optional[str],
    settings: Any,
    credentials: Any,
    validator: ContractValidator,
) -> Optional[ClassificationProvider]:
    """
    Build a provider from configuration.

    Args:
        name: Provider name (anthropic, openai, ollama) or None
        settings: ClassificationSettings
        credentials: Credentials captured at start-up
        validator: Contract validator for provider output

    Returns:
        Provider, or None when name is None or its API key is missing
    """
    if name is None:
        return None

    model = settings.models[name]
    timeout = settings.timeout_seconds

    if name == "anthropic":
        if not credentials.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY not set - anthropic classifier unavailable")
            return None
        return AnthropicClassifier(
            model, validator, api_key=credentials.anthropic_api_key, timeout=timeout
        )

    if name == "openai":
        if not credentials.openai_api_key:
            logger.warning("OPENAI_API_KEY not set - openai classifier unavailable")
            return None
        return OpenAIClassifier(
            model, validator, api_key=credentials.openai_api_key, timeout=timeout
        )

    if name == "ollama":
        return OllamaClassifier(
            model, validator, host=settings.ollama_host, timeout=timeout
        )

    raise ValueError(f"Unknown classification provider: {name}")
