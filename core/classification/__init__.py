"""STEWARD Classification - providers, consensus and action planning."""

from .action_planner import ActionPlanner
from .orchestrator import ClassificationOrchestrator
from .providers import (
    AnthropicClassifier,
    ClassificationProvider,
    OllamaClassifier,
    OpenAIClassifier,
    build_prompt,
    build_provider,
    parse_classification,
)

__all__ = [
    "ActionPlanner",
    "AnthropicClassifier",
    "ClassificationOrchestrator",
    "ClassificationProvider",
    "OllamaClassifier",
    "OpenAIClassifier",
    "build_prompt",
    "build_provider",
    "parse_classification",
]
