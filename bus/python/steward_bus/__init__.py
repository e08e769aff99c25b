"""
STEWARD Event Bus - Python client.

Redis Streams transport for classification requests and approval
notifications, with JSON-schema contract validation on both sides.
"""

from .bus import EventBus
from .validator import ContractValidator

__all__ = ["EventBus", "ContractValidator"]
