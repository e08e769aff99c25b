"""
Redis Streams-based event bus implementation.

Every outbound message is validated against its contract before XADD, and
every inbound message again before it reaches a handler.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import redis
from jsonschema import ValidationError

from .validator import ContractValidator


logger = logging.getLogger(__name__)


Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """
    Redis Streams-based event bus with contract validation.

    Invariants:
    - All messages MUST validate against contracts before publish
    - Invalid messages are rejected (fail fast)
    - Handler failures are logged and acknowledged, never re-queued
    - Bounded memory usage (Redis Streams with maxlen)
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        contracts_dir: Path,
        stream_prefix: str = "steward",
        max_stream_length: int = 10000,
    ):
        """
        Initialize event bus.

        Args:
            redis_client: Redis client instance
            contracts_dir: Path to contracts directory
            stream_prefix: Prefix for Redis stream names
            max_stream_length: Maximum entries per stream (for bounded memory)
        """
        self.redis = redis_client
        self.validator = ContractValidator(contracts_dir)
        self.stream_prefix = stream_prefix
        self.max_stream_length = max_stream_length

    def _get_stream_name(self, contract_type: str) -> str:
        """
        Get Redis stream name for contract type.

        Returns:
            Stream name (e.g., "steward:notifications")
        """
        return f"{self.stream_prefix}:{contract_type}s"

    def publish(self, message: Dict[str, Any], contract_type: str) -> str:
        """
        Publish message to event bus after validation.

        Args:
            message: Message to publish
            contract_type: Contract type (classification_request, notification)

        Returns:
            Message ID from Redis

        Raises:
            ValidationError: If message doesn't match contract
            ValueError: If contract type unknown
            redis.RedisError: If Redis operation fails
        """
        self.validator.validate(message, contract_type)

        stream_name = self._get_stream_name(contract_type)
        message_id = self.redis.xadd(
            stream_name,
            {"data": json.dumps(message)},
            maxlen=self.max_stream_length,
            approximate=True,
        )

        logger.debug(f"Published {contract_type} to {stream_name}: {message_id}")

        return message_id.decode("utf-8") if isinstance(message_id, bytes) else message_id

    def ensure_group(self, contract_type: str, consumer_group: str) -> None:
        """Create the consumer group (and stream) if it doesn't exist."""
        stream_name = self._get_stream_name(contract_type)
        try:
            self.redis.xgroup_create(stream_name, consumer_group, id="0", mkstream=True)
            logger.info(f"Created consumer group {consumer_group} for {stream_name}")
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"Consumer group {consumer_group} already exists for {stream_name}")

    def _decode(self, fields: Dict[Any, Any]) -> Dict[str, Any]:
        raw = fields.get(b"data")
        if raw is None:
            raw = fields["data"]
        return json.loads(raw)

    def poll(
        self,
        contract_type: str,
        handler: Handler,
        consumer_group: str,
        consumer_name: str,
        block_ms: int = 1000,
        count: int = 10,
    ) -> int:
        """
        Read one batch for this consumer and dispatch it.

        Args:
            contract_type: Contract type to consume
            handler: Callback invoked with each decoded, validated message
            consumer_group: Redis consumer group name
            consumer_name: Consumer name within group
            block_ms: Block timeout in milliseconds
            count: Maximum messages to read

        Returns:
            Number of messages acknowledged
        """
        stream_name = self._get_stream_name(contract_type)
        messages = self.redis.xreadgroup(
            consumer_group,
            consumer_name,
            {stream_name: ">"},
            count=count,
            block=block_ms,
        )
        if not messages:
            return 0

        handled = 0
        for _stream, entries in messages:
            for message_id, fields in entries:
                try:
                    data = self._decode(fields)
                    self.validator.validate(data, contract_type)
                    handler(data)
                except (ValueError, ValidationError) as e:
                    logger.error(
                        f"Rejected malformed {contract_type} message {message_id}: {e}"
                    )
                except Exception as e:
                    logger.error(
                        f"Error processing message {message_id}: {e}",
                        exc_info=True,
                    )
                # Acknowledged either way so one bad message cannot wedge the group
                self.redis.xack(stream_name, consumer_group, message_id)
                handled += 1

        return handled

    def subscribe(
        self,
        contract_type: str,
        handler: Handler,
        consumer_group: str,
        consumer_name: str,
        block_ms: int = 1000,
        count: int = 10,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Subscribe to contract type and process messages until stopped.

        Args:
            contract_type: Contract type to subscribe to
            handler: Callback function to handle each message
            consumer_group: Redis consumer group name
            consumer_name: Consumer name within group
            block_ms: Block timeout in milliseconds
            count: Maximum messages to read per call
            stop_event: Loop exits once this event is set
        """
        stream_name = self._get_stream_name(contract_type)
        self.ensure_group(contract_type, consumer_group)

        logger.info(
            f"Starting subscription: {stream_name} "
            f"(group={consumer_group}, consumer={consumer_name})"
        )

        while stop_event is None or not stop_event.is_set():
            try:
                self.poll(
                    contract_type,
                    handler,
                    consumer_group,
                    consumer_name,
                    block_ms=block_ms,
                    count=count,
                )
            except KeyboardInterrupt:
                break
            except redis.RedisError as e:
                logger.error(f"Error in subscription loop: {e}", exc_info=True)
                if stop_event is not None:
                    stop_event.wait(1.0)

        logger.info(f"Stopped subscription to {stream_name} ({consumer_name})")

    def read_stream(
        self,
        contract_type: str,
        start_id: str = "0",
        count: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Read messages from stream (for testing and inspection).

        Returns:
            List of decoded messages
        """
        stream_name = self._get_stream_name(contract_type)
        entries = self.redis.xrange(stream_name, min=start_id, max="+", count=count)
        return [self._decode(fields) for _message_id, fields in entries]
