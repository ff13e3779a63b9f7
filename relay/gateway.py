"""
Remote side of the relay.

Runs inside the deployed function. When a local dispatcher is listening the
event is written to the store as a pending record and the gateway polls
until the dispatcher writes a terminal result; otherwise the function's
original handler runs in-process, exactly as if the relay were not there.
"""
import threading
import time
from typing import Any, Callable, Optional

from mirror_utils.config import RelayConfig
from mirror_utils.logger import get_logger
from relay.base import TransportStore
from relay.handlers import response_predicate
from relay.liveness import LivenessMonitor
from relay.records import InvocationPayload, InvocationRecord

logger = get_logger(__name__)

# Returned by the store when a read failed, as opposed to a missing record
_READ_FAILED = object()


class Gateway:
    def __init__(self, config: RelayConfig, store: TransportStore,
                 original_handler: Callable[[Any, Any], Any],
                 liveness: Optional[LivenessMonitor] = None,
                 clock: Callable[[], float] = time.time,
                 stop_event: Optional[threading.Event] = None,
                 response_required: Optional[Callable[[Any], bool]] = None):
        """
        Args:
            config: Relay configuration (channel, poll interval, record ttl)
            store: Transport store shared with the dispatcher
            original_handler: The function's real handler, ``handler(event, context)``
            liveness: Heartbeat reader (built from config and store when omitted)
            clock: Returns the current epoch time in seconds
            stop_event: Set to abandon an in-flight wait
            response_required: Whether the caller of an event waits for its
                result (derived from ``config.release_non_api`` when omitted)
        """
        self.config = config
        self.store = store
        self.original_handler = original_handler
        self.clock = clock
        self.liveness = liveness or LivenessMonitor(store, config.freshness_window, clock)
        self._stop_event = stop_event or threading.Event()
        self.response_required = response_required or response_predicate(config.release_non_api)

    def handle(self, function_name: str, event: Any, context: Any = None) -> Any:
        """
        Relay one invocation, or fall back to the original handler.

        Returns:
            The local handler's result (or ``{"error": ...}`` when it raised),
            the original handler's result on fallback, or None when the
            invocation could not be relayed or no response arrived in time

        Raises:
            Whatever the original handler raises on the fallback path
        """
        channel = self.config.channel

        if not self.liveness.is_alive(channel):
            logger.info("No local dispatcher listening, running original handler",
                        channel=channel, function=function_name)
            return self.original_handler(event, context)

        invoke_id = self.enqueue(function_name, event)
        if invoke_id is None:
            logger.error("Failed to enqueue invocation", channel=channel, function=function_name)
            return None

        logger.info("Forwarded invocation to local dispatcher",
                    channel=channel, function=function_name, invoke_id=invoke_id)

        record = self.await_result(
            invoke_id,
            response_required=self.response_required(event),
            deadline=self._deadline(context)
        )
        if record is None:
            return None

        logger.info("Relayed invocation finished", invoke_id=invoke_id, status=record.status.value)
        return record.decode_result()

    def enqueue(self, function_name: str, event: Any) -> Optional[str]:
        """Write a pending record; return its invoke id, or None if the write failed."""
        record = InvocationRecord.pending(
            channel=self.config.channel,
            payload=InvocationPayload(target_function=function_name, event=event),
            ttl_seconds=self.config.record_ttl,
            now=self.clock()
        )
        if not self.store.put(record):
            return None
        return record.invoke_id

    def await_result(self, invoke_id: str, response_required: bool = True,
                     deadline: Optional[float] = None) -> Optional[InvocationRecord]:
        """
        Poll until the record reaches a terminal status, then delete it.

        Args:
            invoke_id: Id returned by ``enqueue``
            response_required: When False, the record disappearing means the
                dispatcher consumed it without a response for us; a failed
                read never counts as disappearing
            deadline: Epoch time after which waiting is abandoned

        Returns:
            The terminal record, or None if abandoned
        """
        channel = self.config.channel

        while not self._stop_event.is_set():
            record = self.store.get(channel, invoke_id, default=_READ_FAILED)

            if record is _READ_FAILED:
                logger.debug("Result read failed, polling again", invoke_id=invoke_id)
            elif record is None:
                if not response_required:
                    logger.info("Invocation consumed without a response", invoke_id=invoke_id)
                    return None
            elif record.is_terminal:
                self.store.delete(channel, invoke_id)
                return record

            if deadline is not None and self.clock() + self.config.poll_interval >= deadline:
                logger.warning("Gave up waiting for local result before the deadline",
                               invoke_id=invoke_id)
                return None

            self._stop_event.wait(self.config.poll_interval)

        logger.info("Stopped waiting for local result", invoke_id=invoke_id)
        return None

    def stop(self) -> None:
        self._stop_event.set()

    def _deadline(self, context: Any) -> Optional[float]:
        remaining = getattr(context, "get_remaining_time_in_millis", None)
        if not callable(remaining):
            return None
        return self.clock() + remaining() / 1000.0 - self.config.deadline_margin
