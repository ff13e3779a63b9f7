"""
Local side of the relay.

One dispatcher runs per channel on the developer machine. Each tick it claims
the pending records, runs their local handlers concurrently, writes one
terminal result per record and refreshes the channel heartbeat.

Claiming is a plain batch write, not a conditional one: two dispatchers on the
same channel could both run a record. Only one dispatcher per channel is
supported.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from mirror_utils.config import RelayConfig
from mirror_utils.logger import MetricsLogger, get_logger
from relay.base import TransportStore
from relay.handlers import HandlerNotFound, HandlerResolver, response_predicate
from relay.liveness import LivenessMonitor
from relay.records import InvocationPayload, InvocationRecord, InvokeStatus

logger = get_logger(__name__)


def _error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class Dispatcher:
    def __init__(self, config: RelayConfig, store: TransportStore, resolver: HandlerResolver,
                 liveness: Optional[LivenessMonitor] = None,
                 response_required: Optional[Callable[[Any], bool]] = None,
                 metrics: Optional[MetricsLogger] = None,
                 clock: Callable[[], float] = time.time,
                 stop_event: Optional[threading.Event] = None):
        """
        Args:
            config: Relay configuration (channel, tick interval, worker count)
            store: Transport store shared with the gateways
            resolver: Maps function names to local callables
            liveness: Heartbeat writer (built from config and store when omitted)
            response_required: Whether an event's caller waits for the result;
                completed records of other events are deleted right away
                (derived from ``config.release_non_api`` when omitted)
            metrics: Metrics sink (a fresh one when omitted)
            clock: Returns the current epoch time in seconds
            stop_event: Set to end ``run`` after the current tick
        """
        self.config = config
        self.store = store
        self.resolver = resolver
        self.clock = clock
        self.liveness = liveness or LivenessMonitor(store, config.freshness_window, clock)
        self.response_required = response_required or response_predicate(config.release_non_api)
        self.metrics = metrics or MetricsLogger(logger)
        self._stop_event = stop_event or threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.max_workers),
            thread_name_prefix="lambda-mirror"
        )

    @property
    def channel(self) -> str:
        return self.config.channel

    def drain(self) -> List[InvocationRecord]:
        """
        Claim this channel's pending records.

        Returns:
            The records now marked in-progress; records whose claim could not
            be written stay pending for the next tick
        """
        pending = self.store.query(self.channel, InvokeStatus.PENDING)
        if not pending:
            return []

        claimed = [record.claim() for record in pending]
        unwritten = {record.key for record in self.store.batch_put(claimed)}
        if unwritten:
            self.metrics.record_store_failure("claim")
            logger.warning("Some records could not be claimed", unclaimed=len(unwritten))

        return [record for record in claimed if record.key not in unwritten]

    def process(self, record: InvocationRecord) -> InvocationRecord:
        """Run one claimed record's local handler and write its terminal result."""
        try:
            payload = record.decode_payload()
        except ValueError as e:
            logger.error("Invalid invocation payload", invoke_id=record.invoke_id, error=str(e))
            return self._finish(record.fail(f"Invalid invocation payload: {e}"), None)

        try:
            handler = self.resolver.resolve(payload.target_function)
        except HandlerNotFound as e:
            logger.error("No local handler", function=payload.target_function, error=str(e))
            return self._finish(record.fail(_error_message(e)), payload)

        logger.info("Triggering local handler",
                    function=payload.target_function, invoke_id=record.invoke_id)
        try:
            output = handler(payload.event)
        except Exception as e:
            logger.exception("Local handler raised",
                             function=payload.target_function, invoke_id=record.invoke_id)
            return self._finish(record.fail(_error_message(e)), payload)

        logger.info("Local handler finished",
                    function=payload.target_function, invoke_id=record.invoke_id)
        return self._finish(record.complete(output), payload)

    def _finish(self, terminal: InvocationRecord,
                payload: Optional[InvocationPayload]) -> InvocationRecord:
        if not self.store.put(terminal):
            self.metrics.record_store_failure("result")
            logger.error("Failed to write result", invoke_id=terminal.invoke_id)
            return terminal

        logger.debug("Result written", invoke_id=terminal.invoke_id, result=terminal.result)

        if (terminal.status is InvokeStatus.COMPLETED and payload is not None
                and not self.response_required(payload.event)):
            logger.info("Event expects no response, removing record", invoke_id=terminal.invoke_id)
            self.store.delete(*terminal.key)

        return terminal

    def tick(self) -> List[InvocationRecord]:
        """
        One pass of the loop: drain, run every claimed record, beat.

        Handlers run concurrently and independently; the tick returns once
        every outcome has been written.
        """
        started = self.clock()
        claimed = self.drain()
        outcomes: List[InvocationRecord] = []

        if claimed:
            futures = [(record, self._executor.submit(self.process, record)) for record in claimed]
            for record, future in futures:
                try:
                    outcomes.append(future.result())
                except Exception:
                    logger.exception("Unexpected error while processing record",
                                     invoke_id=record.invoke_id)

        self.liveness.refresh(self.channel)

        completed = sum(1 for r in outcomes if r.status is InvokeStatus.COMPLETED)
        self.metrics.record_tick(
            claimed=len(claimed),
            completed=completed,
            failed=len(outcomes) - completed,
            duration=self.clock() - started
        )
        return outcomes

    def clean(self) -> int:
        """
        Delete every record of this channel (stale invocations of an earlier
        session). Running it on an empty channel is a no-op.

        Returns:
            Number of records deleted
        """
        records = self.store.scan_all(self.channel)
        if not records:
            logger.info("No queued invocations to clean", channel=self.channel)
            return 0

        deleted = self.store.batch_delete([record.key for record in records])
        logger.info("Cleaned queued invocations",
                    channel=self.channel, found=len(records), deleted=deleted)
        return deleted

    def run(self, clean: bool = False) -> None:
        """
        Loop until ``stop`` is called (or the stop event is set).

        Args:
            clean: Erase all queued invocations before listening
        """
        logger.info("Dispatcher starting", channel=self.channel, functions=self.resolver.names())
        self.liveness.refresh(self.channel)

        purged = self.store.purge_expired(self.clock())
        if purged:
            logger.info("Purged expired records", count=purged)

        if clean:
            self.clean()

        logger.info("Ready and listening for new events", channel=self.channel)
        try:
            while not self._stop_event.is_set():
                try:
                    self.tick()
                except Exception:
                    logger.exception("Dispatcher tick failed")
                self._stop_event.wait(self.config.tick_interval)
        finally:
            self._executor.shutdown(wait=True)
            self.metrics.log_metrics()
            logger.info("Dispatcher stopped", channel=self.channel)

    def stop(self) -> None:
        self._stop_event.set()
