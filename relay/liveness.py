"""
Heartbeat shared by both sides of the relay.

The dispatcher stamps the channel's liveness row on every tick; the gateway
treats the channel as listened to while that stamp is younger than the
freshness window. This is a best-effort signal, not a lease.
"""
import time
from typing import Callable

from mirror_utils.logger import get_logger
from relay.base import TransportStore

logger = get_logger(__name__)

DEFAULT_FRESHNESS_WINDOW = 5.0


class LivenessMonitor:
    def __init__(self, store: TransportStore,
                 freshness_window: float = DEFAULT_FRESHNESS_WINDOW,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            store: Transport store holding the liveness rows
            freshness_window: Maximum heartbeat age (seconds) still considered alive
            clock: Returns the current epoch time in seconds
        """
        self.store = store
        self.freshness_window = freshness_window
        self.clock = clock

    def refresh(self, channel: str) -> bool:
        """Stamp the channel's heartbeat with the current time."""
        ok = self.store.touch_liveness(channel, self.clock())
        if not ok:
            logger.warning("Failed to refresh heartbeat", channel=channel)
        return ok

    def is_alive(self, channel: str) -> bool:
        """
        True iff a heartbeat exists and is younger than the freshness window.

        A missing row, or a failed read, both mean "nobody is listening".
        """
        record = self.store.get_liveness(channel)
        if record is None:
            logger.debug("No heartbeat found", channel=channel)
            return False

        now = self.clock()
        alive = record.is_fresh(now, self.freshness_window)
        logger.debug(
            "Heartbeat checked",
            channel=channel,
            heartbeat_age_seconds=round(record.age(now), 3),
            alive=alive
        )
        return alive
