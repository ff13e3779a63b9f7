"""
Invocation and liveness records, and the status lifecycle they follow.

An InvocationRecord moves strictly forward:

    pending -> in-progress -> completed | failed

Terminal records are never rewritten, only deleted.
"""
import json
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

LIVENESS_SUFFIX = "_TTL"
LIVENESS_SORT_KEY = "0"


class InvokeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({InvokeStatus.COMPLETED, InvokeStatus.FAILED})

_ALLOWED_TRANSITIONS = {
    InvokeStatus.PENDING: {InvokeStatus.IN_PROGRESS},
    InvokeStatus.IN_PROGRESS: {InvokeStatus.COMPLETED, InvokeStatus.FAILED},
    InvokeStatus.COMPLETED: set(),
    InvokeStatus.FAILED: set(),
}


class InvalidTransition(ValueError):
    """Raised when a record would move backwards or leave a terminal state."""


def new_invoke_id() -> str:
    """
    Millisecond timestamp prefix (keeps ids roughly ordered in the sort key)
    plus a random suffix, so concurrent gateways never collide.
    """
    return f"{int(time.time() * 1000):013d}-{uuid.uuid4().hex}"


def liveness_key(channel: str) -> str:
    return f"{channel}{LIVENESS_SUFFIX}"


@dataclass(frozen=True)
class InvocationPayload:
    """What the gateway asks the local side to run."""
    target_function: str
    event: Any

    def to_json(self) -> str:
        return json.dumps({"targetFunction": self.target_function, "event": self.event}, default=str)

    @classmethod
    def from_json(cls, body: str) -> "InvocationPayload":
        data = json.loads(body)
        if not isinstance(data, dict) or "targetFunction" not in data:
            raise ValueError("Invocation payload is missing 'targetFunction'")
        return cls(target_function=data["targetFunction"], event=data.get("event"))


@dataclass(frozen=True)
class InvocationRecord:
    channel: str
    invoke_id: str
    payload: str
    status: InvokeStatus = InvokeStatus.PENDING
    result: Optional[str] = None
    ttl: Optional[int] = None

    @classmethod
    def pending(cls, channel: str, payload: InvocationPayload, ttl_seconds: int,
                now: Optional[float] = None) -> "InvocationRecord":
        """Create a fresh pending record with a new invoke id."""
        now = time.time() if now is None else now
        return cls(
            channel=channel,
            invoke_id=new_invoke_id(),
            payload=payload.to_json(),
            status=InvokeStatus.PENDING,
            ttl=int(now) + ttl_seconds,
        )

    @property
    def key(self) -> tuple:
        return (self.channel, self.invoke_id)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def decode_payload(self) -> InvocationPayload:
        return InvocationPayload.from_json(self.payload)

    def decode_result(self) -> Any:
        if self.result is None:
            return None
        return json.loads(self.result)

    def transition(self, status: InvokeStatus, result: Any = None) -> "InvocationRecord":
        """
        Return a copy of this record in ``status``.

        Raises:
            InvalidTransition: If the move is not allowed by the lifecycle
        """
        status = InvokeStatus(status)
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Record {self.invoke_id} cannot move from {self.status.value} to {status.value}"
            )
        if status.is_terminal:
            return replace(self, status=status, result=json.dumps(result, default=str))
        return replace(self, status=status)

    def claim(self) -> "InvocationRecord":
        return self.transition(InvokeStatus.IN_PROGRESS)

    def complete(self, result: Any) -> "InvocationRecord":
        return self.transition(InvokeStatus.COMPLETED, result)

    def fail(self, message: str) -> "InvocationRecord":
        return self.transition(InvokeStatus.FAILED, {"error": message})


@dataclass(frozen=True)
class LivenessRecord:
    """Heartbeat row for a channel; ``ttl`` is the epoch second of the last beat."""
    channel: str
    ttl: int

    def age(self, now: float) -> float:
        return now - self.ttl

    def is_fresh(self, now: float, freshness_window: float) -> bool:
        return self.age(now) < freshness_window

