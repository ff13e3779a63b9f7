import json

import pytest

from relay.records import (
    InvalidTransition,
    InvocationPayload,
    InvocationRecord,
    InvokeStatus,
    LivenessRecord,
    liveness_key,
    new_invoke_id,
)


def _pending(now=1000.0):
    return InvocationRecord.pending(
        channel="svc1",
        payload=InvocationPayload(target_function="F", event={"a": 1, "b": 2}),
        ttl_seconds=60,
        now=now,
    )


class TestInvokeIds:
    def test_ids_are_unique_within_the_same_instant(self):
        ids = {new_invoke_id() for _ in range(1000)}
        assert len(ids) == 1000

    def test_ids_start_with_a_sortable_timestamp(self):
        prefix = new_invoke_id().split("-")[0]
        assert len(prefix) == 13
        assert prefix.isdigit()


class TestInvocationRecord:
    def test_pending_record(self):
        record = _pending(now=1000.4)

        assert record.status is InvokeStatus.PENDING
        assert record.result is None
        assert record.ttl == 1060
        assert json.loads(record.payload) == {"targetFunction": "F", "event": {"a": 1, "b": 2}}
        assert record.decode_payload() == InvocationPayload("F", {"a": 1, "b": 2})

    def test_forward_lifecycle(self):
        record = _pending().claim()
        assert record.status is InvokeStatus.IN_PROGRESS

        done = record.complete({"sum": 3})
        assert done.status is InvokeStatus.COMPLETED
        assert done.is_terminal
        assert done.decode_result() == {"sum": 3}

    def test_fail_wraps_message(self):
        failed = _pending().claim().fail("boom")

        assert failed.status is InvokeStatus.FAILED
        assert failed.decode_result() == {"error": "boom"}

    def test_original_record_is_left_untouched(self):
        pending = _pending()
        pending.claim()
        assert pending.status is InvokeStatus.PENDING

    @pytest.mark.parametrize("status", [InvokeStatus.COMPLETED, InvokeStatus.FAILED])
    def test_pending_cannot_skip_claim(self, status):
        with pytest.raises(InvalidTransition):
            _pending().transition(status, {})

    def test_no_backward_transition(self):
        claimed = _pending().claim()
        with pytest.raises(InvalidTransition):
            claimed.transition(InvokeStatus.PENDING)

    def test_terminal_records_are_final(self):
        done = _pending().claim().complete({"sum": 3})
        with pytest.raises(InvalidTransition):
            done.fail("late")
        with pytest.raises(InvalidTransition):
            done.complete({"sum": 4})

    def test_none_result_is_encoded(self):
        done = _pending().claim().complete(None)
        assert done.result == "null"
        assert done.decode_result() is None


class TestInvocationPayload:
    def test_missing_target_function_is_rejected(self):
        with pytest.raises(ValueError, match="targetFunction"):
            InvocationPayload.from_json(json.dumps({"event": {}}))

    def test_invalid_json_is_rejected(self):
        with pytest.raises(ValueError):
            InvocationPayload.from_json("{not json")


class TestLivenessRecord:
    def test_key(self):
        assert liveness_key("svc1") == "svc1_TTL"

    def test_freshness(self):
        beat = LivenessRecord(channel="svc1", ttl=1000)

        assert beat.is_fresh(now=1004.9, freshness_window=5)
        assert not beat.is_fresh(now=1005, freshness_window=5)
        assert not beat.is_fresh(now=1030, freshness_window=5)
