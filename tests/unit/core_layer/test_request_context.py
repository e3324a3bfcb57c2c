"""
Unit Tests for Clock and RequestContext

Deadlines only ever tighten, and every blocking call is bounded by what is
left of the request.
"""

import uuid

import pytest

from src.core.clock import ManualClock, SystemClock
from src.core.context import RequestContext, new_request_id
from src.core.exceptions import RequestTimeoutError


@pytest.mark.unit
class TestClock:
    def test_manual_clock_moves_only_when_advanced(self):
        clock = ManualClock(start=100.0)
        assert clock.now() == 100.0
        assert clock.monotonic() == 0.0

        clock.advance(2.5)

        assert clock.now() == 102.5
        assert clock.monotonic() == 2.5

    def test_system_clock_monotonic_never_decreases(self):
        clock = SystemClock()
        first = clock.monotonic()
        assert clock.monotonic() >= first


@pytest.mark.unit
class TestRequestIds:
    def test_new_request_id_is_uuid4(self):
        value = new_request_id()
        assert uuid.UUID(value).version == 4

    def test_ids_are_unique(self):
        assert len({new_request_id() for _ in range(1000)}) == 1000

    def test_background_context_is_marked(self):
        assert RequestContext.background().request_id.startswith("bg-")


@pytest.mark.unit
class TestDeadlines:
    def test_no_deadline_by_default(self, ctx):
        assert ctx.remaining() is None
        assert ctx.bounded(2.0) == 2.0
        assert not ctx.expired

    def test_with_timeout_sets_deadline(self, ctx, clock):
        ctx.with_timeout(5.0)
        clock.advance(2.0)
        assert ctx.remaining() == pytest.approx(3.0)
        assert ctx.bounded(2.0) == 2.0
        assert ctx.bounded(10.0) == pytest.approx(3.0)

    def test_deadline_never_loosens(self, ctx, clock):
        ctx.with_timeout(1.0)
        ctx.with_timeout(30.0)
        assert ctx.remaining() == pytest.approx(1.0)

    def test_check_deadline_raises_after_expiry(self, ctx, clock):
        ctx.with_timeout(1.0)
        ctx.check_deadline()

        clock.advance(1.0)

        assert ctx.remaining() == 0.0
        with pytest.raises(RequestTimeoutError) as exc_info:
            ctx.check_deadline()
        assert exc_info.value.request_id == "test-request"

    def test_cancel_expires_context(self, ctx):
        ctx.cancel()
        assert ctx.expired
        with pytest.raises(RequestTimeoutError):
            ctx.check_deadline()
