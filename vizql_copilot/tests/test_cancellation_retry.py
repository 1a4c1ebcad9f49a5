"""
Tests for abort signals, run_cancelable and the feedback retry loop.
"""

import asyncio

import pytest

from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.retry import AttemptFailed, RetryPolicy, attempt_with_feedback


class TestRunCancelable:
    """Tests for run_cancelable."""

    def test_no_signal_awaits_directly(self):
        """Without a signal the call simply runs."""

        async def work():
            return 42

        assert asyncio.run(run_cancelable(None, work)) == 42

    def test_aborted_signal_never_calls(self):
        """A pre-aborted signal raises without invoking the factory."""
        signal = AbortSignal()
        signal.abort("user")
        calls = []

        async def work():
            calls.append(1)

        with pytest.raises(TurnCancelled) as exc_info:
            asyncio.run(run_cancelable(signal, work))

        assert exc_info.value.reason == "user"
        assert calls == []

    def test_abort_mid_call(self):
        """Aborting during the call cancels the in-flight task."""
        cancelled = []

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        async def scenario():
            signal = AbortSignal()
            asyncio.get_running_loop().call_later(0.05, signal.abort, "user")
            await run_cancelable(signal, slow)

        with pytest.raises(TurnCancelled):
            asyncio.run(asyncio.wait_for(scenario(), timeout=1.0))
        assert cancelled == [True]

    def test_exceptions_propagate(self):
        """The call's own exception is raised unchanged."""

        async def failing():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            asyncio.run(run_cancelable(AbortSignal(), failing))

    def test_abort_is_one_shot(self):
        """The first reason is kept."""
        signal = AbortSignal()
        signal.abort("user")
        signal.abort("timeout")
        assert signal.aborted
        assert signal.reason == "user"


class TestAttemptWithFeedback:
    """Tests for attempt_with_feedback."""

    def test_success_after_retry(self):
        """A failed attempt is retried with a hint built from its feedback."""
        hints = []

        async def attempt(index, hint):
            hints.append(hint)
            if index == 1:
                raise AttemptFailed("tableau", "unknown field")
            return "rows"

        outcome = asyncio.run(attempt_with_feedback(RetryPolicy(max_attempts=3), attempt))

        assert outcome.value == "rows"
        assert outcome.attempts == 2
        assert outcome.error is None
        assert hints[0] is None
        assert hints[1] == 'BUILDER_FEEDBACK_JSON=[{"attempt": 1, "source": "tableau", "message": "unknown field"}]'

    def test_exhausted(self):
        """Every attempt failing reports the last message."""
        retries = []

        async def attempt(index, hint):
            raise AttemptFailed("tableau", f"failure {index}")

        outcome = asyncio.run(attempt_with_feedback(RetryPolicy(max_attempts=3), attempt, on_retry=retries.append))

        assert outcome.value is None
        assert outcome.attempts == 3
        assert outcome.retryable_exhausted
        assert outcome.error == "failure 3"
        assert [f.attempt for f in retries] == [1, 2]

    def test_non_retryable_stops(self):
        """A failure the policy rejects ends the loop immediately."""

        async def attempt(index, hint):
            raise AttemptFailed("agent", "rate limited")

        policy = RetryPolicy(max_attempts=3, is_retryable=lambda f: f.source != "agent")
        outcome = asyncio.run(attempt_with_feedback(policy, attempt))

        assert outcome.attempts == 1
        assert not outcome.retryable_exhausted
        assert outcome.last_failure.source == "agent"

    def test_other_exceptions_propagate(self):
        """Exceptions other than AttemptFailed are not recorded."""

        async def attempt(index, hint):
            raise TurnCancelled("user")

        with pytest.raises(TurnCancelled):
            asyncio.run(attempt_with_feedback(RetryPolicy(max_attempts=3), attempt))

    def test_feedback_window(self):
        """The default hint keeps only the three most recent failures."""
        hints = []

        async def attempt(index, hint):
            hints.append(hint)
            raise AttemptFailed("builder", f"bad {index}")

        asyncio.run(attempt_with_feedback(RetryPolicy(max_attempts=5), attempt))

        assert '"bad 1"' not in hints[4]
        assert '"bad 4"' in hints[4]
