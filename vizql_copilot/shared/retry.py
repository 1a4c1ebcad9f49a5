"""
Attempt-with-feedback combinator.

PlanRunner and FetchRunner both run a bounded loop where each failed
attempt is recorded as feedback and turned into a hint for the next
attempt. The loop lives here once; callers supply a RetryPolicy and an
attempt function.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Literal, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

FeedbackSource = Literal["builder", "preflight", "tableau", "agent"]


@dataclass(frozen=True)
class Feedback:
    """One failed attempt, as shown to the next attempt."""

    attempt: int
    source: FeedbackSource
    message: str
    raw: Any = None

    def to_dict(self) -> dict:
        return {"attempt": self.attempt, "source": self.source, "message": self.message}


class AttemptFailed(Exception):
    """Raised by an attempt function to record feedback for the attempt."""

    def __init__(self, source: FeedbackSource, message: str, raw: Any = None):
        super().__init__(message)
        self.source = source
        self.message = message
        self.raw = raw


def feedback_json_hint(feedback: List[Feedback], window: int = 3, key: str = "BUILDER_FEEDBACK_JSON") -> Optional[str]:
    """Default hint builder: the last `window` feedback entries as a JSON context block."""
    if not feedback:
        return None
    recent = [f.to_dict() for f in feedback[-window:]]
    return f"{key}={json.dumps(recent, ensure_ascii=False)}"


def _always(_: AttemptFailed) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many attempts to make and how to react to a failure.

    Attributes:
        max_attempts: Upper bound on attempts (>= 1)
        is_retryable: Whether a recorded failure may be retried
        build_hint: Turns accumulated feedback into context for the next attempt
    """

    max_attempts: int
    is_retryable: Callable[[AttemptFailed], bool] = _always
    build_hint: Callable[[List[Feedback]], Optional[str]] = feedback_json_hint


@dataclass
class AttemptOutcome(Generic[T]):
    """Result of attempt_with_feedback()."""

    value: Optional[T] = None
    feedback: List[Feedback] = field(default_factory=list)
    attempts: int = 0
    retryable_exhausted: bool = False

    @property
    def error(self) -> Optional[str]:
        if self.value is not None or not self.feedback:
            return None
        return self.feedback[-1].message

    @property
    def last_failure(self) -> Optional[Feedback]:
        return self.feedback[-1] if self.feedback else None


async def attempt_with_feedback(
    policy: RetryPolicy,
    attempt_fn: Callable[[int, Optional[str]], Awaitable[T]],
    on_retry: Optional[Callable[[Feedback], None]] = None,
) -> AttemptOutcome[T]:
    """
    Run `attempt_fn` until it succeeds or the policy says stop.

    `attempt_fn(attempt, hint)` receives the 1-based attempt index and the
    hint built from earlier failures (None on the first attempt). It signals
    a recordable failure by raising AttemptFailed; any other exception
    (including cancellation) propagates unchanged.

    Args:
        policy: Retry policy to apply
        attempt_fn: Coroutine function performing one attempt
        on_retry: Called with the failure feedback when another attempt follows

    Returns:
        AttemptOutcome with the value or the accumulated feedback
    """
    outcome: AttemptOutcome[T] = AttemptOutcome()
    max_attempts = max(1, policy.max_attempts)

    for attempt in range(1, max_attempts + 1):
        hint = policy.build_hint(outcome.feedback) if outcome.feedback else None
        outcome.attempts = attempt
        try:
            outcome.value = await attempt_fn(attempt, hint)
            return outcome
        except AttemptFailed as failure:
            entry = Feedback(attempt=attempt, source=failure.source, message=failure.message, raw=failure.raw)
            outcome.feedback.append(entry)
            logger.info(
                f"Attempt {attempt}/{max_attempts} failed | source={entry.source}, "
                f"message={entry.message[:200]}"
            )
            if not policy.is_retryable(failure):
                return outcome
            if attempt >= max_attempts:
                outcome.retryable_exhausted = True
                return outcome
            if on_retry is not None:
                on_retry(entry)

    return outcome
