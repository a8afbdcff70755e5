"""Failure taxonomy for generation jobs.

Every failure maps to exactly one ErrorCategory. Errors raised by this
package carry their category; anything else is classified by matching its
text against known substrings, defaulting to FATAL so that an unrecognised
error is never retried.
"""

import logging
from dataclasses import dataclass
from enum import StrEnum

from tenacity import AsyncRetrying, RetryCallState, before_sleep_log, retry_if_exception

from draftforge.constants import (
    MAX_BACKOFF_SECONDS,
    QUALITY_BACKOFF_SECONDS,
    QUALITY_MAX_RETRIES,
    TIMEOUT_BACKOFF_SECONDS,
    TIMEOUT_MAX_RETRIES,
    TRANSIENT_BACKOFF_SECONDS,
    TRANSIENT_MAX_RETRIES,
)

logger = logging.getLogger(__name__)


class ErrorCategory(StrEnum):
    TRANSIENT = "transient"
    QUALITY = "quality"
    USER_ACTION = "user_action"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    category: ErrorCategory
    retryable: bool
    max_retries: int
    backoff_seconds: float
    exponential: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if not self.retryable:
            return 0.0
        if self.exponential:
            return min(MAX_BACKOFF_SECONDS, self.backoff_seconds * 2 ** (attempt - 1))
        return self.backoff_seconds


TRANSIENT_POLICY = RetryPolicy(
    "transient",
    ErrorCategory.TRANSIENT,
    True,
    TRANSIENT_MAX_RETRIES,
    TRANSIENT_BACKOFF_SECONDS,
    True,
)
TIMEOUT_POLICY = RetryPolicy(
    "timeout", ErrorCategory.TRANSIENT, True, TIMEOUT_MAX_RETRIES, TIMEOUT_BACKOFF_SECONDS, True
)
QUALITY_POLICY = RetryPolicy(
    "quality", ErrorCategory.QUALITY, True, QUALITY_MAX_RETRIES, QUALITY_BACKOFF_SECONDS
)
USER_ACTION_POLICY = RetryPolicy("user_action", ErrorCategory.USER_ACTION, False, 0, 0.0)
FATAL_POLICY = RetryPolicy("fatal", ErrorCategory.FATAL, False, 0, 0.0)

USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.TRANSIENT: "A temporary error occurred. Retrying...",
    ErrorCategory.QUALITY: "Content quality check failed. Adjusting parameters and retrying...",
    ErrorCategory.USER_ACTION: "No relevant content found. Please add more papers to your project.",
    ErrorCategory.FATAL: "An unexpected error occurred. Please try again later.",
}


# =============================================================================
# Exception hierarchy
# =============================================================================


class GenerationError(Exception):
    policy: RetryPolicy = FATAL_POLICY

    @property
    def category(self) -> ErrorCategory:
        return self.policy.category


class TransientError(GenerationError):
    policy = TRANSIENT_POLICY


class GenerationTimeoutError(GenerationError):
    policy = TIMEOUT_POLICY


class ContentQualityError(GenerationError):
    policy = QUALITY_POLICY


class NoRelevantContentError(GenerationError):
    """Neither passages nor usable abstracts exist for a candidate set."""

    policy = USER_ACTION_POLICY


class EmptyCorpusError(GenerationError):
    policy = USER_ACTION_POLICY


class InvalidTopicError(GenerationError):
    policy = USER_ACTION_POLICY


class FatalGenerationError(GenerationError):
    policy = FATAL_POLICY


class GenerationFailedError(Exception):
    """Terminal job failure surfaced to the caller."""

    def __init__(self, category: ErrorCategory, user_message: str, technical_message: str):
        super().__init__(technical_message)
        self.category = category
        self.user_message = user_message
        self.technical_message = technical_message


# =============================================================================
# Classification
# =============================================================================

# Ordered: the first matching rule wins.
_SUBSTRING_RULES: tuple[tuple[tuple[str, ...], RetryPolicy], ...] = (
    (("rate limit", "ratelimit", "429", "too many requests"), TRANSIENT_POLICY),
    (
        ("network", "econnreset", "etimedout", "fetch failed", "connection"),
        TRANSIENT_POLICY,
    ),
    (("timeout", "timed out", "aborted"), TIMEOUT_POLICY),
    (("quality", "relevance", "score", "insufficient"), QUALITY_POLICY),
    (
        ("no papers", "no sources", "no content", "no relevant", "invalid topic"),
        USER_ACTION_POLICY,
    ),
    (
        ("unauthorized", "authentication", "401", "forbidden", "403", "validation"),
        FATAL_POLICY,
    ),
)


def retry_policy_for(error: BaseException) -> RetryPolicy:
    if isinstance(error, GenerationError):
        return error.policy

    text = f"{type(error).__name__}: {error}".lower()
    for needles, policy in _SUBSTRING_RULES:
        if any(needle in text for needle in needles):
            return policy
    return FATAL_POLICY


def classify(error: BaseException) -> ErrorCategory:
    return retry_policy_for(error).category


def is_retryable(error: BaseException) -> bool:
    return retry_policy_for(error).retryable


def user_message_for(error: BaseException) -> str:
    return USER_MESSAGES[classify(error)]


def technical_message(topic: str, error: BaseException, attempt: int) -> str:
    return f"[{topic[:60]}] attempt {attempt}: {type(error).__name__}: {error}"


class ErrorClassifier:
    """Stateless facade used by the job driver."""

    def classify(self, error: BaseException) -> ErrorCategory:
        return classify(error)

    def policy(self, error: BaseException) -> RetryPolicy:
        return retry_policy_for(error)

    def user_message(self, error: BaseException) -> str:
        return user_message_for(error)


# =============================================================================
# Retry driver
# =============================================================================


def _stop_by_policy(retry_state: RetryCallState) -> bool:
    outcome = retry_state.outcome
    if outcome is None or not outcome.failed:
        return True
    policy = retry_policy_for(outcome.exception())
    return retry_state.attempt_number > policy.max_retries


def _wait_by_policy(retry_state: RetryCallState) -> float:
    outcome = retry_state.outcome
    if outcome is None or not outcome.failed:
        return 0.0
    return retry_policy_for(outcome.exception()).delay_for(retry_state.attempt_number)


def classified_retrying(**overrides) -> AsyncRetrying:
    """AsyncRetrying whose budget and backoff follow the raised error's category."""
    kwargs = {
        "retry": retry_if_exception(is_retryable),
        "stop": _stop_by_policy,
        "wait": _wait_by_policy,
        "before_sleep": before_sleep_log(logger, logging.WARNING),
        "reraise": True,
    }
    kwargs.update(overrides)
    return AsyncRetrying(**kwargs)
