"""Retry decisions for toolchain downloads.

Kept free of I/O: callers classify a failure, ask :func:`next_retry` what to
do, and perform the sleep themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from http.client import HTTPException
from typing import Literal
from urllib.error import HTTPError, URLError

FailureKind = Literal["transient", "not_found", "fatal"]

# 4xx statuses that still describe a temporary condition.
RETRIABLE_CLIENT_STATUSES = frozenset({408, 429})


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, HTTPError):
        if exc.code in RETRIABLE_CLIENT_STATUSES or exc.code >= 500:
            return "transient"
        if 400 <= exc.code < 500:
            return "not_found"
        return "fatal"
    if isinstance(exc, URLError):
        if isinstance(exc.reason, FileNotFoundError):
            return "not_found"
        if isinstance(exc.reason, OSError):
            return "transient"
        return "fatal"
    if isinstance(exc, (TimeoutError, ConnectionError, HTTPException)):
        return "transient"
    return "fatal"


def next_retry(attempt: int, kind: FailureKind, policy: RetryPolicy) -> RetryDecision:
    """Decide whether to try again after *attempt* (1-based) failed with *kind*."""
    if kind != "transient" or attempt >= policy.max_attempts:
        return RetryDecision(retry=False)
    delay = policy.base_delay * (policy.multiplier ** (attempt - 1))
    return RetryDecision(retry=True, delay=min(delay, policy.max_delay))


def backoff_schedule(policy: RetryPolicy) -> list[float]:
    """Delays slept between attempts if every attempt fails transiently."""
    return [
        next_retry(attempt, "transient", policy).delay
        for attempt in range(1, policy.max_attempts)
    ]


__all__ = [
    "FailureKind",
    "RETRIABLE_CLIENT_STATUSES",
    "RetryDecision",
    "RetryPolicy",
    "backoff_schedule",
    "classify_failure",
    "next_retry",
]
