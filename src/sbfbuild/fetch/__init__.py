"""Toolchain archive retrieval."""

from .http import Fetcher
from .retry import RetryDecision, RetryPolicy, classify_failure, next_retry

__all__ = ["Fetcher", "RetryDecision", "RetryPolicy", "classify_failure", "next_retry"]
