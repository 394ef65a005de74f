"""Retry policy with exponential backoff.

This module provides:
- RetryPolicy: Decides whether a failed item is retried and when
- compute_backoff: Delay before the n-th retry

Retries are scheduled on the queue (``SyncItem.not_before``) instead of
sleeping in the worker, so other items keep flowing while one backs off.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cloudsync.core.config import DEFAULT_MAX_RETRIES, SyncConfig
from cloudsync.core.errors import is_retryable

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def compute_backoff(
    retry_number: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay before retry number ``retry_number`` (1-based).

    Args:
        retry_number: Which retry is being scheduled (1 for the first).
        initial_backoff: Delay before the first retry.
        max_backoff: Upper bound on the delay.
        backoff_multiplier: Growth factor per retry.

    Returns:
        Delay in seconds.
    """
    if retry_number <= 0:
        return 0.0
    return min(initial_backoff * backoff_multiplier ** (retry_number - 1), max_backoff)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for failed items."""

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    @classmethod
    def from_config(cls, config: SyncConfig) -> RetryPolicy:
        """Build a policy from a sync configuration snapshot."""
        return cls(
            max_retries=config.max_retries,
            initial_backoff=config.initial_backoff,
            max_backoff=config.max_backoff,
            backoff_multiplier=config.backoff_multiplier,
        )

    def should_retry(self, error: BaseException, retry_count: int) -> bool:
        """Check if an item that failed with ``error`` gets another attempt.

        Args:
            error: The failure raised by the handler.
            retry_count: Retries already scheduled for the item.
        """
        return is_retryable(error) and retry_count < self.max_retries

    def delay(self, retry_number: int) -> float:
        """Backoff before retry number ``retry_number``."""
        return compute_backoff(
            retry_number,
            self.initial_backoff,
            self.max_backoff,
            self.backoff_multiplier,
        )
