"""Retry with exponential backoff.

Wraps the steps from nonce reservation through dispatch. Confirmation waiting is
never retried: once the chain has accepted a transaction, sending it again
would either fail on a stale nonce or double-spend.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

from keypass_tx.classifier import ErrorClassifier
from keypass_tx.config import EngineConfig
from keypass_tx.errors import ErrorCategory, RetriesExhausted, TransactionEngineError

logger = logging.getLogger(__name__)


#: Attempt callable, receives zero-based attempt number
AttemptFunc = Callable[[int], Awaitable[Any]]


class RetryCoordinator:
    """Run an attempt callable until it succeeds or we give up.

    - Terminal errors propagate on the first occurrence

    - Retryable errors sleep ``min(base * factor ** attempt, max_delay)`` seconds and try again

    - A transaction category failure repeating with the same code is treated as terminal,
      the fresh nonce and fee did not help

    - After ``max_retries`` retries, :py:class:`keypass_tx.errors.RetriesExhausted` is raised

    :param sleep:
        Coroutine used to sleep between attempts
    """

    def __init__(self, config: EngineConfig, classifier: Optional[ErrorClassifier] = None, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config
        self.classifier = classifier or ErrorClassifier.from_config(config)
        self.sleep = sleep

    async def run(self, attempt: AttemptFunc, max_retries: Optional[int] = None, label: str = "") -> Tuple[Any, int]:
        """Run with retries.

        :param attempt:
            Async callable performing one attempt. Exceptions it raises are classified.

        :param max_retries:
            Override ``config.max_retries``

        :param label:
            For log messages

        :return:
            Tuple (attempt result, number of retries it took)

        :raise TransactionEngineError:
            Classified terminal error, or :py:class:`RetriesExhausted`
        """
        if max_retries is None:
            max_retries = self.config.max_retries

        assert max_retries >= 0, f"Bad max_retries {max_retries}"

        previous: Optional[TransactionEngineError] = None

        for i in range(max_retries + 1):
            try:
                result = await attempt(i)
                if i > 0:
                    logger.info("%s succeeded after %d retries", label or "Attempt", i)
                return result, i
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = self.classifier.wrap(e)
                error.attempts = i + 1

                if not error.retryable:
                    logger.info("%s failed with a terminal error: %s", label or "Attempt", error.format_message())
                    raise error

                if previous is not None and error.category == ErrorCategory.transaction and previous.category == ErrorCategory.transaction and error.code == previous.code:
                    logger.warning("%s failed twice in a row with %s, giving up", label or "Attempt", error.code.name)
                    error.retryable = False
                    raise error

                previous = error

                if i >= max_retries:
                    break

                delay = self.config.get_retry_delay(i)
                logger.warning(
                    "%s failed with retryable error %s\nRetrying in %f seconds, retry #%d / %d",
                    label or "Attempt",
                    error.format_message(),
                    delay,
                    i + 1,
                    max_retries,
                )
                await self.sleep(delay)

        attempts = max_retries + 1
        raise RetriesExhausted(
            f"Gave up after {attempts} attempts: {previous.message}",
            attempts=attempts,
            last_error=previous,
        ) from previous
