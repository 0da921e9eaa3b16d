"""Error classification.

Node software reports failures as free-form strings inside whatever exception
type the client library happens to raise. We map them to
:py:class:`keypass_tx.errors.ErrorCategory` so the retry logic knows what to do.

- Known transport exception types are network failures

- Otherwise the lowercased message is matched against pattern tables,
  terminal patterns first, so that e.g. "insufficient funds" inside a
  connection error text is never retried

- Anything unmatched is terminal
"""

import asyncio
import logging
from dataclasses import dataclass
from http.client import RemoteDisconnected
from typing import Iterable, Optional, Tuple, Type

import aiohttp
from requests.exceptions import ChunkedEncodingError, ConnectionError as RequestsConnectionError, Timeout as RequestsTimeout
from websocket import WebSocketConnectionClosedException, WebSocketTimeoutException

from keypass_tx.errors import (
    ErrorCategory,
    ErrorCode,
    NetworkFailure,
    TransactionEngineError,
    TransactionRejected,
    UserError,
    ValidationFailure,
)

logger = logging.getLogger(__name__)


#: Exceptions that always mean the transport failed
NETWORK_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    RemoteDisconnected,
    RequestsConnectionError,
    RequestsTimeout,
    ChunkedEncodingError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
    WebSocketConnectionClosedException,
    WebSocketTimeoutException,
)

#: Checked first. Order matters inside the table, first match wins.
TERMINAL_PATTERNS: Tuple[Tuple[str, ErrorCategory, ErrorCode], ...] = (
    ("insufficient funds", ErrorCategory.user, ErrorCode.insufficient_funds),
    ("insufficient balance", ErrorCategory.user, ErrorCode.insufficient_funds),
    # Substrate 1010
    ("inability to pay some fees", ErrorCategory.user, ErrorCode.insufficient_funds),
    ("balance too low", ErrorCategory.user, ErrorCode.insufficient_funds),
    ("bad signature", ErrorCategory.user, ErrorCode.invalid_signature),
    ("invalid signature", ErrorCategory.user, ErrorCode.invalid_signature),
    ("execution reverted", ErrorCategory.user, ErrorCode.reverted),
    ("reverted", ErrorCategory.user, ErrorCode.reverted),
    ("extrinsicfailed", ErrorCategory.user, ErrorCode.reverted),
    ("already exists", ErrorCategory.user, ErrorCode.duplicate),
    ("didalreadypresent", ErrorCategory.user, ErrorCode.duplicate),
    ("user rejected", ErrorCategory.user, ErrorCode.user_rejected),
    ("rejected by user", ErrorCategory.user, ErrorCode.user_rejected),
    ("cancelled by user", ErrorCategory.user, ErrorCode.user_rejected),
    ("invalid address", ErrorCategory.validation, ErrorCode.invalid_address),
    ("invalid contract", ErrorCategory.validation, ErrorCode.invalid_input),
    ("invalid params", ErrorCategory.validation, ErrorCode.invalid_input),
    ("malformed", ErrorCategory.validation, ErrorCode.invalid_input),
    ("could not decode", ErrorCategory.validation, ErrorCode.invalid_input),
)

#: Checked after terminal patterns.
RETRYABLE_PATTERNS: Tuple[Tuple[str, ErrorCategory, ErrorCode], ...] = (
    ("nonce too low", ErrorCategory.transaction, ErrorCode.nonce_too_low),
    ("nonce has already been used", ErrorCategory.transaction, ErrorCode.nonce_too_low),
    ("replacement transaction underpriced", ErrorCategory.transaction, ErrorCode.replacement_underpriced),
    ("underpriced", ErrorCategory.transaction, ErrorCode.underpriced),
    ("fee too low", ErrorCategory.transaction, ErrorCode.fee_too_low),
    ("less than block base fee", ErrorCategory.transaction, ErrorCode.fee_too_low),
    ("priority is too low", ErrorCategory.transaction, ErrorCode.priority_too_low),
    # Substrate: stale nonce
    ("outdated", ErrorCategory.transaction, ErrorCode.outdated),
    ("stale", ErrorCategory.transaction, ErrorCode.outdated),
    ("timed out", ErrorCategory.network, ErrorCode.rpc_timeout),
    ("timeout", ErrorCategory.network, ErrorCode.rpc_timeout),
    ("connection", ErrorCategory.network, ErrorCode.connection_failed),
    ("econnrefused", ErrorCategory.network, ErrorCode.connection_failed),
    ("econnreset", ErrorCategory.network, ErrorCode.connection_failed),
    ("socket hang up", ErrorCategory.network, ErrorCode.connection_failed),
    ("websocket", ErrorCategory.network, ErrorCode.connection_failed),
    ("header not found", ErrorCategory.network, ErrorCode.network_error),
    ("too many requests", ErrorCategory.network, ErrorCode.network_error),
    ("service unavailable", ErrorCategory.network, ErrorCode.network_error),
    ("bad gateway", ErrorCategory.network, ErrorCode.network_error),
    ("network", ErrorCategory.network, ErrorCode.network_error),
)


@dataclass(frozen=True, slots=True)
class Classification:
    retryable: bool

    category: ErrorCategory

    code: ErrorCode


#: Category to the exception class we wrap with
EXCEPTION_CLASSES = {
    ErrorCategory.network: NetworkFailure,
    ErrorCategory.transaction: TransactionRejected,
    ErrorCategory.user: UserError,
    ErrorCategory.validation: ValidationFailure,
}


class ErrorClassifier:
    """Map arbitrary exceptions to a category.

    :param extra_retryable_patterns:
        More lowercase message fragments treated as retryable network failures

    :param extra_terminal_patterns:
        More lowercase message fragments treated as terminal
    """

    def __init__(self, extra_retryable_patterns: Iterable[str] = (), extra_terminal_patterns: Iterable[str] = ()):
        self.terminal_patterns = tuple((p.lower(), ErrorCategory.unknown, ErrorCode.unknown) for p in extra_terminal_patterns) + TERMINAL_PATTERNS
        self.retryable_patterns = RETRYABLE_PATTERNS + tuple((p.lower(), ErrorCategory.network, ErrorCode.network_error) for p in extra_retryable_patterns)

    @classmethod
    def from_config(cls, config) -> "ErrorClassifier":
        return cls(config.extra_retryable_patterns, config.extra_terminal_patterns)

    def classify(self, error: BaseException) -> Classification:
        """Decide how to handle an error."""

        if isinstance(error, TransactionEngineError):
            return Classification(error.retryable, error.category, error.code)

        if isinstance(error, NETWORK_EXCEPTIONS):
            return Classification(True, ErrorCategory.network, ErrorCode.rpc_timeout if isinstance(error, (TimeoutError, asyncio.TimeoutError, RequestsTimeout)) else ErrorCode.connection_failed)

        message = str(error).lower()

        for pattern, category, code in self.terminal_patterns:
            if pattern in message:
                return Classification(False, category, code)

        for pattern, category, code in self.retryable_patterns:
            if pattern in message:
                return Classification(True, category, code)

        return Classification(False, ErrorCategory.unknown, ErrorCode.unknown)

    def wrap(self, error: BaseException, tx_hash: Optional[str] = None) -> TransactionEngineError:
        """Convert any exception into a classified engine error.

        Engine errors pass through untouched. Others are wrapped with the
        original chained as ``__cause__``.
        """
        if isinstance(error, TransactionEngineError):
            return error

        classification = self.classify(error)
        klass = EXCEPTION_CLASSES.get(classification.category, TransactionEngineError)
        wrapped = klass(
            f"{error.__class__.__name__}: {error}",
            code=classification.code,
            category=classification.category,
            retryable=classification.retryable,
            tx_hash=tx_hash,
        )
        wrapped.__cause__ = error
        logger.debug("Classified %r as %s/%s retryable:%s", error, classification.category.name, classification.code.name, classification.retryable)
        return wrapped
