"""Transaction engine exceptions.

All failures the engine surfaces to its caller are subclasses of
:py:class:`TransactionEngineError`. Each carries

- a :py:class:`ErrorCategory` used by the retry logic

- a machine readable :py:class:`ErrorCode`

- a diagnostic message for logs and a separate message safe to show to end users

- whatever chain context was known at the time of failure (tx hash, block)

Underlying client exceptions are chained with ``raise ... from``.
"""

import enum
from typing import Optional


class ErrorCategory(enum.Enum):
    """How a failure is handled."""

    #: Transport level failure: connection refused, RPC timeout, websocket closed.
    #: Always retried.
    network = "network"

    #: The chain rejected the submission for a reason that a fresh nonce or fee may fix.
    #: Retried.
    transaction = "transaction"

    #: The user or the account state is the problem: insufficient funds, bad signature,
    #: reverted execution, duplicate resource. Never retried.
    user = "user"

    #: Malformed input detected before touching the network. Never retried.
    validation = "validation"

    #: Confirmation did not arrive within the wall clock budget.
    #: The transaction may still be included later.
    timeout = "timeout"

    #: Anything we could not recognise. Not retried.
    unknown = "unknown"


class ErrorCode(enum.Enum):
    """Machine readable failure codes."""

    network_error = "network_error"
    connection_failed = "connection_failed"
    rpc_timeout = "rpc_timeout"

    nonce_too_low = "nonce_too_low"
    underpriced = "underpriced"
    replacement_underpriced = "replacement_underpriced"
    fee_too_low = "fee_too_low"
    priority_too_low = "priority_too_low"
    outdated = "outdated"

    insufficient_funds = "insufficient_funds"
    invalid_signature = "invalid_signature"
    reverted = "reverted"
    duplicate = "duplicate"
    user_rejected = "user_rejected"

    invalid_input = "invalid_input"
    invalid_address = "invalid_address"

    confirmation_timeout = "confirmation_timeout"
    dropped = "dropped"
    execution_failed = "execution_failed"
    retries_exhausted = "retries_exhausted"

    unknown = "unknown"


#: End-user facing text per category.
#:
#: Diagnostic messages may contain RPC payloads and hashes,
#: these do not.
USER_MESSAGES = {
    ErrorCategory.network: "Could not reach the blockchain network.",
    ErrorCategory.transaction: "The network did not accept the transaction.",
    ErrorCategory.user: "The transaction cannot be completed with the current account.",
    ErrorCategory.validation: "The transaction request is invalid.",
    ErrorCategory.timeout: "The transaction is taking longer than expected to confirm.",
    ErrorCategory.unknown: "An unexpected error occurred while processing the transaction.",
}

#: More specific end-user text where the code tells more than the category
USER_MESSAGES_BY_CODE = {
    ErrorCode.insufficient_funds: "The account does not have enough funds to pay for the transaction.",
    ErrorCode.user_rejected: "The transaction was rejected by the signer.",
    ErrorCode.reverted: "The transaction was reverted by the chain.",
    ErrorCode.duplicate: "The resource already exists on chain.",
    ErrorCode.dropped: "The transaction was dropped by the network.",
    ErrorCode.invalid_address: "The account address is not valid for this network.",
}


class TransactionEngineError(Exception):
    """Base class for all engine failures.

    :param message:
        Diagnostic message.

    :param code:
        Failure code. Defaults to the class default.

    :param retryable:
        Override the category default.
    """

    #: Subclasses set their own
    default_category = ErrorCategory.unknown

    #: Subclasses set their own
    default_code = ErrorCode.unknown

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        category: Optional[ErrorCategory] = None,
        retryable: Optional[bool] = None,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        block_hash: Optional[str] = None,
        attempts: Optional[int] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.code = code or self.default_code
        if retryable is None:
            retryable = self.category in (ErrorCategory.network, ErrorCategory.transaction)
        self.retryable = retryable
        self.tx_hash = tx_hash
        self.block_number = block_number
        self.block_hash = block_hash
        self.attempts = attempts
        self._user_message = user_message

    @property
    def user_message(self) -> str:
        """Text safe to show to the end user."""
        if self._user_message:
            return self._user_message
        text = USER_MESSAGES_BY_CODE.get(self.code) or USER_MESSAGES[self.category]
        if self.retryable:
            text += " Please try again."
        return text

    def format_message(self) -> str:
        """Diagnostic one-liner with all known context."""
        parts = [f"[{self.category.value}:{self.code.value}] {self.message}"]
        if self.tx_hash:
            parts.append(f"tx:{self.tx_hash}")
        if self.block_number is not None:
            parts.append(f"block:{self.block_number}")
        elif self.block_hash:
            parts.append(f"block:{self.block_hash}")
        if self.attempts is not None:
            parts.append(f"attempts:{self.attempts}")
        if self.__cause__ is not None:
            parts.append(f"cause:{self.__cause__.__class__.__name__}: {self.__cause__}")
        return " ".join(parts)

    def as_json_friendly_dict(self) -> dict:
        """Export for logs and API responses."""
        return {
            "type": self.__class__.__name__,
            "category": self.category.value,
            "code": self.code.value,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "attempts": self.attempts,
        }


class NetworkFailure(TransactionEngineError):
    """Could not talk to the node."""

    default_category = ErrorCategory.network
    default_code = ErrorCode.network_error


class TransactionRejected(TransactionEngineError):
    """The node refused to accept the transaction into its pool."""

    default_category = ErrorCategory.transaction
    default_code = ErrorCode.unknown


class UserError(TransactionEngineError):
    """The account or its owner is the problem, retrying will not help."""

    default_category = ErrorCategory.user
    default_code = ErrorCode.unknown


class ValidationFailure(TransactionEngineError):
    """The request was malformed and never left the process."""

    default_category = ErrorCategory.validation
    default_code = ErrorCode.invalid_input


class TransactionFailed(TransactionEngineError):
    """The transaction was accepted but did not execute successfully."""

    default_category = ErrorCategory.user
    default_code = ErrorCode.execution_failed


class ConfirmationTimedOut(TransactionEngineError):
    """We did not see the transaction finalised in time.

    The transaction might still be included later. Do not resubmit blindly,
    call :py:meth:`keypass_tx.submitter.TransactionSubmitter.track` instead.
    """

    default_category = ErrorCategory.timeout
    default_code = ErrorCode.confirmation_timeout

    #: Timeouts do not mean failure
    may_still_confirm = True


class RetriesExhausted(TransactionEngineError):
    """Gave up after the configured number of attempts.

    The last attempt's error is chained as ``__cause__``.
    """

    default_category = ErrorCategory.network
    default_code = ErrorCode.retries_exhausted

    def __init__(self, message: str, attempts: int, last_error: Optional[TransactionEngineError] = None, **kwargs):
        category = last_error.category if last_error is not None else None
        super().__init__(message, attempts=attempts, category=category, retryable=False, **kwargs)
        self.last_error = last_error
