"""Transaction records passed between the engine components.

- :py:class:`TransactionRequest` is what the caller wants done

- :py:class:`SignedPayload` is what goes over the wire

- :py:class:`PendingTransaction` is the engine's live view of an in-flight transaction

- :py:class:`TransactionResult` is what the caller gets back
"""

import asyncio
import datetime
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional

from keypass_tx.errors import TransactionEngineError, TransactionFailed

logger = logging.getLogger(__name__)


class TransactionStatus(enum.Enum):
    """Lifecycle of a dispatched transaction."""

    #: Dispatched, not yet seen in a block
    pending = "pending"

    #: Seen in a block that is not yet final
    in_block = "in_block"

    #: Final
    confirmed = "confirmed"

    #: Rejected, reverted or dropped
    failed = "failed"

    #: Ran out of wall clock time, may still confirm later
    timeout = "timeout"


#: Statuses after which nothing changes
TERMINAL_STATUSES = frozenset({TransactionStatus.confirmed, TransactionStatus.failed, TransactionStatus.timeout})


@dataclass(frozen=True)
class TransactionRequest:
    """A call the caller wants to get on chain.

    Requests are immutable. Retries build a new request per attempt
    with :py:meth:`keypass_tx.submitter.TransactionSubmitter.submit_with_retry`.
    """

    #: Chain specific prepared call.
    #:
    #: - EVM: transaction dict without nonce and gas fields, e.g. output of ``ContractFunction.build_transaction()``
    #:
    #: - Substrate: ``GenericCall`` from ``SubstrateInterface.compose_call()``
    call: Any

    #: Signing account
    address: str

    #: Human readable description for logs
    label: str = ""

    def __repr__(self):
        return f"<TransactionRequest {self.label or '-'} from {self.address}>"


class SignedPayload(NamedTuple):
    """A signed transaction ready for broadcast.

    Retains the source data so we can diagnose broadcast failures.
    """

    #: Hash the chain will know this transaction by, 0x prefixed lowercase hex
    tx_hash: str

    #: Broadcast data.
    #:
    #: Raw bytes on EVM, ``GenericExtrinsic`` on substrate.
    raw: Any

    #: What nonce was used to sign
    nonce: int

    #: Which account signed
    address: str

    #: Unsigned source transaction, for debugging
    source: Optional[Any] = None

    def __repr__(self):
        return f"<SignedPayload hash:{self.tx_hash} nonce:{self.nonce} from:{self.address}>"


@dataclass
class PendingTransaction:
    """Live view of an in-flight transaction.

    Both the push subscription and the poller may try to resolve the same record.
    The first terminal resolution wins and later ones are ignored, so all writes
    go through the ``mark_*`` methods.
    """

    #: Known only after signing
    tx_hash: str

    status: TransactionStatus = TransactionStatus.pending

    #: Set together with :py:attr:`events` when confirmed
    block_number: Optional[int] = None

    #: May be known before the number, from an in-block push notification
    block_hash: Optional[str] = None

    #: Normalised :py:class:`keypass_tx.events.ChainEvent` list
    events: list = field(default_factory=list)

    retry_count: int = 0

    error: Optional[TransactionEngineError] = None

    #: Actual fee charged, if the chain tells us
    fee_paid: Optional[int] = None

    _resolved: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_in_block(self, block_hash: str) -> bool:
        """Record block inclusion before finality.

        A later in-block notification with a different hash replaces the hash,
        as the earlier block was retracted.

        :return:
            True if the record changed
        """
        if self.is_terminal:
            return False
        changed = self.status != TransactionStatus.in_block or self.block_hash != block_hash
        self.status = TransactionStatus.in_block
        self.block_hash = block_hash
        return changed

    def mark_confirmed(self, block_number: int, block_hash: str, events: list, fee_paid: Optional[int] = None) -> bool:
        """Resolve as final.

        :return:
            True if this call resolved the record
        """
        if self.is_terminal:
            logger.debug("Transaction %s already resolved as %s, ignoring confirmation", self.tx_hash, self.status.name)
            return False
        self.status = TransactionStatus.confirmed
        self.block_number = block_number
        self.block_hash = block_hash
        self.events = list(events)
        self.fee_paid = fee_paid
        self._resolved.set()
        return True

    def mark_failed(self, error: TransactionEngineError) -> bool:
        """Resolve as failed.

        :return:
            True if this call resolved the record
        """
        if self.is_terminal:
            logger.debug("Transaction %s already resolved as %s, ignoring failure %s", self.tx_hash, self.status.name, error)
            return False
        if error.tx_hash is None:
            error.tx_hash = self.tx_hash
        self.status = TransactionStatus.failed
        self.error = error
        if error.block_hash:
            self.block_hash = error.block_hash
        self._resolved.set()
        return True

    def mark_timeout(self, error: TransactionEngineError) -> bool:
        """Resolve as timed out.

        :return:
            True if this call resolved the record
        """
        if self.is_terminal:
            return False
        if error.tx_hash is None:
            error.tx_hash = self.tx_hash
        self.status = TransactionStatus.timeout
        self.error = error
        self._resolved.set()
        return True

    async def wait_resolved(self):
        """Block until a terminal status is reached."""
        await self._resolved.wait()


@dataclass
class TransactionResult:
    """Outcome returned to the caller."""

    success: bool

    tx_hash: Optional[str]

    status: TransactionStatus

    block_number: Optional[int] = None

    block_hash: Optional[str] = None

    #: Normalised :py:class:`keypass_tx.events.ChainEvent` list
    events: list = field(default_factory=list)

    #: Paid fee if known, otherwise the estimated total cost
    fee: Optional[int] = None

    timestamp: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))

    #: How many times dispatch was retried before the transaction was accepted
    retry_count: int = 0

    error: Optional[TransactionEngineError] = None

    @classmethod
    def from_pending(cls, pending: PendingTransaction, fee: Optional[int] = None) -> "TransactionResult":
        return cls(
            success=pending.status == TransactionStatus.confirmed,
            tx_hash=pending.tx_hash,
            status=pending.status,
            block_number=pending.block_number,
            block_hash=pending.block_hash,
            events=list(pending.events),
            fee=pending.fee_paid if pending.fee_paid is not None else fee,
            retry_count=pending.retry_count,
            error=pending.error,
        )

    def raise_for_status(self) -> "TransactionResult":
        """Raise the attached error unless the transaction confirmed.

        A result still in ``pending`` or ``in_block`` state passes.

        :return:
            self, for chaining
        """
        if self.status in (TransactionStatus.failed, TransactionStatus.timeout):
            if self.error is not None:
                raise self.error
            raise TransactionFailed(f"Transaction {self.tx_hash} ended as {self.status.name}", tx_hash=self.tx_hash)
        return self
