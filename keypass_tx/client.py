"""Chain client capability interface.

The engine only talks to chains through :py:class:`ChainClient`.
Adapters:

- :py:class:`keypass_tx.evm.client.Web3ChainClient`

- :py:class:`keypass_tx.substrate.client.SubstrateChainClient`

- :py:class:`keypass_tx.testing.MemoryChainClient`
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Sequence

from keypass_tx.errors import ErrorCode, ValidationFailure
from keypass_tx.fee import FeeQuote
from keypass_tx.tx import SignedPayload, TransactionRequest


class ChainFamily(enum.Enum):
    substrate = "substrate"
    evm = "evm"


class ConfirmationModel(enum.Enum):
    """When is a transaction final."""

    #: Block is at or below the finalised head
    finality = "finality"

    #: Enough blocks have been built on top
    confirmation_count = "confirmation_count"


@dataclass(slots=True)
class ChainBlock:
    """Block header and the transactions in it, in block order."""

    number: int

    hash: str

    parent_hash: Optional[str]

    #: Transaction hashes in block order, lowercase 0x hex.
    #:
    #: ``None`` for entries whose hash could not be computed (unsigned extrinsics).
    transactions: List[Optional[str]] = field(default_factory=list)


@dataclass(slots=True)
class LogEntry:
    """One raw event from a block.

    ``tx_index`` ties the event to a transaction position in the block,
    ``None`` for block level events.
    """

    tx_index: Optional[int]

    section: str

    method: str

    #: Event arguments, positional
    data: list = field(default_factory=list)

    #: Position of the event in the block's event list
    index: int = 0


@dataclass(slots=True)
class Inclusion:
    """Direct lookup result for chains that can find a transaction by hash."""

    block_number: int

    block_hash: str

    tx_index: int

    #: False if the chain tells the transaction reverted
    success: bool = True

    fee_paid: Optional[int] = None

    #: Why it failed, if known
    failure_reason: Optional[str] = None


class StatusUpdateKind(enum.Enum):
    """Push notifications from a submit-and-watch subscription."""

    ready = "ready"
    in_block = "in_block"
    finalized = "finalized"
    invalid = "invalid"
    dropped = "dropped"
    usurped = "usurped"
    retracted = "retracted"


@dataclass(slots=True)
class StatusUpdate:
    kind: StatusUpdateKind

    #: Set for in_block, finalized and retracted
    block_hash: Optional[str] = None


@dataclass(slots=True)
class Submission:
    """Result of a successful dispatch."""

    tx_hash: str

    #: Push stream, ``None`` for fire-and-forget dispatch
    updates: Optional[AsyncIterator[StatusUpdate]] = None


class ChainClient(ABC):
    """Narrow async capability interface to a chain node."""

    #: Chain family served
    family: ChainFamily

    #: How this chain reaches finality
    confirmation_model: ConfirmationModel

    @abstractmethod
    async def get_next_nonce(self, address: str) -> int:
        """Next nonce for the account, including pool transactions."""

    @abstractmethod
    async def estimate_fee(self, request: TransactionRequest, address: str) -> FeeQuote:
        """Raw fee quote from the node. May raise."""

    @abstractmethod
    async def submit(self, signed: SignedPayload, watch: bool = True) -> Submission:
        """Broadcast a signed transaction.

        :param watch:
            Ask for a push stream if the chain supports one.

        :raise Exception:
            Any client error, classified by the caller
        """

    @abstractmethod
    async def get_block(self, block_id: int | str | None = None) -> ChainBlock:
        """Fetch a block by number or hash, latest if not given."""

    @abstractmethod
    async def get_finalized_head(self) -> str:
        """Hash of the latest finalised block."""

    @abstractmethod
    async def is_pending(self, tx_hash: str) -> bool:
        """Is the transaction in the node's pending pool."""

    @abstractmethod
    async def get_block_log(self, block: ChainBlock) -> List[LogEntry]:
        """All events emitted in a block."""

    async def find_transaction(self, tx_hash: str) -> Optional[Inclusion]:
        """Look up a transaction by hash.

        Chains with a transaction index (EVM receipts) override this.
        The default tells the caller to fall back to block search.
        """
        return None

    async def get_signing_extras(self, request: TransactionRequest) -> dict:
        """Chain parameters the signer needs, e.g. chain id."""
        return {}

    async def get_revert_reason(self, tx_hash: str) -> Optional[str]:
        """Explain a failed transaction, if the chain can."""
        return None

    async def compose_batch(self, calls: Sequence[Any]) -> Any:
        """Wrap calls into one native all-or-nothing batch call."""
        raise ValidationFailure(f"{self.family.value} chains do not support native batching", code=ErrorCode.invalid_input)

    def validate_address(self, address: str) -> bool:
        """Shape check of an account address."""
        return bool(address)

    async def close(self):
        """Release connections."""
