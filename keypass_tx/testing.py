"""In-memory chain for unit testing.

A scriptable stand-in for a node, so that the engine can be tested without
running a parachain or an EVM node.

- Blocks are produced on demand with :py:meth:`MemoryChainClient.produce_block`

- Failures are injected by queueing exceptions in ``submit_errors``

- Push updates are emitted when the client is created with ``push=True``

Example:

.. code-block:: python

    client = MemoryChainClient(auto_mine=True)
    signer = MemorySigner("5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY")
    submitter = TransactionSubmitter(client, EngineConfig.for_substrate())
    result = await submitter.submit(TransactionRequest(call={"did": "create"}, address=signer.address), signer)
"""

import asyncio
import hashlib
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from keypass_tx.client import (
    ChainBlock,
    ChainClient,
    ChainFamily,
    ConfirmationModel,
    Inclusion,
    LogEntry,
    StatusUpdate,
    StatusUpdateKind,
    Submission,
)
from keypass_tx.errors import ErrorCode, UserError
from keypass_tx.fee import FeeQuote
from keypass_tx.signer import Signer, SigningParams
from keypass_tx.tx import SignedPayload, TransactionRequest
from keypass_tx.utils import normalise_address

logger = logging.getLogger(__name__)


def _hash(text: str) -> str:
    return "0x" + hashlib.blake2b(text.encode(), digest_size=32).hexdigest()


class UpdateStream:
    """Async iterator of push updates for one transaction."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, update: StatusUpdate):
        if not self.closed:
            self.queue.put_nowait(update)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StatusUpdate:
        if self.closed:
            raise StopAsyncIteration
        update = await self.queue.get()
        if update is None:
            raise StopAsyncIteration
        return update

    async def aclose(self):
        self.closed = True


class MemoryChainClient(ChainClient):
    """Scriptable in-memory chain.

    :param family:
        Which chain family to pretend to be

    :param auto_mine:
        Include every submitted transaction in a new final block right away

    :param push:
        Return push update streams from :py:meth:`submit`

    :param lookup:
        Support direct transaction lookup by hash, like EVM receipts
    """

    def __init__(
        self,
        family: ChainFamily = ChainFamily.substrate,
        confirmation_model: ConfirmationModel = ConfirmationModel.finality,
        auto_mine=False,
        push=False,
        lookup=False,
        batching=True,
    ):
        self.family = family
        self.confirmation_model = confirmation_model
        self.auto_mine = auto_mine
        self.push = push
        self.lookup = lookup
        self.batching = batching

        genesis = ChainBlock(number=0, hash=_hash("block-0"), parent_hash=None, transactions=[])
        self.blocks: List[ChainBlock] = [genesis]
        self.blocks_by_hash: Dict[str, ChainBlock] = {genesis.hash: genesis}
        self.logs: Dict[str, List[LogEntry]] = {genesis.hash: []}
        self.finalized_number = 0

        #: Confirmed nonce per lowercase address
        self.nonces: Dict[str, int] = defaultdict(int)

        #: tx hash -> signed payload
        self.pool: Dict[str, SignedPayload] = {}

        #: tx hash -> push stream
        self.streams: Dict[str, UpdateStream] = {}

        #: Raised by submit() one by one, before anything else happens
        self.submit_errors: List[Exception] = []

        #: Raised by get_next_nonce() one by one
        self.nonce_errors: List[Exception] = []

        #: Raised by estimate_fee() if set
        self.fee_error: Optional[Exception] = None

        self.fee_quote = FeeQuote(compute_limit=21_000, price_fields={"gasPrice": 10}, total_cost=210_000)

        #: tx hash -> extra events (section, method, data) emitted when included
        self.tx_events: Dict[str, List[Tuple[str, str, list]]] = {}

        #: tx hashes that execute but fail
        self.failing: set = set()

        self.submitted: List[SignedPayload] = []
        self.submit_calls = 0
        self.get_block_calls = 0

    def __repr__(self):
        return f"<MemoryChainClient {self.family.value} height:{self.latest.number} pool:{len(self.pool)}>"

    @property
    def latest(self) -> ChainBlock:
        return self.blocks[-1]

    def validate_address(self, address: str) -> bool:
        return bool(address) and not any(c.isspace() for c in address)

    async def get_next_nonce(self, address: str) -> int:
        if self.nonce_errors:
            raise self.nonce_errors.pop(0)
        key = normalise_address(address)
        in_pool = sum(1 for p in self.pool.values() if normalise_address(p.address) == key)
        return self.nonces[key] + in_pool

    async def estimate_fee(self, request: TransactionRequest, address: str) -> FeeQuote:
        if self.fee_error is not None:
            raise self.fee_error
        return self.fee_quote

    async def submit(self, signed: SignedPayload, watch: bool = True) -> Submission:
        self.submit_calls += 1
        if self.submit_errors:
            raise self.submit_errors.pop(0)

        self.submitted.append(signed)
        self.pool[signed.tx_hash] = signed

        updates = None
        if watch and self.push:
            updates = UpdateStream()
            self.streams[signed.tx_hash] = updates
            updates.push(StatusUpdate(StatusUpdateKind.ready))

        if self.auto_mine:
            self.produce_block()

        return Submission(tx_hash=signed.tx_hash, updates=updates)

    def produce_block(self, tx_hashes: Optional[Sequence[str]] = None, finalize=True) -> ChainBlock:
        """Build a block on top of the latest one.

        :param tx_hashes:
            Pool transactions to include. All of the pool if not given.
            Hashes not in the pool are included as foreign transactions.

        :param finalize:
            Move the finalised head to the new block
        """
        if tx_hashes is None:
            tx_hashes = list(self.pool.keys())

        parent = self.latest
        number = parent.number + 1
        block = ChainBlock(number=number, hash=_hash(f"block-{number}-{parent.hash}"), parent_hash=parent.hash, transactions=list(tx_hashes))

        log = []
        for tx_index, tx_hash in enumerate(block.transactions):
            signed = self.pool.pop(tx_hash, None)
            if signed is not None:
                self.nonces[normalise_address(signed.address)] = max(self.nonces[normalise_address(signed.address)], signed.nonce + 1)
            for section, method, data in self.tx_events.get(tx_hash, []):
                log.append(LogEntry(tx_index=tx_index, section=section, method=method, data=list(data), index=len(log)))
            outcome = "ExtrinsicFailed" if tx_hash in self.failing else "ExtrinsicSuccess"
            log.append(LogEntry(tx_index=tx_index, section="system", method=outcome, data=[], index=len(log)))

        self.blocks.append(block)
        self.blocks_by_hash[block.hash] = block
        self.logs[block.hash] = log

        for tx_hash in block.transactions:
            stream = self.streams.get(tx_hash)
            if stream is not None:
                stream.push(StatusUpdate(StatusUpdateKind.in_block, block.hash))

        if finalize:
            self.finalize(number)

        return block

    def finalize(self, number: Optional[int] = None):
        """Move the finalised head."""
        if number is None:
            number = self.latest.number
        for block in self.blocks[self.finalized_number + 1 : number + 1]:
            for tx_hash in block.transactions:
                stream = self.streams.get(tx_hash)
                if stream is not None:
                    stream.push(StatusUpdate(StatusUpdateKind.finalized, block.hash))
        self.finalized_number = max(self.finalized_number, number)

    def drop(self, tx_hash: str):
        """Remove a transaction from the pool without including it."""
        self.pool.pop(tx_hash, None)
        stream = self.streams.get(tx_hash)
        if stream is not None:
            stream.push(StatusUpdate(StatusUpdateKind.dropped))

    async def get_block(self, block_id: int | str | None = None) -> ChainBlock:
        self.get_block_calls += 1
        if block_id is None:
            return self.latest
        if isinstance(block_id, int):
            if block_id >= len(self.blocks):
                raise ValueError(f"Block {block_id} not found")
            return self.blocks[block_id]
        try:
            return self.blocks_by_hash[block_id]
        except KeyError:
            raise ValueError(f"Block {block_id} not found") from None

    async def get_finalized_head(self) -> str:
        return self.blocks[self.finalized_number].hash

    async def is_pending(self, tx_hash: str) -> bool:
        return tx_hash in self.pool

    async def get_block_log(self, block: ChainBlock) -> List[LogEntry]:
        return list(self.logs.get(block.hash, []))

    async def find_transaction(self, tx_hash: str) -> Optional[Inclusion]:
        if not self.lookup:
            return None
        for block in self.blocks:
            if tx_hash in block.transactions:
                return Inclusion(
                    block_number=block.number,
                    block_hash=block.hash,
                    tx_index=block.transactions.index(tx_hash),
                    success=tx_hash not in self.failing,
                )
        return None

    async def get_revert_reason(self, tx_hash: str) -> Optional[str]:
        return "execution reverted: test failure" if tx_hash in self.failing else None

    async def compose_batch(self, calls: Sequence[Any]) -> Any:
        if not self.batching:
            return await super().compose_batch(calls)
        return {"batch_all": list(calls)}


class MemorySigner(Signer):
    """Signer producing deterministic fake hashes.

    :param reject:
        Raise like a user declining to sign in their wallet
    """

    def __init__(self, address: str, reject=False):
        self._address = address
        self.reject = reject
        self.signed: List[Tuple[TransactionRequest, SigningParams]] = []

    @property
    def address(self) -> str:
        return self._address

    async def sign(self, request: TransactionRequest, params: SigningParams) -> SignedPayload:
        if self.reject:
            raise UserError("User rejected the request", code=ErrorCode.user_rejected)
        self.signed.append((request, params))
        tx_hash = _hash(f"tx-{normalise_address(self._address)}-{params.nonce}-{request.label}-{len(self.signed)}")
        return SignedPayload(tx_hash=tx_hash, raw=request.call, nonce=params.nonce, address=self._address, source=request.call)
