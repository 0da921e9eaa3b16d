"""Substrate chain adapter over substrate-interface.

:py:class:`substrateinterface.SubstrateInterface` is blocking and its websocket
must not be used from several threads at once. All calls go through a
single worker thread. Submit-and-watch subscriptions block their connection
until the transaction is final, so each gets its own connection
from ``watch_factory``.

Example:

.. code-block:: python

    from substrateinterface import SubstrateInterface, Keypair

    url = "wss://peregrine.kilt.io/parachain-public-ws"
    client = SubstrateChainClient(
        SubstrateInterface(url=url, ss58_format=38),
        watch_factory=lambda: SubstrateInterface(url=url, ss58_format=38),
    )
    signer = KeypairSigner(client, Keypair.create_from_uri("//Alice", ss58_format=38))

"""

import asyncio
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, List, Optional, Sequence

from substrateinterface import Keypair, SubstrateInterface
from substrateinterface.utils.ss58 import is_valid_ss58_address

from keypass_tx.client import (
    ChainBlock,
    ChainClient,
    ChainFamily,
    ConfirmationModel,
    LogEntry,
    StatusUpdate,
    StatusUpdateKind,
    Submission,
)
from keypass_tx.errors import NetworkFailure
from keypass_tx.fee import FeeQuote
from keypass_tx.tx import SignedPayload, TransactionRequest
from keypass_tx.utils import to_hex

logger = logging.getLogger(__name__)


#: Subscription ends after these
TERMINAL_UPDATES = frozenset(
    {
        StatusUpdateKind.finalized,
        StatusUpdateKind.invalid,
        StatusUpdateKind.dropped,
        StatusUpdateKind.usurped,
    }
)

#: ``author_submitAndWatchExtrinsic`` string statuses
STRING_STATUSES = {
    "ready": StatusUpdateKind.ready,
    "future": StatusUpdateKind.ready,
    "invalid": StatusUpdateKind.invalid,
    "dropped": StatusUpdateKind.dropped,
}

#: ``author_submitAndWatchExtrinsic`` object statuses
OBJECT_STATUSES = (
    ("inBlock", StatusUpdateKind.in_block),
    ("finalized", StatusUpdateKind.finalized),
    ("usurped", StatusUpdateKind.usurped),
    ("retracted", StatusUpdateKind.retracted),
    ("finalityTimeout", StatusUpdateKind.dropped),
)


def parse_extrinsic_status(result: Any) -> Optional[StatusUpdate]:
    """Map a subscription status to an update.

    ``broadcast`` and unknown statuses map to ``None``.
    """
    if isinstance(result, str):
        kind = STRING_STATUSES.get(result)
        return StatusUpdate(kind) if kind else None

    if isinstance(result, dict):
        for key, kind in OBJECT_STATUSES:
            if key in result:
                value = result[key]
                return StatusUpdate(kind, value if isinstance(value, str) else None)

    return None


def hash_encoded_extrinsic(encoded: str | bytes) -> str:
    """Blake2-256 hash of a SCALE encoded extrinsic, as the node computes it."""
    if isinstance(encoded, str):
        encoded = bytes.fromhex(encoded[2:] if encoded.startswith("0x") else encoded)
    return "0x" + hashlib.blake2b(encoded, digest_size=32).hexdigest()


def get_extrinsic_hash(extrinsic) -> Optional[str]:
    """Hash of a decoded extrinsic from a block."""
    value = getattr(extrinsic, "extrinsic_hash", None)
    if value is None and isinstance(getattr(extrinsic, "value", None), dict):
        value = extrinsic.value.get("extrinsic_hash")
    return to_hex(value) if value else None


def to_section_name(module_id: str) -> str:
    """Pallet name as used in event types: ``Did`` -> ``did``, ``TransactionPayment`` -> ``transactionPayment``."""
    return module_id[:1].lower() + module_id[1:]


def get_weight(info: dict) -> int:
    """Ref time weight from a payment info reply.

    Older runtimes return a plain number.
    """
    weight = info.get("weight", 0)
    if isinstance(weight, dict):
        return int(weight.get("ref_time", weight.get("refTime", 0)))
    return int(weight)


class WatchStream:
    """Push updates from a submit-and-watch subscription running in a worker thread.

    Errors after the node accepted the transaction end the stream,
    the confirmation poller takes over from there.
    """

    def __init__(self, queue: asyncio.Queue, substrate: SubstrateInterface, worker: asyncio.Future, first: Optional[StatusUpdate] = None):
        self.queue = queue
        self.substrate = substrate
        self.worker = worker
        self.first = first
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> StatusUpdate:
        if self.closed:
            raise StopAsyncIteration

        if self.first is not None:
            update, self.first = self.first, None
            return update

        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            logger.warning("Watch subscription failed, falling back to polling: %s", item)
            raise StopAsyncIteration
        return item

    async def aclose(self):
        if not self.closed:
            self.closed = True
            # Unblocks the worker thread waiting on the websocket
            self.substrate.close()
            await self.worker


class SubstrateChainClient(ChainClient):
    """KILT and other substrate parachains.

    :param substrate:
        Connection used for queries and plain submission

    :param watch_factory:
        Creates a fresh connection for each watched submission.
        Without it, submissions are fire-and-forget and confirmation relies on polling.
    """

    family = ChainFamily.substrate

    confirmation_model = ConfirmationModel.finality

    def __init__(self, substrate: SubstrateInterface, watch_factory: Optional[Callable[[], SubstrateInterface]] = None):
        self.substrate = substrate
        self.watch_factory = watch_factory
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="substrate")

    def __repr__(self):
        return f"<SubstrateChainClient {self.substrate.url}>"

    async def run(self, func: Callable, *args, **kwargs):
        """Run a blocking substrate-interface call on the connection thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args, **kwargs))

    def validate_address(self, address: str) -> bool:
        return is_valid_ss58_address(address, valid_ss58_format=self.substrate.ss58_format)

    async def compose_call(self, module: str, function: str, params: dict) -> Any:
        """Build a call, e.g. ``compose_call("Did", "create", {...})``."""
        return await self.run(self.substrate.compose_call, call_module=module, call_function=function, call_params=params)

    async def get_call_arg_count(self, module: str, function: str) -> int:
        """How many arguments a call takes in the connected runtime."""
        call_function = await self.run(self.substrate.get_metadata_call_function, module, function)
        if call_function is None:
            raise ValueError(f"Runtime has no call {module}.{function}")
        args = getattr(call_function, "args", None)
        if args is None:
            value = call_function.value
            args = value.get("args", value.get("fields", []))
        return len(args)

    async def get_next_nonce(self, address: str) -> int:
        # system_accountNextIndex counts pool transactions
        return await self.run(self.substrate.get_account_nonce, address)

    async def estimate_fee(self, request: TransactionRequest, address: str) -> FeeQuote:
        keypair = Keypair(ss58_address=address)
        info = await self.run(self.substrate.get_payment_info, request.call, keypair)
        if info is None:
            raise ValueError(f"Node returned no payment info for {request}")
        return FeeQuote(
            compute_limit=get_weight(info),
            price_fields={"tip": 0},
            total_cost=int(info["partialFee"]),
        )

    async def submit(self, signed: SignedPayload, watch: bool = True) -> Submission:
        if watch and self.watch_factory is not None:
            return await self._submit_and_watch(signed)

        receipt = await self.run(self.substrate.submit_extrinsic, signed.raw, wait_for_inclusion=False)
        return Submission(tx_hash=to_hex(receipt.extrinsic_hash or signed.tx_hash))

    async def _submit_and_watch(self, signed: SignedPayload) -> Submission:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        substrate = self.watch_factory()

        def put(item):
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, item)

        def handler(message, update_nr, subscription_id):
            update = parse_extrinsic_status(message["params"]["result"])
            if update is None:
                return None
            put(update)
            if update.kind in TERMINAL_UPDATES:
                return update
            return None

        def watch():
            try:
                substrate.rpc_request("author_submitAndWatchExtrinsic", [str(signed.raw.data)], result_handler=handler)
            except Exception as e:
                put(e)
            finally:
                put(None)
                substrate.close()

        worker = loop.run_in_executor(None, watch)

        first = await queue.get()
        if not isinstance(first, StatusUpdate):
            await worker
        if isinstance(first, Exception):
            raise first
        if first is None:
            raise NetworkFailure(f"Watch subscription for {signed.tx_hash} closed before the node answered", tx_hash=signed.tx_hash)

        return Submission(tx_hash=signed.tx_hash, updates=WatchStream(queue, substrate, worker, first))

    async def get_block(self, block_id: int | str | None = None) -> ChainBlock:
        if block_id is None:
            data = await self.run(self.substrate.get_block)
        elif isinstance(block_id, int):
            data = await self.run(self.substrate.get_block, block_number=block_id)
        else:
            data = await self.run(self.substrate.get_block, block_hash=block_id)

        if data is None:
            raise ValueError(f"Block {block_id} not found")

        header = data["header"]
        block_hash = header.get("hash") or block_id
        return ChainBlock(
            number=int(header["number"]),
            hash=to_hex(block_hash),
            parent_hash=to_hex(header["parentHash"]) if header.get("parentHash") and int(header["number"]) > 0 else None,
            transactions=[get_extrinsic_hash(e) for e in data.get("extrinsics", [])],
        )

    async def get_finalized_head(self) -> str:
        return to_hex(await self.run(self.substrate.get_chain_finalised_head))

    async def is_pending(self, tx_hash: str) -> bool:
        response = await self.run(self.substrate.rpc_request, "author_pendingExtrinsics", [])
        pool = {hash_encoded_extrinsic(e) for e in response.get("result", [])}
        return to_hex(tx_hash) in pool

    async def get_block_log(self, block: ChainBlock) -> List[LogEntry]:
        records = await self.run(self.substrate.get_events, block_hash=block.hash)
        entries = []
        for idx, record in enumerate(records):
            value = record.value
            attributes = value.get("attributes")
            if isinstance(attributes, dict):
                data = list(attributes.values())
            elif isinstance(attributes, (list, tuple)):
                data = list(attributes)
            elif attributes is None:
                data = []
            else:
                data = [attributes]

            entries.append(
                LogEntry(
                    tx_index=value.get("extrinsic_idx"),
                    section=to_section_name(value["module_id"]),
                    method=value["event_id"],
                    data=data,
                    index=idx,
                )
            )
        return entries

    async def compose_batch(self, calls: Sequence[Any]) -> Any:
        """All-or-nothing ``Utility.batch_all``."""
        return await self.compose_call("Utility", "batch_all", {"calls": list(calls)})

    async def close(self):
        self.substrate.close()
        self.executor.shutdown(wait=False)
