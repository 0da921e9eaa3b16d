"""EVM chain adapter over Web3.py async API.

EVM chains have no push subscription for transaction status that survives
provider failover, so this adapter is poll only and relies on receipts for
direct lookup. Finality is approximated by a confirmation count.
"""

import logging
from typing import List, Optional

from eth_typing import HexAddress
from eth_utils import is_address, to_checksum_address
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound, Web3Exception

from keypass_tx.client import ChainBlock, ChainClient, ChainFamily, ConfirmationModel, Inclusion, LogEntry, Submission
from keypass_tx.evm.gas import GasPriceMethod, estimate_gas_price
from keypass_tx.evm.revert_reason import fetch_transaction_revert_reason
from keypass_tx.fee import FeeQuote
from keypass_tx.tx import SignedPayload, TransactionRequest
from keypass_tx.utils import to_hex

logger = logging.getLogger(__name__)


#: Fields the engine sets itself, stripped from caller supplied calls before estimation
ENGINE_FIELDS = ("nonce", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas")


class Web3ChainClient(ChainClient):
    """Moonbeam and other EVM chains.

    :param web3:
        Async connection

    :param gas_price_method:
        Force legacy or EIP-1559 pricing. Autodetected from the latest block if not given.

    :param use_archive_node:
        Replay failed transactions against historical state when fetching revert reasons
    """

    family = ChainFamily.evm

    confirmation_model = ConfirmationModel.confirmation_count

    def __init__(self, web3: AsyncWeb3, gas_price_method: Optional[GasPriceMethod] = None, use_archive_node=False):
        self.web3 = web3
        self.gas_price_method = gas_price_method
        self.use_archive_node = use_archive_node
        self.chain_id: Optional[int] = None

    def __repr__(self):
        return f"<Web3ChainClient chain:{self.chain_id}>"

    def validate_address(self, address: str) -> bool:
        return is_address(address)

    async def get_chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = await self.web3.eth.chain_id
        return self.chain_id

    async def get_signing_extras(self, request: TransactionRequest) -> dict:
        return {"chainId": await self.get_chain_id()}

    async def get_next_nonce(self, address: str) -> int:
        return await self.web3.eth.get_transaction_count(to_checksum_address(address), "pending")

    async def estimate_fee(self, request: TransactionRequest, address: str) -> FeeQuote:
        tx = {k: v for k, v in dict(request.call).items() if k not in ENGINE_FIELDS}
        tx["from"] = to_checksum_address(address)
        gas = await self.web3.eth.estimate_gas(tx)
        suggestion = await estimate_gas_price(self.web3, self.gas_price_method)
        logger.debug("Gas estimate %d, price %s", gas, suggestion)
        return FeeQuote(
            compute_limit=gas,
            price_fields=suggestion.get_tx_gas_params(),
            total_cost=gas * suggestion.get_max_unit_price(),
        )

    async def submit(self, signed: SignedPayload, watch: bool = True) -> Submission:
        tx_hash = await self.web3.eth.send_raw_transaction(signed.raw)
        return Submission(tx_hash=to_hex(tx_hash))

    async def get_block(self, block_id: int | str | None = None) -> ChainBlock:
        if block_id is None:
            block_id = "latest"
        data = await self.web3.eth.get_block(block_id)
        return ChainBlock(
            number=data["number"],
            hash=to_hex(data["hash"]),
            parent_hash=to_hex(data["parentHash"]) if data["number"] > 0 else None,
            transactions=[to_hex(t) for t in data["transactions"]],
        )

    async def get_finalized_head(self) -> str:
        """Finalised block hash.

        Nodes that do not know the ``finalized`` tag get latest instead.
        """
        try:
            block = await self.get_block("finalized")
        except (ValueError, Web3Exception) as e:
            logger.warning("Node does not support finalized block tag, using latest: %s", e)
            block = await self.get_block("latest")
        return block.hash

    async def is_pending(self, tx_hash: str) -> bool:
        try:
            tx = await self.web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        return tx.get("blockNumber") is None

    async def find_transaction(self, tx_hash: str) -> Optional[Inclusion]:
        try:
            receipt = await self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

        # Some nodes return a receipt before the block is sealed
        if receipt.get("blockNumber") is None:
            return None

        effective_gas_price = receipt.get("effectiveGasPrice")
        fee_paid = receipt["gasUsed"] * effective_gas_price if effective_gas_price is not None else None

        return Inclusion(
            block_number=receipt["blockNumber"],
            block_hash=to_hex(receipt["blockHash"]),
            tx_index=receipt["transactionIndex"],
            success=receipt["status"] == 1,
            fee_paid=fee_paid,
        )

    async def get_revert_reason(self, tx_hash: str) -> Optional[str]:
        return await fetch_transaction_revert_reason(self.web3, tx_hash, use_archive_node=self.use_archive_node)

    async def get_block_log(self, block: ChainBlock) -> List[LogEntry]:
        """Contract logs in a block.

        Logs are not ABI decoded: ``section`` is the emitting contract
        and ``method`` the event signature topic.
        """
        logs = await self.web3.eth.get_logs({"fromBlock": block.number, "toBlock": block.number})
        entries = []
        for log in logs:
            topics = [to_hex(t) for t in log["topics"]]
            entries.append(
                LogEntry(
                    tx_index=log["transactionIndex"],
                    section=log["address"],
                    method=topics[0] if topics else "anonymous",
                    data=topics[1:] + [to_hex(log["data"])],
                    index=log["logIndex"],
                )
            )
        return entries


async def prepare_contract_call(func, address: HexAddress | str, label: str = "", value: int = 0) -> TransactionRequest:
    """Turn a bound contract function into a request.

    Example:

    .. code-block:: python

        token = web3.eth.contract(address=token_address, abi=erc20_abi)
        request = await prepare_contract_call(token.functions.transfer(receiver, 100), signer.address, "transfer")
        result = await submitter.submit(request, signer)

    :param func:
        ``AsyncContractFunction`` with arguments bound
    """
    tx = await func.build_transaction({"from": to_checksum_address(address), "value": value})
    for key in ENGINE_FIELDS:
        tx.pop(key, None)
    return TransactionRequest(call=tx, address=address, label=label or func.fn_name)
