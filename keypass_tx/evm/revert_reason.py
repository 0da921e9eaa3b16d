"""Revert reason extraction.

Nodes do not store why a transaction failed. We replay it with ``eth_call``
against the state just before its block, which needs an archive node for anything
older than a few minutes, or against the current state, which may give a different answer.

Further reading

- `Web3.py Patterns: Revert Reason Lookups <https://snakecharmers.ethereum.org/web3py-revert-reason-parsing/>`_
"""

import logging
from typing import Union

from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError

logger = logging.getLogger(__name__)


async def fetch_transaction_revert_reason(
    web3: AsyncWeb3,
    tx_hash: Union[HexBytes, str],
    use_archive_node=False,
    unknown_error_message="<could not extract the revert reason>",
) -> str:
    """Get a transaction revert reason by replaying it.

    :param web3:
        Our JSON-RPC connection

    :param tx_hash:
        Failed transaction

    :param use_archive_node:
        Replay against the state of the block before inclusion.
        Only works on archive nodes.

    :param unknown_error_message:
        Returned if the replay does not revert or the reason cannot be parsed

    :return:
        The revert reason or the placeholder message
    """

    if isinstance(tx_hash, str):
        tx_hash = HexBytes(tx_hash)

    tx = await web3.eth.get_transaction(tx_hash)

    replay_tx = {
        "to": tx["to"],
        "from": tx["from"],
        "value": tx["value"],
        "data": tx.get("input", tx.get("data")),
        "gas": tx["gas"],
    }

    try:
        if use_archive_node:
            await web3.eth.call(replay_tx, tx["blockNumber"] - 1)
        else:
            await web3.eth.call(replay_tx)
    except ContractLogicError as e:
        return e.args[0]
    except ValueError as e:
        logger.debug("Revert exception result is: %s", e)
        data = e.args[0] if e.args else None
        if isinstance(data, str):
            return data
        if isinstance(data, dict) and "message" in data:
            return data["message"]
        return unknown_error_message

    logger.warning("Transaction %s did not revert when replayed, maybe the chain state changed since", tx_hash.hex())
    return unknown_error_message
