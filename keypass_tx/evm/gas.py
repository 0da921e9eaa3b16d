"""Gas price suggestion for EVM chains.

Moonbeam supports EIP-1559 fees. Some EVM chains and dev nodes do not,
so the method is picked by looking at the latest block.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from web3 import AsyncWeb3

logger = logging.getLogger(__name__)


class GasPriceMethod(enum.Enum):
    """What method we did use for setting the gas price."""

    #: Chains without a base fee
    legacy = "legacy"

    #: EIP-1559
    london = "london"


@dataclass(slots=True)
class GasPriceSuggestion:
    """Gas price details for one transaction.

    - EIP-1559 chains: base fee, max priority fee and max fee

    - Legacy chains: one gas price
    """

    method: GasPriceMethod

    legacy_gas_price: Optional[int] = None

    base_fee: Optional[int] = None

    max_priority_fee_per_gas: Optional[int] = None

    max_fee_per_gas: Optional[int] = None

    def __repr__(self):
        return f"<Gas pricing method:{self.method.name} base:{self.base_fee} priority:{self.max_priority_fee_per_gas} max:{self.max_fee_per_gas} legacy:{self.legacy_gas_price}>"

    def get_tx_gas_params(self) -> Dict[str, int]:
        """Gas fields as they go into a transaction dict."""
        if self.method == GasPriceMethod.london:
            return {"maxPriorityFeePerGas": self.max_priority_fee_per_gas, "maxFeePerGas": self.max_fee_per_gas}
        else:
            return {"gasPrice": self.legacy_gas_price}

    def get_max_unit_price(self) -> int:
        """Worst case price per gas unit."""
        if self.method == GasPriceMethod.london:
            return self.max_fee_per_gas
        return self.legacy_gas_price


async def estimate_gas_price(web3: AsyncWeb3, method: Optional[GasPriceMethod] = None) -> GasPriceSuggestion:
    """Get a gas price for a transaction.

    Max fee is the priority fee plus two times the base fee, so the transaction
    survives a few full blocks of base fee growth.
    """

    last_block = await web3.eth.get_block("latest")
    base_fee = last_block.get("baseFeePerGas")

    if method is None:
        method = GasPriceMethod.london if base_fee is not None else GasPriceMethod.legacy

    if method == GasPriceMethod.london:
        assert base_fee is not None, f"Block {last_block['number']} has no base fee, cannot use EIP-1559 pricing"
        max_priority_fee_per_gas = await web3.eth.max_priority_fee
        max_fee_per_gas = max_priority_fee_per_gas + 2 * base_fee

        # https://github.com/ethereum/go-ethereum/blob/2e478aab98c13577c66b4531ba240a601dbc1516/core/error.go#L87
        if max_priority_fee_per_gas > max_fee_per_gas:
            max_fee_per_gas = max_priority_fee_per_gas

        return GasPriceSuggestion(
            method=GasPriceMethod.london,
            base_fee=base_fee,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            max_fee_per_gas=max_fee_per_gas,
        )
    else:
        return GasPriceSuggestion(method=GasPriceMethod.legacy, legacy_gas_price=await web3.eth.gas_price)


def apply_gas(tx: dict, price_fields: Dict[str, int]) -> dict:
    """Apply gas price fields to a raw transaction dict.

    :return:
        Mutated dict
    """
    assert isinstance(tx, dict), f"Expected tx to be dict, got {type(tx)}"

    if "maxFeePerGas" in price_fields:
        # Cannot have both maxFeePerGas + maxPriorityFeePerGas and gasPrice
        tx.pop("gasPrice", None)
    elif "gasPrice" in price_fields:
        tx.pop("maxFeePerGas", None)
        tx.pop("maxPriorityFeePerGas", None)
        # Legacy pricing cannot go into a typed EIP-1559 envelope
        if tx.get("type") in (2, "0x2"):
            del tx["type"]

    tx.update(price_fields)
    return tx
