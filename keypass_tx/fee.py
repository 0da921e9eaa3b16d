"""Fee estimation.

The chain client quotes raw numbers, :py:class:`FeeEstimator` pads them
with a safety margin and falls back to configured constants when
the node cannot estimate.
"""

import enum
import logging
import math
from dataclasses import dataclass, field
from pprint import pformat
from typing import Dict, Optional

from keypass_tx.config import EngineConfig
from keypass_tx.tx import TransactionRequest

logger = logging.getLogger(__name__)


class FeeConfidence(enum.Enum):
    """Where the fee numbers came from."""

    #: Node estimate
    high = "high"

    #: Fallback constants
    low = "low"


@dataclass(frozen=True, slots=True)
class FeeQuote:
    """Unpadded fee numbers from the node."""

    #: Gas limit on EVM, ref time weight on substrate
    compute_limit: int

    #: Fields applied to the transaction as is
    price_fields: Dict[str, int] = field(default_factory=dict)

    #: Worst case cost in the chain's smallest unit
    total_cost: int = 0


@dataclass(frozen=True, slots=True)
class FeeEstimate:
    """Padded fee numbers used for signing."""

    compute_limit: int

    #: ``maxFeePerGas`` + ``maxPriorityFeePerGas`` or ``gasPrice`` on EVM,
    #: ``tip`` on substrate
    price_fields: Dict[str, int]

    total_cost: int

    confidence: FeeConfidence = FeeConfidence.high

    def __repr__(self):
        return f"<FeeEstimate limit:{self.compute_limit} cost:{self.total_cost} confidence:{self.confidence.name} {self.price_fields}>"

    def pformat(self) -> str:
        """Pretty format for logging."""

        def _format(value: Optional[int]) -> str:
            if value is None:
                return "-"
            return f"{value / 10**9:.2f}G ({value:,})"

        data = {"Compute limit": f"{self.compute_limit:,}", "Total cost": _format(self.total_cost)}
        data.update({k: _format(v) for k, v in self.price_fields.items()})
        return pformat(data)


def pad(value: int, multiplier: float) -> int:
    """Apply safety margin, rounding up."""
    return int(math.ceil(value * multiplier))


class FeeEstimator:
    """Estimate fees through a chain client.

    :py:meth:`estimate` never raises. If the node fails to estimate,
    the configured fallback is returned with :py:attr:`FeeConfidence.low`.
    Nothing is cached between calls.
    """

    def __init__(self, client, config: EngineConfig):
        """
        :param client:
            :py:class:`keypass_tx.client.ChainClient`
        """
        self.client = client
        self.config = config

    def get_fallback(self) -> FeeEstimate:
        """Fee used when the node cannot estimate."""
        price_fields = dict(self.config.fallback_price_fields)
        unit_price = max(price_fields.values(), default=0)
        limit = self.config.default_compute_limit
        return FeeEstimate(
            compute_limit=limit,
            price_fields=price_fields,
            total_cost=limit * unit_price,
            confidence=FeeConfidence.low,
        )

    async def estimate(self, request: TransactionRequest, address: str) -> FeeEstimate:
        """Estimate fees for a request.

        :param request:
            What we are about to sign

        :param address:
            Paying account
        """
        try:
            quote = await self.client.estimate_fee(request, address)
        except Exception as e:
            fallback = self.get_fallback()
            logger.warning("Fee estimation failed for %s, using fallback %s: %s", request, fallback, e)
            return fallback

        multiplier = self.config.fee_multiplier
        estimate = FeeEstimate(
            compute_limit=pad(quote.compute_limit, multiplier),
            price_fields=dict(quote.price_fields),
            total_cost=pad(quote.total_cost, multiplier),
            confidence=FeeConfidence.high,
        )
        logger.debug("Estimated fee for %s: %s", request, estimate)
        return estimate
