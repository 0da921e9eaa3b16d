"""Signer interface.

Key storage is not the engine's business. Callers inject a signer
that turns a request plus engine chosen parameters into a broadcastable payload.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from keypass_tx.fee import FeeEstimate
from keypass_tx.tx import SignedPayload, TransactionRequest


@dataclass(slots=True)
class SigningParams:
    """What the engine decided for this attempt."""

    nonce: int

    fee: FeeEstimate

    #: Chain specific extras: ``chainId`` on EVM, ``era`` on substrate
    extras: dict = field(default_factory=dict)


class Signer(ABC):
    """Signs transactions for one account."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Signing account."""

    @abstractmethod
    async def sign(self, request: TransactionRequest, params: SigningParams) -> SignedPayload:
        """Sign a request with the given nonce and fee.

        :raise keypass_tx.errors.UserError:
            If the user declined to sign
        """
