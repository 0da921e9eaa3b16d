"""Keypair signer for substrate chains."""

import logging
from typing import Optional

from substrateinterface import Keypair

from keypass_tx.signer import Signer, SigningParams
from keypass_tx.substrate.client import SubstrateChainClient
from keypass_tx.tx import SignedPayload, TransactionRequest
from keypass_tx.utils import to_hex

logger = logging.getLogger(__name__)


class KeypairSigner(Signer):
    """Sign extrinsics with a :py:class:`substrateinterface.Keypair`.

    Building an extrinsic needs the runtime metadata and genesis hash,
    so signing goes through the client's connection.

    :param era:
        Mortality, e.g. ``{"period": 64}``. Immortal if ``None``.
    """

    def __init__(self, client: SubstrateChainClient, keypair: Keypair, era: Optional[dict] = None):
        self.client = client
        self.keypair = keypair
        self.era = era

    def __repr__(self):
        return f"<KeypairSigner {self.keypair.ss58_address}>"

    @property
    def address(self) -> str:
        return self.keypair.ss58_address

    async def sign(self, request: TransactionRequest, params: SigningParams) -> SignedPayload:
        tip = params.fee.price_fields.get("tip", 0)
        era = params.extras.get("era", self.era)
        extrinsic = await self.client.run(
            self.client.substrate.create_signed_extrinsic,
            call=request.call,
            keypair=self.keypair,
            era=era,
            nonce=params.nonce,
            tip=tip,
        )
        tx_hash = to_hex(extrinsic.extrinsic_hash)
        logger.debug("Signed %s as %s with nonce %d", request, tx_hash, params.nonce)
        return SignedPayload(tx_hash=tx_hash, raw=extrinsic, nonce=params.nonce, address=self.address, source=request.call)
