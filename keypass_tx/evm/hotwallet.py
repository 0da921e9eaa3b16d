"""Hot wallet signer for EVM chains.

Signs with a private key held in the process memory.
"""

import logging
import secrets

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3

from keypass_tx.evm.gas import apply_gas
from keypass_tx.signer import Signer, SigningParams
from keypass_tx.tx import SignedPayload, TransactionRequest
from keypass_tx.utils import to_hex

logger = logging.getLogger(__name__)


def get_tx_broadcast_data(signed_tx) -> bytes:
    """Raw transaction bytes.

    eth_account renamed ``rawTransaction`` to ``raw_transaction``.
    """
    raw = getattr(signed_tx, "raw_transaction", None)
    if raw is None:
        raw = signed_tx.rawTransaction
    return raw


class HotWalletSigner(Signer):
    """Sign EVM transactions with a local private key.

    The engine decides nonce and gas, this only fills them in and signs.

    Example:

    .. code-block:: python

        signer = HotWalletSigner.from_private_key(os.environ["PRIVATE_KEY"])
    """

    def __init__(self, account: LocalAccount):
        assert isinstance(account, LocalAccount), f"Expected LocalAccount, got {type(account)}"
        self.account = account

    def __repr__(self):
        return f"<HotWalletSigner {self.account.address}>"

    @property
    def address(self) -> str:
        return self.account.address

    @classmethod
    def from_private_key(cls, key: str) -> "HotWalletSigner":
        """Create from a 0x prefixed hex private key."""
        assert key.startswith("0x"), "Private key must be 0x prefixed hex"
        return cls(Account.from_key(key))

    @classmethod
    async def create_for_testing(cls, web3: AsyncWeb3, eth_amount: int = 10) -> "HotWalletSigner":
        """Create a random account funded from the node's first test account.

        Only works on test nodes with unlocked accounts.
        """
        signer = cls(Account.from_key("0x" + secrets.token_hex(32)))
        funder = (await web3.eth.accounts)[0]
        tx_hash = await web3.eth.send_transaction({"from": funder, "to": signer.address, "value": eth_amount * 10**18})
        await web3.eth.wait_for_transaction_receipt(tx_hash)
        return signer

    async def sign(self, request: TransactionRequest, params: SigningParams) -> SignedPayload:
        tx = dict(request.call)
        tx.pop("from", None)
        tx["nonce"] = params.nonce
        tx["gas"] = params.fee.compute_limit
        apply_gas(tx, params.fee.price_fields)
        if "chainId" not in tx and "chainId" in params.extras:
            tx["chainId"] = params.extras["chainId"]

        signed = self.account.sign_transaction(tx)
        tx_hash = to_hex(signed.hash)
        logger.debug("Signed %s as %s with nonce %d", request, tx_hash, params.nonce)
        return SignedPayload(
            tx_hash=tx_hash,
            raw=get_tx_broadcast_data(signed),
            nonce=params.nonce,
            address=self.account.address,
            source=tx,
        )
