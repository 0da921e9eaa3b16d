"""Nonce reservation.

The chain only knows about transactions that reached its pool. When we
dispatch several transactions from the same account back to back, the node's
"next nonce" answer lags behind, so we keep our own view of the next free nonce
and take whichever is higher.

A nonce whose transaction never reached the network is given back with
:py:meth:`NonceManager.release` and handed out again before any new one,
so the account's queue does not get stuck behind a hole.

All bookkeeping happens between awaits, so concurrent reservations in the same
event loop never hand out the same nonce.
"""

import bisect
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from keypass_tx.utils import normalise_address

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NonceRecord:
    """In-memory nonce state for one account."""

    address: str

    #: Next nonce we will hand out
    next_nonce: int

    #: Given back below ``next_nonce``, sorted, reissued lowest first
    released: List[int] = field(default_factory=list)


class NonceManager:
    """Hand out nonces per account.

    :param client:
        :py:class:`keypass_tx.client.ChainClient` used to read the account's
        pending-inclusive nonce.
    """

    def __init__(self, client):
        self.client = client
        self.records: Dict[str, NonceRecord] = {}

    def get_record(self, address: str) -> Optional[NonceRecord]:
        return self.records.get(normalise_address(address))

    async def reserve(self, address: str) -> int:
        """Reserve the next nonce for an account.

        Asks the chain every time, so that transactions sent from the same
        account by other software are picked up. Released nonces the chain
        has not moved past yet are reused first.

        :return:
            Nonce to sign with
        """
        key = normalise_address(address)
        chain_nonce = await self.client.get_next_nonce(address)

        # No awaits below this line
        record = self.records.get(key)
        if record is None:
            nonce = chain_nonce
            self.records[key] = NonceRecord(address=key, next_nonce=nonce + 1)
        else:
            # Used by someone else in the meantime
            del record.released[: bisect.bisect_left(record.released, chain_nonce)]
            if record.released:
                nonce = record.released.pop(0)
            else:
                nonce = max(chain_nonce, record.next_nonce)
                record.next_nonce = nonce + 1

        logger.debug("Reserved nonce %d for %s, chain reported %d", nonce, address, chain_nonce)
        return nonce

    def release(self, address: str, nonce: int) -> bool:
        """Give back a nonce whose transaction never reached the network.

        The most recent reservation is rolled back. An older one is kept aside
        and reissued by the next :py:meth:`reserve`, as later reservations
        may already be in flight.

        :return:
            True if the nonce was given back, False if it was not ours to release
        """
        record = self.get_record(address)
        if record is None or nonce >= record.next_nonce or nonce in record.released:
            logger.debug("Could not release nonce %d for %s, not reserved", nonce, address)
            return False

        if record.next_nonce == nonce + 1:
            record.next_nonce = nonce
            while record.released and record.released[-1] == record.next_nonce - 1:
                record.next_nonce = record.released.pop()
        else:
            bisect.insort(record.released, nonce)

        logger.debug("Released nonce %d for %s", nonce, address)
        return True

    def commit(self, address: str, nonce: int):
        """Mark a nonce as used by a dispatched transaction."""
        key = normalise_address(address)
        record = self.records.get(key)
        if record is None:
            self.records[key] = NonceRecord(address=key, next_nonce=nonce + 1)
            return

        if nonce in record.released:
            record.released.remove(nonce)
        if record.next_nonce <= nonce:
            record.next_nonce = nonce + 1

    def reset(self, address: Optional[str] = None):
        """Forget cached nonces.

        :param address:
            Forget only this account. All accounts if not given.
        """
        if address is None:
            self.records.clear()
        else:
            self.records.pop(normalise_address(address), None)
