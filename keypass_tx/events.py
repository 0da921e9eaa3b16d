"""Transaction event extraction.

Blocks carry events for all of their transactions in one list.
We find our transaction's position in the block and pick the events tied to it.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from keypass_tx.client import ChainBlock, LogEntry
from keypass_tx.utils import to_hex

logger = logging.getLogger(__name__)


#: Events that mean the transaction was included but its execution failed
FAILURE_EVENTS = frozenset({"system.ExtrinsicFailed"})


@dataclass(frozen=True, slots=True)
class ChainEvent:
    """Normalised event."""

    #: ``section.method``, e.g. ``did.DidCreated``
    type: str

    #: Pallet or contract address
    section: str

    #: Event name
    method: str

    #: Event arguments, keyed ``param0``, ``param1``...
    payload: dict = field(default_factory=dict)

    #: Position in the block's event list
    index: int = 0


def normalise_event(entry: LogEntry) -> ChainEvent:
    payload = {f"param{i}": value for i, value in enumerate(entry.data)}
    return ChainEvent(
        type=f"{entry.section}.{entry.method}",
        section=entry.section,
        method=entry.method,
        payload=payload,
        index=entry.index,
    )


class EventExtractor:
    """Pick a transaction's events out of a block log.

    Stateless, :py:meth:`extract` can be called any number of times
    for the same block with the same result.
    """

    def find_tx_index(self, block: ChainBlock, tx_hash: str) -> Optional[int]:
        """Position of the transaction in the block, or ``None``."""
        needle = to_hex(tx_hash)
        for idx, candidate in enumerate(block.transactions):
            if candidate is not None and to_hex(candidate) == needle:
                return idx
        return None

    def extract(self, block: ChainBlock, log: Iterable[LogEntry], tx_hash: str) -> List[ChainEvent]:
        """Events emitted by a transaction.

        :return:
            Events in block order. Empty if the transaction is not in the block.
        """
        tx_index = self.find_tx_index(block, tx_hash)
        if tx_index is None:
            logger.debug("Transaction %s not found in block %s, no events", tx_hash, block.hash)
            return []
        return [normalise_event(e) for e in log if e.tx_index == tx_index]

    @staticmethod
    def find_failure(events: Iterable[ChainEvent]) -> Optional[ChainEvent]:
        """Return the execution failure event, if any."""
        for e in events:
            if e.type in FAILURE_EVENTS:
                return e
        return None
