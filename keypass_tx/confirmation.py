"""Transaction confirmation tracking.

A dispatched transaction is followed until it is final, fails or we run out of time.

Two sources race to resolve it:

- Push updates from a submit-and-watch subscription, where the chain client provides one

- A poller that runs regardless, because push subscriptions get silently dropped by
  load balancers and node restarts

The poller first asks the chain for the transaction directly (EVM receipts).
Chains without a transaction index are checked through the pending pool and,
once the transaction has left the pool, a look at the blocks above the finalized
head followed by a bounded backward walk from the finalized head.

Whoever resolves first wins, see :py:class:`keypass_tx.tx.PendingTransaction`.
"""

import asyncio
import datetime
import logging
from typing import AsyncIterator, Optional

from keypass_tx.classifier import ErrorClassifier
from keypass_tx.client import ChainBlock, ChainClient, ConfirmationModel, Inclusion, StatusUpdate, StatusUpdateKind
from keypass_tx.config import EngineConfig
from keypass_tx.errors import ConfirmationTimedOut, ErrorCode, TransactionFailed
from keypass_tx.events import EventExtractor
from keypass_tx.tx import PendingTransaction

logger = logging.getLogger(__name__)


class ConfirmationTracker:
    """Follow transactions to finality.

    :param client:
        Chain to watch

    :param config:
        Poll interval, search window, timeout and confirmation count come from here
    """

    def __init__(
        self,
        client: ChainClient,
        config: EngineConfig,
        extractor: Optional[EventExtractor] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.client = client
        self.config = config
        self.extractor = extractor or EventExtractor()
        self.classifier = classifier or ErrorClassifier.from_config(config)

    async def track(
        self,
        pending: PendingTransaction,
        updates: Optional[AsyncIterator[StatusUpdate]] = None,
        timeout: datetime.timedelta | float | None = None,
    ) -> PendingTransaction:
        """Wait until the transaction reaches a terminal status.

        On timeout the record is resolved as ``timeout``, which does not mean the
        transaction failed.

        Cancelling the caller cancels the poller and closes the push stream.

        :param pending:
            Record to resolve. Mutated in place.

        :param updates:
            Push stream from :py:meth:`keypass_tx.client.ChainClient.submit`

        :param timeout:
            Wall clock budget. Defaults to ``config.confirmation_timeout``.

        :return:
            The same record
        """
        if timeout is None:
            timeout = self.config.confirmation_timeout
        if isinstance(timeout, datetime.timedelta):
            timeout = timeout.total_seconds()

        if pending.is_terminal:
            return pending

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        waiter = asyncio.create_task(pending.wait_resolved())
        poller = asyncio.create_task(self._poll(pending))
        workers = [poller]
        if updates is not None:
            workers.append(asyncio.create_task(self._consume_updates(pending, updates)))

        watched = {waiter, *workers}

        logger.info("Tracking transaction %s, timeout %.1fs", pending.tx_hash, timeout)

        try:
            while not pending.is_terminal:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    pending.mark_timeout(
                        ConfirmationTimedOut(
                            f"Transaction {pending.tx_hash} was not confirmed within {timeout:.1f} seconds, last status {pending.status.name}",
                            tx_hash=pending.tx_hash,
                            block_hash=pending.block_hash,
                        )
                    )
                    break

                done, _ = await asyncio.wait(watched, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    watched.discard(task)
                    if task is waiter or task.cancelled() or task.exception() is None:
                        continue

                    error = task.exception()
                    if task is not poller:
                        logger.warning("Push updates for %s failed, continuing by polling: %s", pending.tx_hash, error)
                        continue

                    # Dispatched already: resolve the record rather than raise
                    wrapped = self.classifier.wrap(error, tx_hash=pending.tx_hash)
                    logger.error("Giving up tracking %s: %s", pending.tx_hash, wrapped)
                    pending.mark_failed(wrapped)
        finally:
            for task in [waiter, *workers]:
                task.cancel()
            await asyncio.gather(waiter, *workers, return_exceptions=True)
            if updates is not None and hasattr(updates, "aclose"):
                await updates.aclose()

        logger.info("Transaction %s resolved as %s", pending.tx_hash, pending.status.name)
        return pending

    async def is_final(self, block_number: int) -> bool:
        """Has the block at this height reached finality."""
        if self.client.confirmation_model == ConfirmationModel.finality:
            finalized_hash = await self.client.get_finalized_head()
            finalized = await self.client.get_block(finalized_hash)
            return block_number <= finalized.number
        else:
            head = await self.client.get_block()
            confirmations = head.number - block_number + 1
            logger.debug("Block %d has %d/%d confirmations", block_number, confirmations, self.config.required_confirmations)
            return confirmations >= self.config.required_confirmations

    async def search_unfinalized_blocks(self, tx_hash: str) -> tuple[Optional[ChainBlock], Optional[ChainBlock]]:
        """Check the blocks above the finalized head.

        A transaction that left the pool is usually sitting in one of these,
        waiting for finality. Visits at most ``config.search_window`` blocks.

        :return:
            Tuple (block containing the transaction, finalized head block).
            The finalized head is ``None`` if the walk did not reach it.
        """
        finalized_hash = await self.client.get_finalized_head()
        block = await self.client.get_block()
        for i in range(self.config.search_window):
            if block.hash == finalized_hash:
                return None, block
            if self.extractor.find_tx_index(block, tx_hash) is not None:
                logger.debug("Found %s in unfinalized block %d", tx_hash, block.number)
                return block, None
            if i == self.config.search_window - 1 or block.parent_hash is None:
                break
            block = await self.client.get_block(block.parent_hash)
        return None, None

    async def search_recent_blocks(self, tx_hash: str, start: Optional[ChainBlock] = None) -> Optional[ChainBlock]:
        """Walk back from the finalized head looking for the transaction.

        Visits at most ``config.search_window`` blocks.

        :param start:
            Finalized head block, if already fetched

        :return:
            Block containing the transaction, or ``None``
        """
        block = start
        if block is None:
            block = await self.client.get_block(await self.client.get_finalized_head())
        for i in range(self.config.search_window):
            if self.extractor.find_tx_index(block, tx_hash) is not None:
                logger.debug("Found %s in block %d", tx_hash, block.number)
                return block
            if i == self.config.search_window - 1 or block.parent_hash is None or block.number == 0:
                break
            block = await self.client.get_block(block.parent_hash)
        return None

    async def poll_once(self, pending: PendingTransaction):
        """One poll tick."""
        if pending.is_terminal:
            return

        tx_hash = pending.tx_hash

        inclusion = await self.client.find_transaction(tx_hash)
        if inclusion is not None:
            await self._resolve_inclusion(pending, inclusion)
            return

        if pending.block_hash is not None:
            block = await self.client.get_block(pending.block_hash)
            await self._resolve_block(pending, block)
            return

        if await self.client.is_pending(tx_hash):
            logger.debug("Transaction %s still in the pending pool", tx_hash)
            return

        block, finalized_head = await self.search_unfinalized_blocks(tx_hash)
        if block is None:
            block = await self.search_recent_blocks(tx_hash, start=finalized_head)
        if block is None:
            pending.mark_failed(
                TransactionFailed(
                    f"Transaction {tx_hash} not found in recent blocks - may have been dropped, searched {self.config.search_window} blocks",
                    code=ErrorCode.dropped,
                    tx_hash=tx_hash,
                )
            )
            return

        await self._resolve_block(pending, block)

    async def _poll(self, pending: PendingTransaction):
        interval = self.config.poll_interval.total_seconds()
        while not pending.is_terminal:
            try:
                await self.poll_once(pending)
            except Exception as e:
                if not self.classifier.classify(e).retryable:
                    raise
                logger.warning("Polling transaction %s failed, retrying next tick: %s", pending.tx_hash, e)

            if pending.is_terminal:
                break

            await asyncio.sleep(interval)

    async def _consume_updates(self, pending: PendingTransaction, updates: AsyncIterator[StatusUpdate]):
        async for update in updates:
            if pending.is_terminal:
                return

            logger.debug("Transaction %s push update %s %s", pending.tx_hash, update.kind.name, update.block_hash)

            match update.kind:
                case StatusUpdateKind.in_block:
                    pending.mark_in_block(update.block_hash)
                case StatusUpdateKind.finalized:
                    block = await self.client.get_block(update.block_hash)
                    await self._resolve_block(pending, block, final=True)
                case StatusUpdateKind.invalid:
                    pending.mark_failed(
                        TransactionFailed(
                            f"Transaction {pending.tx_hash} was declared invalid by the node",
                            code=ErrorCode.dropped,
                            tx_hash=pending.tx_hash,
                        )
                    )
                case _:
                    # dropped, usurped and retracted are left for the poller to confirm
                    pass

    async def _resolve_block(self, pending: PendingTransaction, block: ChainBlock, final: bool = False):
        """We know the block, advance the record as far as it goes."""
        if not final:
            final = await self.is_final(block.number)

        if not final:
            if pending.mark_in_block(block.hash):
                logger.info("Transaction %s included in block %d, waiting for finality", pending.tx_hash, block.number)
            return

        log = await self.client.get_block_log(block)
        events = self.extractor.extract(block, log, pending.tx_hash)
        failure = self.extractor.find_failure(events)
        if failure is not None:
            pending.mark_failed(
                TransactionFailed(
                    f"Transaction {pending.tx_hash} failed in block {block.number}: {failure.payload}",
                    code=ErrorCode.execution_failed,
                    tx_hash=pending.tx_hash,
                    block_number=block.number,
                    block_hash=block.hash,
                )
            )
            return

        pending.mark_confirmed(block.number, block.hash, events)

    async def _resolve_inclusion(self, pending: PendingTransaction, inclusion: Inclusion):
        """The chain told us where the transaction is."""
        if not inclusion.success:
            reason = inclusion.failure_reason
            if reason is None:
                try:
                    reason = await self.client.get_revert_reason(pending.tx_hash)
                except Exception as e:
                    logger.warning("Could not fetch revert reason for %s: %s", pending.tx_hash, e)
            pending.mark_failed(
                TransactionFailed(
                    f"Transaction {pending.tx_hash} reverted in block {inclusion.block_number}: {reason or '<unknown reason>'}",
                    code=ErrorCode.reverted,
                    tx_hash=pending.tx_hash,
                    block_number=inclusion.block_number,
                    block_hash=inclusion.block_hash,
                )
            )
            return

        if not await self.is_final(inclusion.block_number):
            pending.mark_in_block(inclusion.block_hash)
            return

        block = await self.client.get_block(inclusion.block_hash)
        log = await self.client.get_block_log(block)
        events = self.extractor.extract(block, log, pending.tx_hash)
        pending.mark_confirmed(block.number, block.hash, events, fee_paid=inclusion.fee_paid)
