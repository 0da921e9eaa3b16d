"""Transaction records and progress reporting."""

import pytest

from keypass_tx.errors import ConfirmationTimedOut, ErrorCode, TransactionFailed
from keypass_tx.progress import Progress, ProgressReporter, ProgressStage
from keypass_tx.tx import PendingTransaction, TransactionResult, TransactionStatus


TX_HASH = "0x" + "ab" * 32


def test_first_resolution_wins():
    """Poller and push stream racing: later resolutions are ignored."""
    pending = PendingTransaction(tx_hash=TX_HASH)
    assert pending.mark_in_block("0x01")
    assert pending.status == TransactionStatus.in_block

    assert pending.mark_confirmed(5, "0x05", ["event"])
    assert not pending.mark_failed(TransactionFailed("late failure"))
    assert not pending.mark_timeout(ConfirmationTimedOut("late timeout"))
    assert not pending.mark_in_block("0x06")

    assert pending.status == TransactionStatus.confirmed
    assert pending.block_number == 5
    assert pending.block_hash == "0x05"
    assert pending.error is None


def test_in_block_hash_replaced():
    pending = PendingTransaction(tx_hash=TX_HASH)
    assert pending.mark_in_block("0x01")
    assert not pending.mark_in_block("0x01")
    assert pending.mark_in_block("0x02")
    assert pending.block_hash == "0x02"


def test_failure_gets_hash():
    pending = PendingTransaction(tx_hash=TX_HASH)
    error = TransactionFailed("boom", code=ErrorCode.execution_failed, block_number=3, block_hash="0x03")
    assert pending.mark_failed(error)
    assert error.tx_hash == TX_HASH
    assert pending.block_hash == "0x03"
    # Only confirmed transactions carry a block number
    assert pending.block_number is None


def test_result_from_pending():
    pending = PendingTransaction(tx_hash=TX_HASH, retry_count=1)
    pending.mark_confirmed(5, "0x05", [], fee_paid=42)

    result = TransactionResult.from_pending(pending, fee=100)
    assert result.success
    assert result.fee == 42
    assert result.retry_count == 1
    assert result.timestamp.tzinfo is not None
    assert result.raise_for_status() is result


def test_result_estimated_fee():
    pending = PendingTransaction(tx_hash=TX_HASH)
    result = TransactionResult.from_pending(pending, fee=100)
    assert not result.success
    assert result.status == TransactionStatus.pending
    assert result.fee == 100
    # Still in flight is not an error
    result.raise_for_status()


def test_result_raise_for_status():
    pending = PendingTransaction(tx_hash=TX_HASH)
    pending.mark_timeout(ConfirmationTimedOut("slow"))
    result = TransactionResult.from_pending(pending)
    with pytest.raises(ConfirmationTimedOut) as exc_info:
        result.raise_for_status()
    assert exc_info.value.may_still_confirm
    assert exc_info.value.tx_hash == TX_HASH


def test_progress_monotonic():
    seen = []
    reporter = ProgressReporter(seen.append)
    assert reporter.report(ProgressStage.preparing, "a")
    assert reporter.report(ProgressStage.dispatching, "b")
    # Retry goes through estimation again
    assert not reporter.report(ProgressStage.estimating, "c")
    assert reporter.report(ProgressStage.done, "d", tx_hash=TX_HASH)

    assert [p.stage for p in seen] == [ProgressStage.preparing, ProgressStage.dispatching, ProgressStage.done]
    assert seen[2] == Progress(stage=ProgressStage.done, message="d", tx_hash=TX_HASH)
    assert seen[2].percent == 100


def test_progress_failed_caps_percent():
    assert ProgressStage.failed.percent == 100


def test_progress_without_callback():
    reporter = ProgressReporter()
    assert not reporter.report(ProgressStage.preparing, "a")
    assert reporter.last == ProgressStage.preparing
