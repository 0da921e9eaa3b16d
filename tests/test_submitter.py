"""Transaction submission end to end against the in-memory chain."""

import asyncio
import datetime

import pytest

from keypass_tx.config import EngineConfig
from keypass_tx.errors import ErrorCategory, ErrorCode, RetriesExhausted, UserError, ValidationFailure
from keypass_tx.progress import ProgressStage
from keypass_tx.retry import RetryCoordinator
from keypass_tx.submitter import SubmitOptions, TransactionSubmitter
from keypass_tx.testing import MemoryChainClient, MemorySigner
from keypass_tx.tx import TransactionRequest, TransactionStatus


ALICE = "4o1wrD1mTt6ckP7aDWKNhe1MqeuSdXDKoWhzHm8suLrVENaN"

BOB = "4rDeMGr3Hi4NfxRUp8qVyhvgW3BSUBLneQisGa9ASkhh2sXB"


async def no_sleep(delay: float):
    pass


@pytest.fixture()
def config() -> EngineConfig:
    return EngineConfig.for_substrate(
        poll_interval=datetime.timedelta(milliseconds=10),
        confirmation_timeout=datetime.timedelta(seconds=5),
    )


@pytest.fixture()
def client() -> MemoryChainClient:
    return MemoryChainClient(auto_mine=True)


@pytest.fixture()
def submitter(client, config) -> TransactionSubmitter:
    return TransactionSubmitter(client, config, retry=RetryCoordinator(config, sleep=no_sleep))


@pytest.fixture()
def signer() -> MemorySigner:
    return MemorySigner(ALICE)


def make_request(label="did.create", address=ALICE) -> TransactionRequest:
    return TransactionRequest(call={"module": "Did", "function": "create"}, address=address, label=label)


@pytest.mark.asyncio
async def test_submit_confirmed(submitter, client, signer):
    client.nonces[ALICE.lower()] = 5
    progress = []

    result = await submitter.submit(make_request(), signer, SubmitOptions(on_progress=progress.append))

    assert result.success
    assert result.status == TransactionStatus.confirmed
    assert result.block_number == 1
    assert result.retry_count == 0
    assert result.error is None
    assert "system.ExtrinsicSuccess" in [e.type for e in result.events]
    assert result.fee == 252_000
    assert result.raise_for_status() is result

    # Chain said 5, we signed with 5 and cached 6
    assert signer.signed[0][1].nonce == 5
    assert submitter.nonce_manager.get_record(ALICE).next_nonce == 6

    assert [p.stage for p in progress] == [
        ProgressStage.preparing,
        ProgressStage.estimating,
        ProgressStage.dispatching,
        ProgressStage.confirming,
        ProgressStage.done,
    ]
    assert progress[-1].percent == 100

    # Nothing left in flight
    assert submitter.pending_transactions == []


@pytest.mark.asyncio
async def test_insufficient_funds_not_retried(submitter, client, signer):
    """Terminal dispatch error: exactly one attempt, nonce given back."""
    client.submit_errors.append(ValueError("1010: Invalid Transaction: Inability to pay some fees (e.g. account balance too low)"))
    progress = []

    with pytest.raises(UserError) as exc_info:
        await submitter.submit(make_request(), signer, SubmitOptions(on_progress=progress.append))

    assert exc_info.value.code == ErrorCode.insufficient_funds
    assert client.submit_calls == 1
    assert submitter.nonce_manager.get_record(ALICE).next_nonce == 0
    assert progress[-1].stage == ProgressStage.failed


@pytest.mark.asyncio
async def test_transient_failures_retried(submitter, client, signer):
    """Connection timeout twice, then success."""
    client.submit_errors.extend([ConnectionError("connection timeout"), ConnectionError("connection timeout")])

    result = await submitter.submit(make_request(), signer)

    assert result.success
    assert result.retry_count == 2
    assert client.submit_calls == 3
    # Every attempt got a fresh nonce reservation, rolled back on failure
    assert [params.nonce for _, params in signer.signed] == [0, 0, 0]


@pytest.mark.asyncio
async def test_retries_exhausted(submitter, client, signer):
    client.submit_errors.extend([ConnectionError("connection refused")] * 10)

    with pytest.raises(RetriesExhausted) as exc_info:
        await submitter.submit(make_request(), signer, SubmitOptions(max_retries=2))

    assert exc_info.value.attempts == 3
    assert client.submit_calls == 3


@pytest.mark.asyncio
async def test_no_redispatch_after_acceptance(submitter, client, signer):
    """Once the node accepted the transaction it is never sent again, even if confirmation times out."""
    client.auto_mine = False

    result = await submitter.submit(make_request(), signer, SubmitOptions(confirmation_timeout=datetime.timedelta(milliseconds=100)))

    assert result.status == TransactionStatus.timeout
    assert not result.success
    assert result.error.may_still_confirm
    assert client.submit_calls == 1
    assert len(client.submitted) == 1


@pytest.mark.asyncio
async def test_dropped(submitter, client, signer):
    client.auto_mine = False

    async def drop_later():
        await asyncio.sleep(0.05)
        client.drop(client.submitted[0].tx_hash)

    dropper = asyncio.create_task(drop_later())
    result = await submitter.submit(make_request(), signer)
    await dropper

    assert result.status == TransactionStatus.failed
    assert "not found in recent blocks" in result.error.message
    with pytest.raises(Exception):
        result.raise_for_status()


class PrunedEventsClient(MemoryChainClient):
    """Node that includes transactions but cannot return block events."""

    async def get_block_log(self, block):
        raise ValueError("Event storage for block is pruned")


@pytest.mark.asyncio
async def test_tracking_error_after_dispatch_is_classified(config, signer):
    """A broken read after dispatch resolves the result, it does not escape as a raw exception."""
    client = PrunedEventsClient(auto_mine=True)
    submitter = TransactionSubmitter(client, config)

    result = await submitter.submit(make_request(), signer)

    assert result.status == TransactionStatus.failed
    assert not result.success
    assert result.tx_hash == client.submitted[0].tx_hash
    assert result.error.tx_hash == result.tx_hash
    assert result.error.category == ErrorCategory.unknown
    assert isinstance(result.error.__cause__, ValueError)
    assert client.submit_calls == 1
    assert submitter.get_pending(result.tx_hash) is None


@pytest.mark.asyncio
async def test_submit_without_waiting_then_track(submitter, client, signer):
    client.auto_mine = False

    result = await submitter.submit(make_request(), signer, SubmitOptions(wait_for_confirmation=False))
    assert result.status == TransactionStatus.pending
    assert not result.success
    assert submitter.get_transaction_status(result.tx_hash) == TransactionStatus.pending

    client.produce_block()
    tracked = await submitter.track(result.tx_hash)
    assert tracked.status == TransactionStatus.confirmed
    assert tracked.block_number == 1
    assert submitter.get_pending(result.tx_hash) is None


@pytest.mark.asyncio
async def test_concurrent_submissions_same_account(submitter, client, signer):
    """Parallel submissions from one account use distinct nonces."""
    client.auto_mine = False

    results = await asyncio.gather(*[submitter.submit(make_request(label=f"tx {i}"), signer, SubmitOptions(wait_for_confirmation=False)) for i in range(5)])

    nonces = sorted(p.nonce for p in client.submitted)
    assert nonces == [0, 1, 2, 3, 4]
    assert len({r.tx_hash for r in results}) == 5
    assert len(submitter.pending_transactions) == 5

    submitter.clear_pending()
    assert submitter.pending_transactions == []
    assert submitter.nonce_manager.get_record(ALICE) is None


@pytest.mark.asyncio
async def test_validation_before_network(submitter, client, signer):
    with pytest.raises(ValidationFailure):
        await submitter.submit(make_request(address="not an address"), MemorySigner("not an address"))

    with pytest.raises(ValidationFailure) as exc_info:
        await submitter.submit(make_request(address=BOB), signer)
    assert exc_info.value.code == ErrorCode.invalid_address

    assert client.submit_calls == 0
    assert submitter.nonce_manager.records == {}


@pytest.mark.asyncio
async def test_signer_rejects(submitter, client):
    with pytest.raises(UserError) as exc_info:
        await submitter.submit(make_request(), MemorySigner(ALICE, reject=True))
    assert exc_info.value.code == ErrorCode.user_rejected
    assert client.submit_calls == 0
    assert submitter.nonce_manager.get_record(ALICE).next_nonce == 0


@pytest.mark.asyncio
async def test_submit_with_retry_rebuilds_request(submitter, client, signer):
    client.submit_errors.append(ConnectionError("socket hang up"))
    built = []

    def build(attempt: int) -> TransactionRequest:
        built.append(attempt)
        return make_request(label=f"attempt {attempt}")

    result = await submitter.submit_with_retry(build, signer)
    assert built == [0, 1]
    assert result.success
    assert signer.signed[-1][0].label == "attempt 1"


@pytest.mark.asyncio
async def test_fee_fallback_does_not_block_submission(submitter, client, signer):
    client.fee_error = ValueError("rpc method not found")
    result = await submitter.submit(make_request(), signer)
    assert result.success
    assert signer.signed[0][1].fee.price_fields == {"tip": 0}


@pytest.mark.asyncio
async def test_estimate(submitter):
    estimate = await submitter.estimate(make_request())
    assert estimate.compute_limit == 25_200


@pytest.mark.asyncio
async def test_batch(submitter, client, signer):
    result = await submitter.submit_batch([lambda: "call-1", lambda: "call-2"], signer)
    assert result.success
    assert client.submitted[0].raw == {"batch_all": ["call-1", "call-2"]}


@pytest.mark.asyncio
async def test_batch_construction_failure(submitter, client, signer):
    """One bad operation rejects the whole batch before anything is sent."""

    def broken():
        raise KeyError("unknown operation")

    with pytest.raises(ValidationFailure) as exc_info:
        await submitter.submit_batch([lambda: "call-1", broken], signer)

    assert "#1" in str(exc_info.value)
    assert client.submit_calls == 0
    assert submitter.nonce_manager.records == {}


@pytest.mark.asyncio
async def test_batch_not_supported(config, signer):
    client = MemoryChainClient(batching=False)
    submitter = TransactionSubmitter(client, config)
    with pytest.raises(ValidationFailure):
        await submitter.submit_batch([lambda: "call-1"], signer)


@pytest.mark.asyncio
async def test_progress_callback_failure_is_ignored(submitter, signer):
    def broken(progress):
        raise RuntimeError("UI went away")

    result = await submitter.submit(make_request(), signer, SubmitOptions(on_progress=broken))
    assert result.success
