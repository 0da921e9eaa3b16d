"""Transaction submission.

:py:class:`TransactionSubmitter` is the engine's entry point. For each submission it

1. Validates the request before touching the network

2. Reserves a nonce, estimates the fee, has the signer sign and dispatches,
   retrying transient failures with a fresh nonce and fee

3. Follows the dispatched transaction to finality and collects its events

Example:

.. code-block:: python

    from web3 import AsyncWeb3, AsyncHTTPProvider
    from eth_account import Account

    from keypass_tx.config import EngineConfig
    from keypass_tx.evm.client import Web3ChainClient
    from keypass_tx.evm.hotwallet import HotWalletSigner
    from keypass_tx.submitter import TransactionSubmitter, SubmitOptions
    from keypass_tx.tx import TransactionRequest

    web3 = AsyncWeb3(AsyncHTTPProvider(json_rpc_url))
    client = Web3ChainClient(web3)
    signer = HotWalletSigner(Account.from_key(private_key))
    submitter = TransactionSubmitter(client, EngineConfig.for_evm())

    request = TransactionRequest(
        call={"to": receiver, "value": 10**18, "data": "0x"},
        address=signer.address,
        label="pay receiver",
    )
    result = await submitter.submit(request, signer)
    result.raise_for_status()

"""

import datetime
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from keypass_tx.classifier import ErrorClassifier
from keypass_tx.client import ChainClient, Submission
from keypass_tx.config import EngineConfig
from keypass_tx.confirmation import ConfirmationTracker
from keypass_tx.errors import ErrorCode, TransactionEngineError, ValidationFailure
from keypass_tx.events import EventExtractor
from keypass_tx.fee import FeeEstimate, FeeEstimator
from keypass_tx.nonce import NonceManager
from keypass_tx.progress import ProgressCallback, ProgressReporter, ProgressStage
from keypass_tx.retry import RetryCoordinator
from keypass_tx.signer import Signer, SigningParams
from keypass_tx.tx import PendingTransaction, SignedPayload, TransactionRequest, TransactionResult, TransactionStatus
from keypass_tx.utils import normalise_address, to_hex

logger = logging.getLogger(__name__)


#: Builds the request for one attempt, receives zero-based attempt number.
#: May be a coroutine function.
RequestBuilder = Callable[[int], TransactionRequest]


@dataclass(slots=True)
class SubmitOptions:
    """Per-submission settings."""

    #: Follow the transaction to finality before returning.
    #:
    #: If not set, a ``pending`` result is returned right after dispatch
    #: and :py:meth:`TransactionSubmitter.track` can be used later.
    #: The record stays in :py:attr:`TransactionSubmitter.pending` until it is
    #: tracked to a terminal status or :py:meth:`TransactionSubmitter.clear_pending` is called.
    wait_for_confirmation: bool = True

    on_progress: Optional[ProgressCallback] = None

    #: Override ``EngineConfig.max_retries``
    max_retries: Optional[int] = None

    #: Override ``EngineConfig.confirmation_timeout``
    confirmation_timeout: Optional[datetime.timedelta] = None


@dataclass(slots=True)
class _Dispatched:
    signed: SignedPayload
    submission: Submission
    fee: FeeEstimate


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class TransactionSubmitter:
    """Submit transactions and follow them to finality.

    One submitter per chain connection. Submissions for different accounts
    run independently. Submissions for the same account share the nonce cache.

    :param client:
        Chain adapter

    :param config:
        Engine settings. Library defaults if not given.
    """

    def __init__(
        self,
        client: ChainClient,
        config: Optional[EngineConfig] = None,
        nonce_manager: Optional[NonceManager] = None,
        fee_estimator: Optional[FeeEstimator] = None,
        tracker: Optional[ConfirmationTracker] = None,
        retry: Optional[RetryCoordinator] = None,
    ):
        self.client = client
        self.config = config or EngineConfig()
        self.classifier = ErrorClassifier.from_config(self.config)
        self.extractor = EventExtractor()
        self.nonce_manager = nonce_manager or NonceManager(client)
        self.fee_estimator = fee_estimator or FeeEstimator(client, self.config)
        self.tracker = tracker or ConfirmationTracker(client, self.config, self.extractor, self.classifier)
        self.retry = retry or RetryCoordinator(self.config, self.classifier)

        #: In-flight transactions by tx hash
        self.pending: Dict[str, PendingTransaction] = {}

    def __repr__(self):
        return f"<TransactionSubmitter {self.client} pending:{len(self.pending)}>"

    def validate_request(self, request: TransactionRequest, signer: Optional[Signer] = None):
        """Check a request before it touches the network.

        :raise ValidationFailure:
            On a malformed request
        """
        if not isinstance(request, TransactionRequest):
            raise ValidationFailure(f"Expected TransactionRequest, got {type(request)}")

        if request.call is None:
            raise ValidationFailure(f"{request} has no call")

        if not request.address or not self.client.validate_address(request.address):
            raise ValidationFailure(f"Invalid {self.client.family.value} address: {request.address!r}", code=ErrorCode.invalid_address)

        if signer is not None and normalise_address(signer.address) != normalise_address(request.address):
            raise ValidationFailure(f"Signer {signer.address} cannot sign for {request.address}", code=ErrorCode.invalid_address)

    async def estimate(self, request: TransactionRequest, address: Optional[str] = None) -> FeeEstimate:
        """Estimate fees without submitting.

        Never raises on node failures, see :py:class:`keypass_tx.fee.FeeEstimator`.
        """
        self.validate_request(request)
        return await self.fee_estimator.estimate(request, address or request.address)

    async def submit(self, request: TransactionRequest, signer: Signer, options: Optional[SubmitOptions] = None) -> TransactionResult:
        """Submit a transaction.

        Retryable dispatch failures are retried with a fresh nonce and fee
        for the same request.

        :return:
            Result with status ``confirmed``, ``failed`` or ``timeout``,
            or ``pending`` if not waiting for confirmation.

        :raise TransactionEngineError:
            If the transaction never got accepted by the node
        """
        return await self.submit_with_retry(lambda attempt: request, signer, options)

    async def submit_with_retry(self, build_request: RequestBuilder, signer: Signer, options: Optional[SubmitOptions] = None) -> TransactionResult:
        """Submit a transaction, rebuilding the request for each attempt.

        :param build_request:
            Called with the zero-based attempt number. May be async.

        :raise TransactionEngineError:
            If the transaction never got accepted by the node
        """
        if options is None:
            options = SubmitOptions()

        reporter = ProgressReporter(options.on_progress)
        reporter.report(ProgressStage.preparing, "Preparing transaction")

        async def attempt(i: int) -> tuple[TransactionRequest, _Dispatched]:
            request = await _maybe_await(build_request(i))
            self.validate_request(request, signer)
            dispatched = await self._dispatch(request, signer, reporter, watch=options.wait_for_confirmation)
            return request, dispatched

        try:
            (request, dispatched), retry_count = await self.retry.run(attempt, options.max_retries, label=f"Submitting from {signer.address}")
        except TransactionEngineError as e:
            reporter.report(ProgressStage.failed, e.user_message)
            raise

        tx_hash = to_hex(dispatched.submission.tx_hash)
        pending = PendingTransaction(tx_hash=tx_hash, retry_count=retry_count)
        self.pending[tx_hash] = pending

        logger.info("Dispatched %s as %s, nonce %d, retries %d", request, tx_hash, dispatched.signed.nonce, retry_count)

        if not options.wait_for_confirmation:
            return TransactionResult.from_pending(pending, fee=dispatched.fee.total_cost)

        reporter.report(ProgressStage.confirming, "Waiting for confirmation", tx_hash=tx_hash)

        try:
            await self.tracker.track(pending, dispatched.submission.updates, options.confirmation_timeout)
        finally:
            self.pending.pop(tx_hash, None)

        result = TransactionResult.from_pending(pending, fee=dispatched.fee.total_cost)
        self._report_result(reporter, result)
        return result

    async def submit_batch(
        self,
        builders: Sequence[Callable[[], Any]],
        signer: Signer,
        options: Optional[SubmitOptions] = None,
        label: str = "batch",
    ) -> TransactionResult:
        """Submit several calls as one all-or-nothing native batch.

        Every call is constructed before anything is sent. If any construction
        fails, the whole batch is rejected.

        :param builders:
            Callables returning chain specific calls. May be async.

        :raise ValidationFailure:
            If a call cannot be constructed or the chain has no native batching
        """
        if not builders:
            raise ValidationFailure("Cannot submit an empty batch")

        calls = []
        for idx, build in enumerate(builders):
            try:
                calls.append(await _maybe_await(build()))
            except TransactionEngineError:
                raise
            except Exception as e:
                raise ValidationFailure(f"Batch operation #{idx} could not be constructed: {e}") from e

        batch_call = await self.client.compose_batch(calls)
        request = TransactionRequest(call=batch_call, address=signer.address, label=f"{label} ({len(calls)} calls)")
        return await self.submit(request, signer, options)

    async def track(self, tx_hash: str, timeout: Optional[datetime.timedelta] = None) -> TransactionResult:
        """Follow an already dispatched transaction to finality.

        For transactions submitted with ``wait_for_confirmation=False``,
        or ones that timed out earlier.
        """
        tx_hash = to_hex(tx_hash)
        pending = self.pending.get(tx_hash)
        if pending is None:
            pending = PendingTransaction(tx_hash=tx_hash)
            self.pending[tx_hash] = pending

        try:
            await self.tracker.track(pending, None, timeout)
        finally:
            self.pending.pop(tx_hash, None)

        return TransactionResult.from_pending(pending)

    def get_pending(self, tx_hash: str) -> Optional[PendingTransaction]:
        return self.pending.get(to_hex(tx_hash))

    def get_transaction_status(self, tx_hash: str) -> Optional[TransactionStatus]:
        """Status of an in-flight transaction, ``None`` if not tracked."""
        pending = self.get_pending(tx_hash)
        return pending.status if pending else None

    @property
    def pending_transactions(self) -> List[PendingTransaction]:
        return list(self.pending.values())

    def clear_pending(self):
        """Forget in-flight records and cached nonces."""
        self.pending.clear()
        self.nonce_manager.reset()

    async def _dispatch(self, request: TransactionRequest, signer: Signer, reporter: ProgressReporter, watch: bool) -> _Dispatched:
        """Reserve a nonce, estimate, sign and send.

        The nonce is given back if we fail before the node accepted the transaction.
        """
        address = request.address
        nonce = await self.nonce_manager.reserve(address)
        try:
            reporter.report(ProgressStage.estimating, "Estimating fees")
            fee = await self.fee_estimator.estimate(request, address)

            extras = await self.client.get_signing_extras(request)
            signed = await signer.sign(request, SigningParams(nonce=nonce, fee=fee, extras=extras))

            reporter.report(ProgressStage.dispatching, "Sending transaction", tx_hash=signed.tx_hash)
            submission = await self.client.submit(signed, watch=watch)
        except BaseException:
            self.nonce_manager.release(address, nonce)
            raise

        self.nonce_manager.commit(address, nonce)
        return _Dispatched(signed=signed, submission=submission, fee=fee)

    def _report_result(self, reporter: ProgressReporter, result: TransactionResult):
        if result.status == TransactionStatus.confirmed:
            reporter.report(ProgressStage.done, f"Confirmed in block {result.block_number}", tx_hash=result.tx_hash)
        else:
            reporter.report(ProgressStage.failed, result.error.user_message if result.error else "Failed", tx_hash=result.tx_hash)
