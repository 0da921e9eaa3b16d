"""EVM adapter against an in-process eth-tester chain."""

import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError
from web3.providers.eth_tester import AsyncEthereumTesterProvider

from keypass_tx.config import EngineConfig
from keypass_tx.errors import ValidationFailure
from keypass_tx.evm.client import Web3ChainClient
from keypass_tx.evm.gas import GasPriceMethod, GasPriceSuggestion, apply_gas, estimate_gas_price
from keypass_tx.evm.hotwallet import HotWalletSigner
from keypass_tx.evm.revert_reason import fetch_transaction_revert_reason
from keypass_tx.fee import FeeConfidence
from keypass_tx.submitter import SubmitOptions, TransactionSubmitter
from keypass_tx.tx import TransactionRequest, TransactionStatus
from keypass_tx.utils import to_hex


@pytest.fixture()
def web3() -> AsyncWeb3:
    """Auto-mining test chain with funded unlocked accounts."""
    return AsyncWeb3(AsyncEthereumTesterProvider())


@pytest.fixture()
def config() -> EngineConfig:
    return EngineConfig.for_evm(
        required_confirmations=1,
        poll_interval=datetime.timedelta(milliseconds=10),
        confirmation_timeout=datetime.timedelta(seconds=10),
    )


@pytest.fixture()
def receiver() -> str:
    return Account.create().address


@pytest.mark.asyncio
async def test_send_value(web3, config, receiver):
    """Sign, dispatch and confirm an ETH transfer."""
    signer = await HotWalletSigner.create_for_testing(web3)
    client = Web3ChainClient(web3)
    submitter = TransactionSubmitter(client, config)

    request = TransactionRequest(
        call={"to": receiver, "value": 10**18, "data": "0x"},
        address=signer.address,
        label="pay receiver",
    )

    result = await submitter.submit(request, signer)

    assert result.success, f"Failed: {result.error}"
    assert result.status == TransactionStatus.confirmed
    assert result.block_number > 0
    assert result.tx_hash.startswith("0x")
    assert result.fee > 0
    assert result.retry_count == 0

    assert await web3.eth.get_balance(receiver) == 10**18
    assert await web3.eth.get_transaction_count(signer.address) == 1


@pytest.mark.asyncio
async def test_back_to_back_nonces(web3, config, receiver):
    """Several transfers from one account without waiting in between."""
    signer = await HotWalletSigner.create_for_testing(web3)
    client = Web3ChainClient(web3)
    submitter = TransactionSubmitter(client, config)

    results = []
    for i in range(3):
        request = TransactionRequest(call={"to": receiver, "value": 1 + i}, address=signer.address, label=f"transfer {i}")
        results.append(await submitter.submit(request, signer, SubmitOptions(wait_for_confirmation=False)))

    for result in results:
        tracked = await submitter.track(result.tx_hash)
        assert tracked.status == TransactionStatus.confirmed

    assert await web3.eth.get_transaction_count(signer.address) == 3
    assert await web3.eth.get_balance(receiver) == 1 + 2 + 3


@pytest.mark.asyncio
async def test_estimate_fee(web3, config, receiver):
    signer = await HotWalletSigner.create_for_testing(web3)
    submitter = TransactionSubmitter(Web3ChainClient(web3), config)
    request = TransactionRequest(call={"to": receiver, "value": 1}, address=signer.address)

    estimate = await submitter.estimate(request)
    assert estimate.confidence == FeeConfidence.high
    # 21000 plain transfer padded by 20%
    assert estimate.compute_limit == 25_200
    assert "maxFeePerGas" in estimate.price_fields
    assert estimate.total_cost > 0


@pytest.mark.asyncio
async def test_checksum_and_lowercase_share_nonce(web3, config, receiver):
    signer = await HotWalletSigner.create_for_testing(web3)
    submitter = TransactionSubmitter(Web3ChainClient(web3), config)
    await submitter.nonce_manager.reserve(signer.address)
    assert await submitter.nonce_manager.reserve(signer.address.lower()) == 1


@pytest.mark.asyncio
async def test_block_reading(web3):
    client = Web3ChainClient(web3)
    funder = (await web3.eth.accounts)[0]
    tx_hash = await web3.eth.send_transaction({"from": funder, "to": funder, "value": 1})

    head = await client.get_block()
    assert head.number >= 1
    assert head.parent_hash is not None
    assert to_hex(tx_hash) in head.transactions

    genesis = await client.get_block(0)
    assert genesis.parent_hash is None

    inclusion = await client.find_transaction(to_hex(tx_hash))
    assert inclusion.success
    assert inclusion.block_number == head.number
    assert not await client.is_pending(to_hex(tx_hash))


@pytest.mark.asyncio
async def test_no_native_batching(web3):
    client = Web3ChainClient(web3)
    with pytest.raises(ValidationFailure):
        await client.compose_batch([{"to": "0x0000000000000000000000000000000000000000"}])


@pytest.mark.asyncio
async def test_gas_price_autodetect(web3):
    suggestion = await estimate_gas_price(web3)
    assert suggestion.method == GasPriceMethod.london
    assert suggestion.max_fee_per_gas >= suggestion.max_priority_fee_per_gas
    assert suggestion.get_max_unit_price() == suggestion.max_fee_per_gas


def test_validate_address():
    client = Web3ChainClient(None)
    assert client.validate_address("0x" + "ab" * 20)
    assert not client.validate_address("0x1234")
    assert not client.validate_address("4o1wrD1mTt6ckP7aDWKNhe1MqeuSdXDKoWhzHm8suLrVENaN")


def test_apply_legacy_gas():
    """Legacy pricing replaces EIP-1559 fields and drops the typed envelope."""
    tx = {"to": "0x0", "type": 2, "maxFeePerGas": 1, "maxPriorityFeePerGas": 1}
    apply_gas(tx, GasPriceSuggestion(method=GasPriceMethod.legacy, legacy_gas_price=5).get_tx_gas_params())
    assert tx == {"to": "0x0", "gasPrice": 5}


def test_apply_london_gas():
    tx = {"to": "0x0", "gasPrice": 5}
    apply_gas(tx, {"maxFeePerGas": 3, "maxPriorityFeePerGas": 1})
    assert tx == {"to": "0x0", "maxFeePerGas": 3, "maxPriorityFeePerGas": 1}


def make_replay_web3(call_error=None) -> SimpleNamespace:
    tx = {"to": "0x" + "01" * 20, "from": "0x" + "02" * 20, "value": 0, "input": "0x", "gas": 50_000, "blockNumber": 10}
    eth = SimpleNamespace(get_transaction=AsyncMock(return_value=tx), call=AsyncMock(side_effect=call_error))
    return SimpleNamespace(eth=eth)


@pytest.mark.asyncio
async def test_revert_reason_from_replay():
    web3 = make_replay_web3(ContractLogicError("execution reverted: Not enough allowance"))
    reason = await fetch_transaction_revert_reason(web3, "0x" + "ab" * 32)
    assert reason == "execution reverted: Not enough allowance"


@pytest.mark.asyncio
async def test_revert_reason_archive_node():
    web3 = make_replay_web3(ValueError({"code": 3, "message": "execution reverted: paused"}))
    reason = await fetch_transaction_revert_reason(web3, "0x" + "ab" * 32, use_archive_node=True)
    assert reason == "execution reverted: paused"
    # Replayed against the state before inclusion
    assert web3.eth.call.call_args.args[1] == 9


@pytest.mark.asyncio
async def test_revert_reason_not_reverting():
    web3 = make_replay_web3()
    reason = await fetch_transaction_revert_reason(web3, "0x" + "ab" * 32, unknown_error_message="unknown")
    assert reason == "unknown"
