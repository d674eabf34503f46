from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests
from eth_abi import decode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address
from web3 import Web3
from web3.exceptions import ContractCustomError, ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError

from escrow_manager.contracts import (
    AUTHORIZE_TIMEOUT,
    FALLBACK_GAS,
    INVALID_PROOF_DEADLINE,
    INVALID_SIGNER_PROOF,
    SIGNER_ALREADY_AUTHORIZED,
    EscrowContracts,
    TxOutcome,
    TxStatus,
    revert_selector,
)
from escrow_manager.errors import ConfirmationTimeout, InvalidSignerProof, TransactionReverted
from escrow_manager.retry import RetryPolicy

from fakes import COLLECTOR, ESCROW, RECEIVER_A, RECEIVER_B, TOKEN

TX = "0x" + "ab" * 32
CHAIN_ID = 1337


@pytest.fixture
def contracts(payer):
    return EscrowContracts(Web3(), payer, TOKEN, ESCROW, COLLECTOR, chain_id=CHAIN_ID)


def test_signer_proof_is_signed_over_packed_statement(contracts, payer, signer):
    deadline = 1_800_000_000
    proof = contracts.signer_proof(signer, deadline)

    statement = (
        CHAIN_ID.to_bytes(32, "big")
        + bytes.fromhex(COLLECTOR[2:])
        + b"authorizeSignerProof"
        + deadline.to_bytes(32, "big")
        + bytes.fromhex(payer.address[2:])
    )
    recovered = Account.recover_message(encode_defunct(primitive=keccak(statement)), signature=proof)
    assert recovered == signer.address
    assert len(proof) == 65


def test_proof_changes_with_deadline(contracts, signer):
    assert contracts.signer_proof(signer, 100) != contracts.signer_proof(signer, 101)


def test_deposits_go_out_as_one_multicall(contracts):
    contracts._send = Mock(return_value=TX)
    contracts._wait = Mock(return_value=4242)

    assert contracts.deposit_many([(RECEIVER_A, 5), (RECEIVER_B.lower(), 7)]) == 4242

    fn, label = contracts._send.call_args[0]
    assert label == "deposit_many"
    selector = function_signature_to_4byte_selector("deposit(address,address,uint256)")
    decoded = []
    for call in fn.args[0]:
        assert call[:4] == selector
        collector, receiver, amount = decode(["address", "address", "uint256"], call[4:])
        decoded.append((to_checksum_address(collector), to_checksum_address(receiver), amount))
    assert decoded == [(COLLECTOR, RECEIVER_A, 5), (COLLECTOR, RECEIVER_B, 7)]


def test_empty_batch_is_refused(contracts):
    with pytest.raises(ValueError):
        contracts.deposit_many([])


def test_reverted_receipt_raises(contracts):
    contracts._send = Mock(return_value=TX)
    contracts.w3 = Mock()
    contracts.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 9}

    with pytest.raises(TransactionReverted) as info:
        contracts.deposit_many([(RECEIVER_A, 5)])

    assert info.value.tx_hash == TX
    assert info.value.block_number == 9


def test_confirmation_timeout_keeps_tx_hash(contracts):
    contracts._send = Mock(return_value=TX)
    contracts.w3 = Mock()
    contracts.w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt")

    with pytest.raises(ConfirmationTimeout) as info:
        contracts.deposit_many([(RECEIVER_A, 5)])

    assert info.value.tx_hash == TX


def _signing_mocks(contracts):
    contracts.w3 = Mock()
    contracts.w3.eth.get_transaction_count.return_value = 5
    contracts.w3.eth.gas_price = 10
    contracts.w3.eth.send_raw_transaction.return_value = bytes.fromhex("12" * 32)
    contracts.account = Mock(address=RECEIVER_A)
    contracts.account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"raw", hash=bytes.fromhex("12" * 32))
    fn = Mock()
    fn.build_transaction.side_effect = lambda params: dict(params)
    return fn


def test_send_adds_gas_margin_and_signs_locally(contracts):
    fn = _signing_mocks(contracts)
    fn.estimate_gas.return_value = 100_000

    assert contracts._send(fn, "approve") == "0x" + "12" * 32

    params = fn.build_transaction.call_args[0][0]
    assert params["gas"] == 120_000
    assert params["nonce"] == 5
    assert params["chainId"] == CHAIN_ID
    contracts.w3.eth.send_raw_transaction.assert_called_once_with(b"raw")


def test_send_falls_back_to_fixed_gas(contracts):
    fn = _signing_mocks(contracts)
    fn.estimate_gas.side_effect = ValueError("node refused")

    contracts._send(fn, "approve")

    assert fn.build_transaction.call_args[0][0]["gas"] == FALLBACK_GAS


def test_send_does_not_submit_a_call_that_would_revert(contracts):
    fn = _signing_mocks(contracts)
    fn.estimate_gas.side_effect = ContractLogicError("execution reverted")

    with pytest.raises(ContractLogicError):
        contracts._send(fn, "deposit_many")
    contracts.w3.eth.send_raw_transaction.assert_not_called()


def test_failed_send_keeps_the_signed_hash(contracts):
    fn = _signing_mocks(contracts)
    fn.estimate_gas.return_value = 100_000
    contracts.retry_policy = RetryPolicy(initial_delay=0, max_delay=0, retry_on=(requests.Timeout,))
    contracts.w3.eth.send_raw_transaction.side_effect = requests.Timeout("read timed out")

    with pytest.raises(ConfirmationTimeout) as info:
        contracts._send(fn, "deposit_many")

    assert info.value.tx_hash == "0x" + "12" * 32
    assert contracts.w3.eth.send_raw_transaction.call_count == 3


def test_rejected_resend_is_still_an_unknown_outcome(contracts):
    fn = _signing_mocks(contracts)
    fn.estimate_gas.return_value = 100_000
    contracts.w3.eth.send_raw_transaction.side_effect = Web3RPCError("already known")

    with pytest.raises(ConfirmationTimeout):
        contracts._send(fn, "deposit_many")


def test_transaction_status(contracts):
    contracts.w3 = Mock()
    eth = contracts.w3.eth

    eth.get_transaction_receipt.return_value = {"status": 1, "blockNumber": 70}
    assert contracts.transaction_status(TX) == TxOutcome(TxStatus.CONFIRMED, 70)

    eth.get_transaction_receipt.return_value = {"status": 0, "blockNumber": 71}
    assert contracts.transaction_status(TX).status is TxStatus.REVERTED

    eth.get_transaction_receipt.side_effect = TransactionNotFound("unknown")
    eth.get_transaction.return_value = {"hash": TX}
    assert contracts.transaction_status(TX).status is TxStatus.PENDING

    eth.get_transaction.side_effect = TransactionNotFound("unknown")
    assert contracts.transaction_status(TX).status is TxStatus.DROPPED


def _custom_error(selector):
    return ContractCustomError(selector, data=selector + "00" * 96)


def test_already_authorized_signer_is_a_no_op(contracts, signer):
    contracts._send = Mock(side_effect=_custom_error(SIGNER_ALREADY_AUTHORIZED))

    assert contracts.authorize_signer(signer, 100) is False


@pytest.mark.parametrize("selector", [INVALID_SIGNER_PROOF, INVALID_PROOF_DEADLINE])
def test_rejected_proof_is_distinct(contracts, signer, selector):
    contracts._send = Mock(side_effect=_custom_error(selector))

    with pytest.raises(InvalidSignerProof):
        contracts.authorize_signer(signer, 100)


def test_unknown_custom_error_propagates(contracts, signer):
    contracts._send = Mock(side_effect=_custom_error("0xdeadbeef"))

    with pytest.raises(ContractCustomError):
        contracts.authorize_signer(signer, 100)


def test_authorize_signer_waits_for_receipt(contracts, signer):
    contracts._send = Mock(return_value=TX)
    contracts._wait = Mock(return_value=88)

    assert contracts.authorize_signer(signer, 100) is True
    contracts._wait.assert_called_once_with(TX, AUTHORIZE_TIMEOUT)


def test_revert_selector_reads_hex_or_bytes():
    assert revert_selector(ContractCustomError("x", data="0xABCDEF0102")) == "0xabcdef01"
    assert revert_selector(ContractCustomError("x", data=bytes.fromhex("abcdef0102"))) == "0xabcdef01"
    assert revert_selector(ContractCustomError("x", data=None)) is None
