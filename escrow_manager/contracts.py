from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import requests
from eth_abi.packed import encode_packed
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import function_signature_to_4byte_selector, keccak
from web3 import Web3
from web3.exceptions import ContractCustomError, ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from .abi import ERC20_ABI, GRAPH_TALLY_COLLECTOR_ABI, PAYMENTS_ESCROW_ABI
from .errors import ConfirmationTimeout, InvalidSignerProof, TransactionReverted, TransientError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

GAS_MARGIN = 1.2
FALLBACK_GAS = 300_000
RECEIPT_TIMEOUT = 30
AUTHORIZE_TIMEOUT = 60
PROOF_TAG = "authorizeSignerProof"

RPC_RETRY = RetryPolicy(retry_on=(TransientError, requests.ConnectionError, requests.Timeout))


def error_selector(signature: str) -> str:
    return "0x" + function_signature_to_4byte_selector(signature).hex()


INVALID_SIGNER_PROOF = error_selector("AuthorizableInvalidSignerProof()")
INVALID_PROOF_DEADLINE = error_selector("AuthorizableInvalidSignerProofDeadline(uint256,uint256)")
SIGNER_ALREADY_AUTHORIZED = error_selector("AuthorizableSignerAlreadyAuthorized(address,address,bool)")


def revert_selector(exc: ContractLogicError) -> Optional[str]:
    data = getattr(exc, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = "0x" + bytes(data).hex()
    if not isinstance(data, str) or not data.startswith("0x") or len(data) < 10:
        return None
    return data[:10].lower()


def connect(rpc_url: str) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url))
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class TxStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    PENDING = "pending"
    DROPPED = "dropped"


@dataclass(frozen=True)
class TxOutcome:
    status: TxStatus
    block_number: Optional[int] = None


class EscrowContracts:
    """Payer-side calls against the GRT token, PaymentsEscrow and GraphTallyCollector."""

    def __init__(
        self,
        w3: Web3,
        payer: LocalAccount,
        token: str,
        escrow: str,
        collector: str,
        chain_id: int,
        retry_policy: RetryPolicy = RPC_RETRY,
        receipt_timeout: int = RECEIPT_TIMEOUT,
    ):
        self.w3 = w3
        self.account = payer
        self.chain_id = chain_id
        self.retry_policy = retry_policy
        self.receipt_timeout = receipt_timeout
        self.token = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        self.escrow = w3.eth.contract(address=Web3.to_checksum_address(escrow), abi=PAYMENTS_ESCROW_ABI)
        self.collector = w3.eth.contract(address=Web3.to_checksum_address(collector), abi=GRAPH_TALLY_COLLECTOR_ABI)

    @property
    def payer(self) -> str:
        return self.account.address

    def _read(self, fn):
        return self.retry_policy.call(fn.call)

    def _send(self, fn, label: str) -> str:
        try:
            gas = int(fn.estimate_gas({"from": self.payer}) * GAS_MARGIN)
        except ContractLogicError:
            raise
        except (Web3Exception, ValueError) as exc:
            logger.warning({"event": "gas_estimate_failed", "call": label, "error": str(exc), "gas": FALLBACK_GAS})
            gas = FALLBACK_GAS
        nonce = self.retry_policy.call(self.w3.eth.get_transaction_count, self.payer, "pending")
        tx = fn.build_transaction({
            "from": self.payer,
            "nonce": nonce,
            "chainId": self.chain_id,
            "gas": gas,
            "gasPrice": self.w3.eth.gas_price,
        })
        signed = self.account.sign_transaction(tx)
        tx_hash = Web3.to_hex(signed.hash)
        try:
            # resending the same signed bytes cannot double-spend the nonce
            self.retry_policy.call(self.w3.eth.send_raw_transaction, signed.raw_transaction)
        except ContractLogicError:
            raise
        except (Web3Exception, requests.RequestException, TransientError) as exc:
            # the node may have accepted it before failing, so the outcome is unknown
            logger.warning({"event": "tx_send_failed", "call": label, "tx": tx_hash, "error": str(exc)})
            raise ConfirmationTimeout(tx_hash) from exc
        logger.info({"event": "tx_sent", "call": label, "tx": tx_hash, "nonce": nonce, "gas": gas})
        return tx_hash

    def _wait(self, tx_hash: str, timeout: Optional[int] = None) -> int:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout or self.receipt_timeout)
        except (TimeExhausted, requests.RequestException) as exc:
            raise ConfirmationTimeout(tx_hash) from exc
        if receipt["status"] != 1:
            raise TransactionReverted(tx_hash, receipt.get("blockNumber"))
        return int(receipt["blockNumber"])

    def allowance(self) -> int:
        return int(self._read(self.token.functions.allowance(self.payer, self.escrow.address)))

    def token_balance(self) -> int:
        return int(self._read(self.token.functions.balanceOf(self.payer)))

    def approve(self, amount: int) -> str:
        tx_hash = self._send(self.token.functions.approve(self.escrow.address, int(amount)), "approve")
        self._wait(tx_hash)
        return tx_hash

    def deposit_many(self, deposits: Iterable[Tuple[str, int]]) -> int:
        """Deposit to every receiver in one multicall. Returns the block it landed in."""
        calls: List[bytes] = [
            Web3.to_bytes(hexstr=self.escrow.encode_abi(
                "deposit", args=[self.collector.address, Web3.to_checksum_address(receiver), int(amount)],
            ))
            for receiver, amount in deposits
        ]
        if not calls:
            raise ValueError("no deposits")
        tx_hash = self._send(self.escrow.functions.multicall(calls), "deposit_many")
        return self._wait(tx_hash)

    def transaction_status(self, tx_hash: str) -> TxOutcome:
        try:
            receipt = self.retry_policy.call(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            try:
                self.retry_policy.call(self.w3.eth.get_transaction, tx_hash)
            except TransactionNotFound:
                return TxOutcome(TxStatus.DROPPED)
            return TxOutcome(TxStatus.PENDING)
        block = int(receipt["blockNumber"])
        if receipt["status"] == 1:
            return TxOutcome(TxStatus.CONFIRMED, block)
        return TxOutcome(TxStatus.REVERTED, block)

    def signer_proof(self, signer: LocalAccount, deadline: int) -> bytes:
        """Signed keccak of encodePacked(chainId, collector, tag, deadline, payer)."""
        message = encode_packed(
            ["uint256", "address", "string", "uint256", "address"],
            [self.chain_id, self.collector.address, PROOF_TAG, deadline, self.payer],
        )
        signed = signer.sign_message(encode_defunct(primitive=keccak(message)))
        return bytes(signed.signature)

    def authorize_signer(self, signer: LocalAccount, deadline: int) -> bool:
        """Returns False when the collector already knows the signer."""
        proof = self.signer_proof(signer, deadline)
        fn = self.collector.functions.authorizeSigner(signer.address, deadline, proof)
        try:
            tx_hash = self._send(fn, "authorize_signer")
        except ContractCustomError as exc:
            selector = revert_selector(exc)
            if selector == SIGNER_ALREADY_AUTHORIZED:
                logger.info({"event": "signer_already_authorized", "signer": signer.address})
                return False
            if selector in (INVALID_SIGNER_PROOF, INVALID_PROOF_DEADLINE):
                raise InvalidSignerProof(f"{signer.address}: proof rejected ({selector})") from exc
            raise
        self._wait(tx_hash, AUTHORIZE_TIMEOUT)
        return True
