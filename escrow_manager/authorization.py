from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List

from eth_account.signers.local import LocalAccount
from web3.exceptions import ContractLogicError

from .contracts import EscrowContracts
from .errors import AuthorizationError, ConfirmationTimeout, InvalidSignerProof, TransactionReverted
from .ledger import utcnow
from .poller import authorized_signers
from .subgraph import SubgraphClient

logger = logging.getLogger(__name__)

PROOF_HORIZON_SECONDS = 3600


class SignerState(str, Enum):
    UNAUTHORIZED = "unauthorized"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    FAILED = "failed"


class AuthorizationManager:
    """Makes sure every configured signer is authorized for the payer before funding starts."""

    def __init__(
        self,
        contracts: EscrowContracts,
        escrow_subgraph: SubgraphClient,
        signers: Iterable[LocalAccount],
        proof_deadline_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.contracts = contracts
        self.escrow_subgraph = escrow_subgraph
        self.signers: Dict[str, LocalAccount] = {s.address: s for s in signers}
        self.states: Dict[str, SignerState] = {a: SignerState.UNAUTHORIZED for a in self.signers}
        self.proof_deadline_seconds = min(proof_deadline_seconds, PROOF_HORIZON_SECONDS)
        self.clock = clock

    @property
    def ready(self) -> bool:
        return all(s is SignerState.AUTHORIZED for s in self.states.values())

    def ensure_authorized(self) -> Dict[str, SignerState]:
        authorized = authorized_signers(self.escrow_subgraph, self.contracts.payer)
        failed: List[str] = []
        for address, signer in self.signers.items():
            if address in authorized:
                self.states[address] = SignerState.AUTHORIZED
                logger.info({"event": "signer", "signer": address, "authorized": True})
                continue
            self.states[address] = SignerState.AUTHORIZING
            deadline = int(self.clock().timestamp()) + self.proof_deadline_seconds
            try:
                self.contracts.authorize_signer(signer, deadline)
            except (InvalidSignerProof, TransactionReverted, ConfirmationTimeout, ContractLogicError) as exc:
                self.states[address] = SignerState.FAILED
                failed.append(address)
                logger.error({"event": "signer_authorization_failed", "signer": address, "error": str(exc)})
                continue
            self.states[address] = SignerState.AUTHORIZED
            logger.info({"event": "signer_authorized", "signer": address, "deadline": deadline})
        if failed:
            raise AuthorizationError(failed)
        return dict(self.states)
