from __future__ import annotations

from typing import Iterable, Optional


class EscrowManagerError(Exception):
    pass


class TransientError(EscrowManagerError):
    """Network, broker or RPC failure that is safe to retry."""


class SubgraphError(TransientError):
    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []

    @property
    def is_missing_block(self) -> bool:
        return "missing block" in str(self).lower()


class MalformedMessage(EscrowManagerError):
    pass


class CheckpointError(EscrowManagerError):
    pass


class InsufficientAllowance(EscrowManagerError):
    def __init__(self, allowance: int, required: int):
        super().__init__(f"allowance {allowance} below required {required}")
        self.allowance = allowance
        self.required = required


class AuthorizationError(EscrowManagerError):
    def __init__(self, failed: Iterable[str]):
        self.failed = sorted(failed)
        super().__init__(f"signers not authorized: {', '.join(self.failed)}")


class InvalidSignerProof(EscrowManagerError):
    """The collector rejected a signer proof as invalid or expired."""


class TransactionReverted(EscrowManagerError):
    def __init__(self, tx_hash: str, block_number: Optional[int] = None):
        super().__init__(f"transaction {tx_hash} reverted")
        self.tx_hash = tx_hash
        self.block_number = block_number


class ConfirmationTimeout(EscrowManagerError):
    """Submitted, but no receipt before the timeout. Outcome unknown."""

    def __init__(self, tx_hash: str):
        super().__init__(f"no receipt for {tx_hash}")
        self.tx_hash = tx_hash
