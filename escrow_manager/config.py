from __future__ import annotations

import json
import os
import re
from typing import Dict, List, Optional

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

_KEY_RE = re.compile(r"0x[0-9a-fA-F]{64}")


def _checksum(v: str) -> str:
    if not isinstance(v, str) or not is_address(v):
        raise ValueError(f"not an address: {v!r}")
    return to_checksum_address(v)


def _key(v: SecretStr) -> SecretStr:
    if not _KEY_RE.fullmatch(v.get_secret_value()):
        raise ValueError("key must be 0x + 64 hex")
    return v


class KafkaConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    config: Dict[str, str] = Field(default_factory=dict, repr=False)
    receipts_topic: str = Field("gateway_queries", alias="realtime_topic")
    rollups_topic: Optional[str] = Field(None, alias="aggregated_topic")
    vouchers_topic: Optional[str] = Field("gateway_ravs", alias="ravs_topic")
    checkpoint_path: str = Field("escrow_ledger.json", alias="cache")
    receipts_cutoff_timestamp: Optional[int] = None


class Config(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chain_id: int = Field(..., alias="CHAIN_ID")
    rpc_url: SecretStr = Field(..., alias="RPC_URL")
    secret_key: SecretStr = Field(..., alias="SECRET_KEY")
    signers: List[SecretStr] = Field(default_factory=list, alias="SIGNERS")
    token_contract: str = Field(..., alias="GRT_CONTRACT")
    escrow_contract: str = Field(..., alias="ESCROW_CONTRACT")
    collector_contract: str = Field(..., alias="COLLECTOR_CONTRACT")
    network_subgraph: str = Field(..., alias="NETWORK_SUBGRAPH")
    escrow_subgraph: str = Field(..., alias="ESCROW_SUBGRAPH")
    query_auth: Optional[SecretStr] = Field(None, alias="QUERY_AUTH")
    graph_env: str = Field(..., alias="GRAPH_ENV")
    kafka: KafkaConfig = Field(default_factory=KafkaConfig, alias="KAFKA")
    window_days: int = Field(28, alias="WINDOW_DAYS", ge=1)
    update_interval_seconds: int = Field(300, alias="UPDATE_INTERVAL_SECONDS", ge=1)
    poll_interval_seconds: int = Field(120, alias="POLL_INTERVAL_SECONDS", ge=1)
    flush_interval_seconds: int = Field(30, alias="FLUSH_INTERVAL_SECONDS", ge=1)
    page_size: int = Field(500, alias="PAGE_SIZE", ge=1)
    min_debts: Dict[str, int] = Field(default_factory=dict, alias="DEBTS")
    grt_allowance: int = Field(100_000, alias="GRT_ALLOWANCE", ge=0)
    max_batch_deposit_grt: Optional[int] = Field(None, alias="MAX_BATCH_DEPOSIT_GRT", gt=0)
    authorize_signers: bool = Field(True, alias="AUTHORIZE_SIGNERS")
    proof_deadline_seconds: int = Field(60, alias="PROOF_DEADLINE_SECONDS", gt=0, le=3600)
    status_port: Optional[int] = Field(None, alias="STATUS_PORT")

    @field_validator("secret_key")
    @classmethod
    def _secret_key_hex(cls, v: SecretStr) -> SecretStr:
        return _key(v)

    @field_validator("signers")
    @classmethod
    def _signer_keys_hex(cls, v: List[SecretStr]) -> List[SecretStr]:
        return [_key(k) for k in v]

    @field_validator("token_contract", "escrow_contract", "collector_contract")
    @classmethod
    def _addr(cls, v: str) -> str:
        return _checksum(v)

    @field_validator("min_debts")
    @classmethod
    def _debt_receivers(cls, v: Dict[str, int]) -> Dict[str, int]:
        return {_checksum(receiver): int(grt) for receiver, grt in v.items()}


_ENV_KEYS = (
    "CHAIN_ID",
    "RPC_URL",
    "SECRET_KEY",
    "GRT_CONTRACT",
    "ESCROW_CONTRACT",
    "COLLECTOR_CONTRACT",
    "NETWORK_SUBGRAPH",
    "ESCROW_SUBGRAPH",
    "QUERY_AUTH",
    "GRAPH_ENV",
    "WINDOW_DAYS",
    "UPDATE_INTERVAL_SECONDS",
    "POLL_INTERVAL_SECONDS",
    "FLUSH_INTERVAL_SECONDS",
    "PAGE_SIZE",
    "GRT_ALLOWANCE",
    "MAX_BATCH_DEPOSIT_GRT",
    "AUTHORIZE_SIGNERS",
    "PROOF_DEADLINE_SECONDS",
    "STATUS_PORT",
)


def load_config(path: Optional[str] = None) -> Config:
    """Load from a JSON file, or from the environment when no path is given.

    In the environment, list and mapping fields (SIGNERS, DEBTS, KAFKA) are
    JSON-encoded strings.
    """
    if path:
        with open(path, "r", encoding="utf-8") as f:
            return Config.model_validate(json.load(f))

    env = {k: os.getenv(k) for k in _ENV_KEYS if os.getenv(k) not in (None, "")}
    for k in ("SIGNERS", "DEBTS", "KAFKA"):
        raw = os.getenv(k)
        if raw:
            env[k] = json.loads(raw)
    return Config.model_validate(env)
