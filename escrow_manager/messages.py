from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Tuple, Union

from eth_utils import is_address, to_checksum_address

from .amounts import grt_to_wei
from .errors import MalformedMessage
from .ledger import Position, day_of_ms


class TopicRole(str, Enum):
    RECEIPTS = "receipts"
    ROLLUPS = "rollups"
    VOUCHERS = "vouchers"


@dataclass(frozen=True)
class RawMessage:
    role: TopicRole
    key: Optional[bytes]
    value: Optional[bytes]
    timestamp_ms: Optional[int] = None
    position: Optional[Position] = None


@dataclass(frozen=True)
class ReceiptRecord:
    receiver: str
    amount: int
    day: date
    graph_env: str
    signer: Optional[str] = None
    legacy_scalar: bool = False


@dataclass(frozen=True)
class RollupEntry:
    signer: str
    receiver: str
    amount: int


@dataclass(frozen=True)
class RollupRecord:
    hour_ms: int
    day: date
    entries: Tuple[RollupEntry, ...]


@dataclass(frozen=True)
class VoucherRecord:
    signer: str
    receiver: str
    value: int
    day: Optional[date] = None


Record = Union[ReceiptRecord, RollupRecord, VoucherRecord]


def _address(v: Any, what: str) -> str:
    if not isinstance(v, str) or not is_address(v):
        raise MalformedMessage(f"bad {what} address: {v!r}")
    return to_checksum_address(v)


def _fee(v: Any) -> int:
    if isinstance(v, bool) or not isinstance(v, (int, float, str)):
        raise MalformedMessage(f"bad fee: {v!r}")
    try:
        amount = grt_to_wei(v)
    except (InvalidOperation, ValueError, OverflowError) as exc:
        raise MalformedMessage(f"bad fee: {v!r}") from exc
    if amount < 0:
        raise MalformedMessage(f"negative fee: {v!r}")
    return amount


def _json(value: Optional[bytes]) -> dict:
    if not value:
        raise MalformedMessage("missing payload")
    try:
        payload = json.loads(value)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedMessage(f"payload is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedMessage("payload is not an object")
    return payload


def _timestamp(payload: dict) -> int:
    ts = payload.get("timestamp")
    if isinstance(ts, bool) or not isinstance(ts, int) or not 0 <= ts < 2 ** 44:
        raise MalformedMessage(f"bad timestamp: {ts!r}")
    return ts


def decode_receipt(value: Optional[bytes]) -> ReceiptRecord:
    payload = _json(value)
    signer = payload.get("signer")
    return ReceiptRecord(
        receiver=_address(payload.get("indexer"), "indexer"),
        amount=_fee(payload.get("fee")),
        day=day_of_ms(_timestamp(payload)),
        graph_env=str(payload.get("graph_env", "")),
        signer=_address(signer, "signer") if signer is not None else None,
        legacy_scalar=bool(payload.get("legacy_scalar", False)),
    )


def decode_rollup(value: Optional[bytes]) -> RollupRecord:
    payload = _json(value)
    hour_ms = _timestamp(payload)
    aggregations = payload.get("aggregations")
    if not isinstance(aggregations, list):
        raise MalformedMessage("missing aggregations")
    entries = []
    for agg in aggregations:
        if not isinstance(agg, dict):
            raise MalformedMessage(f"bad aggregation: {agg!r}")
        entries.append(RollupEntry(
            signer=_address(agg.get("signer"), "signer"),
            receiver=_address(agg.get("receiver"), "receiver"),
            amount=_fee(agg.get("fee_grt")),
        ))
    hour_ms -= hour_ms % 3_600_000
    return RollupRecord(hour_ms=hour_ms, day=day_of_ms(hour_ms), entries=tuple(entries))


def decode_voucher(key: Optional[bytes], value: Optional[bytes], timestamp_ms: Optional[int] = None) -> VoucherRecord:
    if not key:
        raise MalformedMessage("missing key")
    if not value:
        raise MalformedMessage("missing payload")
    key_text = key.decode("utf-8", errors="replace")
    signer, sep, receiver = key_text.partition(":")
    if not sep:
        raise MalformedMessage(f"malformed key: {key_text!r}")
    text = value.decode("utf-8", errors="replace").strip()
    try:
        amount = Decimal(text)
    except InvalidOperation as exc:
        raise MalformedMessage(f"voucher value is not a decimal: {text!r}") from exc
    if not amount.is_finite() or amount < 0 or amount != amount.to_integral_value():
        raise MalformedMessage(f"voucher value is not a non-negative integer: {text!r}")
    return VoucherRecord(
        signer=_address(signer, "signer"),
        receiver=_address(receiver, "receiver"),
        value=int(amount),
        day=day_of_ms(timestamp_ms) if timestamp_ms else None,
    )


def decode_message(raw: RawMessage) -> Record:
    """Resolve a raw message into its record type by topic role."""
    if raw.role is TopicRole.RECEIPTS:
        return decode_receipt(raw.value)
    if raw.role is TopicRole.ROLLUPS:
        return decode_rollup(raw.value)
    if raw.role is TopicRole.VOUCHERS:
        return decode_voucher(raw.key, raw.value, raw.timestamp_ms)
    raise MalformedMessage(f"unknown topic role {raw.role!r}")
