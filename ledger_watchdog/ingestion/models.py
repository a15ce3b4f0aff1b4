"""
Data models for ingestion output.

TransferEvent is the transient, normalized form of one qualifying token
instruction; SlotBlock is a block reduced to its signature list. Both are
plain dataclasses with to_dict() for logging and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

KIND_TRANSFER = "transfer"
KIND_TRANSFER_CHECKED = "transferChecked"


@dataclass(frozen=True)
class TransferEvent:
    """
    One transfer of the tracked mint extracted from a parsed transaction.

    raw_amount is the integer base-unit amount as a string (no precision loss);
    decimal_amount = raw_amount / 10 ** decimals.
    """

    signature: str
    slot: int
    block_time: int | None
    source: str | None
    destination: str | None
    raw_amount: str
    decimal_amount: Decimal
    decimals: int
    instruction_kind: str
    instruction_index: str = "0"
    record_key: str = ""
    """Sink key: the signature, or signature#instruction_index when all matches are emitted."""

    def __post_init__(self) -> None:
        if not self.record_key:
            object.__setattr__(self, "record_key", self.signature)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "block_time": self.block_time,
            "source": self.source,
            "destination": self.destination,
            "raw_amount": self.raw_amount,
            "amount": float(self.decimal_amount),
            "decimals": self.decimals,
            "type": self.instruction_kind,
            "instruction_index": self.instruction_index,
            "record_key": self.record_key,
        }


@dataclass(frozen=True)
class SlotBlock:
    """A block fetched with transactionDetails=signatures."""

    slot: int
    block_time: int | None
    signatures: tuple[str, ...] = field(default_factory=tuple)
    retries: int = 0
    """Retries spent fetching this block (0 when the first attempt succeeded)."""

    @classmethod
    def from_rpc(cls, slot: int, block: dict[str, Any], retries: int = 0) -> "SlotBlock":
        """Build from a getBlock result (signatures-only detail)."""
        sigs = block.get("signatures") or []
        return cls(
            slot=slot,
            block_time=block.get("blockTime"),
            signatures=tuple(s for s in sigs if isinstance(s, str) and s),
            retries=retries,
        )
