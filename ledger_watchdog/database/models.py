"""
Domain models for database entities.

Transfer records and per-source ingestion cursors. Plain dataclasses used by
both backends; no ORM coupling so backends stay swappable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

STATUS_CONFIRMED = "confirmed"


@dataclass
class TransferRecord:
    """Stored transfer of the tracked mint, keyed by signature."""

    signature: str
    timestamp: int
    """Unix block time (seconds)."""
    slot: int
    source: str
    destination: str
    amount: Decimal
    """Human units; stored as text to avoid precision loss."""
    raw_amount: str = ""
    mint: str = ""
    status: str = STATUS_CONFIRMED
    risk_score: float = 0.0
    labels: list[str] = field(default_factory=list)
    hints: list[str] = field(default_factory=list)
    created_at: int | None = None
    updated_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "timestamp": self.timestamp,
            "slot": self.slot,
            "status": self.status,
            "source": self.source,
            "destination": self.destination,
            "amount": str(self.amount),
            "raw_amount": self.raw_amount,
            "mint": self.mint,
            "risk_score": self.risk_score,
            "labels": list(self.labels),
            "hints": list(self.hints),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class IngestionCursor:
    """Resume point for one ingestion source."""

    source: str
    last_slot: int
    """Last fully scanned slot; never decreases."""
    last_signature: str | None = None
    last_run_at: int | None = None
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "last_slot": self.last_slot,
            "last_signature": self.last_signature,
            "last_run_at": self.last_run_at,
            "active": self.active,
        }
