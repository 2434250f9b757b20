"""Batch bookkeeping records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from voicedesc.core.types import BatchStatus, ItemStatus


@dataclass
class BatchItemStatus:
    index: int
    item_id: str | None = None
    job_id: str | None = None
    status: ItemStatus = ItemStatus.PENDING
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "item_id": self.item_id,
            "job_id": self.job_id,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class BatchResult:
    """Per-item outcomes of a batch, always in input order.

    A batch never fails atomically: the roll-up status is derived from the
    item outcomes once every item has resolved.
    """

    batch_id: str
    items: list[BatchItemStatus] = field(default_factory=list)
    status: BatchStatus = BatchStatus.PROCESSING
    cancel_requested: bool = False

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def completed(self) -> int:
        return sum(1 for i in self.items if i.status == ItemStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if i.status == ItemStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(
            1
            for i in self.items
            if i.status in (ItemStatus.SKIPPED, ItemStatus.CANCELLED)
        )

    def roll_up(self) -> BatchStatus:
        """Final status once all items have resolved."""
        if self.cancel_requested and self.completed < self.total:
            return BatchStatus.CANCELLED
        if self.completed == self.total:
            return BatchStatus.COMPLETED
        if self.completed == 0:
            return BatchStatus.FAILED
        return BatchStatus.PARTIAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "items": [i.to_dict() for i in self.items],
        }
