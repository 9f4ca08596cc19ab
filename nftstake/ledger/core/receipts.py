"""
Operation receipts.

Every stake/withdraw/exit/claim produces a receipt, confirmed or failed.
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, List
import time
import logging
from threading import RLock

logger = logging.getLogger(__name__)


@dataclass
class OperationReceipt:
    """
    Result of a single engine operation.

    Attributes:
        op_id: sha256 hex identifying the operation
        op_type: STAKE / WITHDRAW / EXIT / CLAIM
        staker: Caller address
        status: 'confirmed' or 'failed'
        units: Unit ids in caller order
        reward_paid: Reward transferred to the staker (exit/claim)
        timestamp: Operation time ("now" of the operation)
        error: Error class and message if the operation failed
    """
    op_id: str
    op_type: str
    staker: str
    status: str  # 'confirmed', 'failed'
    units: List[int] = field(default_factory=list)
    reward_paid: int = 0
    timestamp: int = 0
    error: Optional[str] = None

    def __post_init__(self):
        if self.timestamp == 0:
            self.timestamp = int(time.time())

    @property
    def ok(self) -> bool:
        return self.status == 'confirmed'

    def to_dict(self) -> dict:
        """Convert receipt to dictionary for API response."""
        return {
            "op_id": self.op_id,
            "op_type": self.op_type,
            "staker": self.staker,
            "status": self.status,
            "units": list(self.units),
            # Reward amounts exceed JSON-safe integers
            "reward_paid": str(self.reward_paid),
            "timestamp": self.timestamp,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'OperationReceipt':
        return cls(
            op_id=data["op_id"],
            op_type=data["op_type"],
            staker=data["staker"],
            status=data["status"],
            units=list(data.get("units", [])),
            reward_paid=int(data.get("reward_paid", 0)),
            timestamp=int(data.get("timestamp", 0)),
            error=data.get("error"),
        )


class ReceiptStore:
    """
    In-memory store for operation receipts.

    Thread-safe storage with automatic cleanup of old receipts.
    """

    def __init__(self, max_receipts: int = 10000):
        self.receipts: Dict[str, OperationReceipt] = {}
        self.max_receipts = max_receipts
        self.lock = RLock()

    def add(self, receipt: OperationReceipt) -> OperationReceipt:
        with self.lock:
            self.receipts[receipt.op_id] = receipt

            if len(self.receipts) > self.max_receipts:
                self._cleanup_old_receipts()

            logger.debug(f"Stored {receipt.status} receipt: {receipt.op_id[:16]}... ({receipt.op_type})")
            return receipt

    def get(self, op_id: str) -> Optional[OperationReceipt]:
        with self.lock:
            return self.receipts.get(op_id)

    def count(self, status: Optional[str] = None) -> int:
        with self.lock:
            if status is None:
                return len(self.receipts)
            return sum(1 for r in self.receipts.values() if r.status == status)

    def _cleanup_old_receipts(self) -> None:
        """Removes the oldest 10% of receipts when the limit is exceeded."""
        num_to_remove = max(1, len(self.receipts) // 10)

        # Sort by timestamp (oldest first)
        sorted_receipts = sorted(
            self.receipts.items(),
            key=lambda x: x[1].timestamp
        )

        for op_id, _ in sorted_receipts[:num_to_remove]:
            del self.receipts[op_id]

        logger.info(f"Cleaned up {num_to_remove} old receipts (total: {len(self.receipts)})")

    def clear(self) -> None:
        """Clear all receipts (for testing)."""
        with self.lock:
            self.receipts.clear()
            logger.debug("Cleared all receipts")
