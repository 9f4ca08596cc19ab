"""
Custody ledger.

Records which staker holds each staked unit. Moving the underlying asset is
done by the engine against the asset registry; this ledger only keeps the
bookkeeping and enforces per-unit exclusivity.
"""
from typing import Dict, List, Optional
import logging

from ...protocol.types.common import AlreadyStaked, NotStaker

logger = logging.getLogger(__name__)


class CustodyLedger:
    def __init__(self, records: Optional[Dict[int, str]] = None):
        # unit id -> custodian address. Absent means unowned.
        self._records: Dict[int, str] = dict(records) if records else {}

    def clone(self) -> 'CustodyLedger':
        return CustodyLedger(self._records)

    def custodian_of(self, unit: int) -> Optional[str]:
        return self._records.get(unit)

    def is_held(self, unit: int) -> bool:
        return unit in self._records

    def take(self, unit: int, staker: str) -> None:
        """Records `staker` as custodian of `unit`. The unit must be unowned."""
        current = self._records.get(unit)
        if current is not None:
            raise AlreadyStaked(f"Unit {unit} is already staked by {current}")
        self._records[unit] = staker

    def release(self, unit: int, staker: str) -> None:
        """Clears the record for `unit`. Only its custodian may release it."""
        if self._records.get(unit) != staker:
            raise NotStaker(f"Staking: Not the staker of the token {unit}")
        del self._records[unit]

    def units_of(self, staker: str) -> List[int]:
        return sorted(unit for unit, owner in self._records.items() if owner == staker)

    def held_count(self) -> int:
        return len(self._records)

    def to_dict(self) -> Dict[int, str]:
        return dict(self._records)
