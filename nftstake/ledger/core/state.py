from typing import Dict, List, Optional
import json
import logging
from .accounts import StakerAccount
from .custody import CustodyLedger
from .rewards import GlobalRewardState
from ...protocol.types.common import FatalLedgerError, Underflow
from ..storage.db import StorageDB

logger = logging.getLogger(__name__)


class StakingState:
    """
    Complete engine state: staker accounts, custody records and the global
    reward state. Operations work on a clone and swap it in on success.
    """

    def __init__(self,
                 reward: GlobalRewardState,
                 accounts: Dict[str, StakerAccount] = None,
                 custody: CustodyLedger = None):
        self.reward = reward
        # address -> StakerAccount (created lazily, never deleted)
        self._accounts: Dict[str, StakerAccount] = accounts if accounts is not None else {}
        self.custody = custody if custody is not None else CustodyLedger()

    def clone(self) -> 'StakingState':
        """Creates an independent copy of the state (for staged commits)."""
        new_accounts = {k: v.model_copy() for k, v in self._accounts.items()}
        return StakingState(self.reward.model_copy(), new_accounts, self.custody.clone())

    # --- Accounts ---

    def get_account(self, address: str) -> StakerAccount:
        if address in self._accounts:
            return self._accounts[address]

        acc = StakerAccount(address=address)
        self._accounts[address] = acc
        return acc

    def peek_account(self, address: str) -> Optional[StakerAccount]:
        """Read-only lookup, does not create the account."""
        return self._accounts.get(address)

    def all_accounts(self) -> List[StakerAccount]:
        return list(self._accounts.values())

    @property
    def total_staked(self) -> int:
        return self.reward.total_staked

    # --- Stake accounting ---

    def increment(self, staker: str, n: int):
        if n < 0:
            raise ValueError(f"increment by negative amount {n}")
        acc = self.get_account(staker)
        acc.balance += n
        self.reward.total_staked += n

    def decrement(self, staker: str, n: int):
        if n < 0:
            raise ValueError(f"decrement by negative amount {n}")
        acc = self.get_account(staker)
        if acc.balance < n:
            raise Underflow(f"Stake underflow for {staker}: balance {acc.balance}, decrement {n}")
        if self.reward.total_staked < n:
            raise Underflow(f"Total stake underflow: total {self.reward.total_staked}, decrement {n}")
        acc.balance -= n
        self.reward.total_staked -= n

    # --- Invariants ---

    def check_invariants(self):
        """
        Raises FatalLedgerError if stake counts and custody records disagree.

        sum(balances) == total_staked == number of held units, and every
        account's balance equals the number of units it holds.
        """
        balances_sum = sum(acc.balance for acc in self._accounts.values())
        held = self.custody.held_count()
        if not (balances_sum == self.reward.total_staked == held):
            raise FatalLedgerError(
                f"Stake mismatch: balances={balances_sum}, "
                f"total_staked={self.reward.total_staked}, held_units={held}"
            )

        per_staker: Dict[str, int] = {}
        for _unit, owner in self.custody.to_dict().items():
            per_staker[owner] = per_staker.get(owner, 0) + 1
        for acc in self._accounts.values():
            if per_staker.get(acc.address, 0) != acc.balance:
                raise FatalLedgerError(
                    f"Custody mismatch for {acc.address}: "
                    f"balance={acc.balance}, held={per_staker.get(acc.address, 0)}"
                )

    # --- Persistence ---

    def persist(self, db: StorageDB):
        """Writes the full state to DB in one transaction."""
        puts = {f"acc:{addr}": acc.model_dump_json() for addr, acc in self._accounts.items()}

        records = self.custody.to_dict()
        stale_units = [key for key in db.get_state_by_prefix("unit:")
                       if int(key.split(":")[1]) not in records]
        for unit, owner in records.items():
            puts[f"unit:{unit}"] = owner

        puts["reward"] = self.reward.model_dump_json()
        db.write_batch(puts, deletes=stale_units)

    @classmethod
    def load(cls, db: StorageDB) -> Optional['StakingState']:
        """Restores state from DB, or None if nothing was persisted."""
        raw_reward = db.get_state("reward")
        if not raw_reward:
            return None

        reward = GlobalRewardState.model_validate_json(raw_reward)

        accounts = {}
        for key, value in db.get_state_by_prefix("acc:").items():
            addr = key.split(":", 1)[1]
            accounts[addr] = StakerAccount.model_validate_json(value)

        records = {int(key.split(":")[1]): owner
                   for key, owner in db.get_state_by_prefix("unit:").items()}

        state = cls(reward, accounts, CustodyLedger(records))
        logger.info(f"Loaded state: {len(accounts)} accounts, {len(records)} staked units")
        return state

    def to_dict(self) -> dict:
        return {
            "reward": json.loads(self.reward.model_dump_json()),
            "accounts": {k: v.model_dump() for k, v in self._accounts.items()},
            "custody": {str(k): v for k, v in self.custody.to_dict().items()},
        }
