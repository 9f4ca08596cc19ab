# MIT License
# Copyright (c) 2025 Hashborn

"""
Staking engine (lifecycle controller).

Sequences stake / withdraw / exit / claim:

    1. checks      - pause gate, batch shape, ownership / custody, nonce,
                     reward pool funding
    2. effects     - settle rewards, update custody and stake counts on a
                     clone of the state, then swap the clone in
    3. interactions - reward payout first, then asset transfers
    4. events      - one batch event per operation, after everything else

If an interaction fails the previous state is restored and transfers that
already happened in the same batch are reversed, so a failed operation leaves
no observable change. Transfers out of custody run on the holder's own
authority and run after the reward payout, which is checked against the
pool balance up front, so a short pool never forces units back out of the
staker's hands. Operations are serialized; re-entering the engine while an
operation is in flight raises ReentrantCall.
"""
from typing import Callable, Iterable, List, Optional, Tuple
import json
import logging
import threading
import time

from ...protocol.config.params import CURRENT_CONFIG, StakingConfig
from ...protocol.crypto.addresses import module_address
from ...protocol.crypto.hash import sha256_hex
from ...protocol.types.common import (
    BatchTooLarge, DuplicateUnit, EmptyBatch, FatalLedgerError, InsufficientBalance,
    InvalidNonce, NotAuthorized, NotStaker, OperationType, Paused, ProtocolError, ReentrantCall,
)
from ...protocol.types.staking import RewardPaid, StakedBatch, WithdrawnBatch
from ..observability import metrics
from ..storage.db import StorageDB
from .collaborators import AssetRegistry, PauseGate, RewardToken
from .events import EventBus
from .receipts import OperationReceipt, ReceiptStore
from .rewards import (
    applicable_time, current_reward_per_unit, earned, is_active, reward_for_duration,
    settle_account, settle_global, start_reward_period,
)
from .state import StakingState

logger = logging.getLogger(__name__)

# (event name, payload model) pairs emitted after a successful operation
PendingEvents = List[Tuple[str, object]]


class StakingEngine:
    def __init__(self,
                 asset_registry: AssetRegistry,
                 reward_token: RewardToken,
                 pause_gate: PauseGate,
                 config: StakingConfig = CURRENT_CONFIG,
                 state: Optional[StakingState] = None,
                 clock: Optional[Callable[[], int]] = None,
                 event_bus: Optional[EventBus] = None,
                 receipts: Optional[ReceiptStore] = None,
                 db: Optional[StorageDB] = None,
                 start_time: Optional[int] = None,
                 check_invariants: bool = True):
        self.asset_registry = asset_registry
        self.reward_token = reward_token
        self.pause_gate = pause_gate
        self.config = config
        self.clock = clock or (lambda: int(time.time()))
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.receipts = receipts if receipts is not None else ReceiptStore()
        self.db = db
        self.check_invariants = check_invariants

        # Address that holds staked units and the reward budget
        self.holder = module_address(config.custody_module, prefix=config.address_prefix)

        if state is None:
            start = self.clock() if start_time is None else start_time
            state = StakingState(start_reward_period(config.reward_budget, config.reward_duration, start))
        self.state = state

        self._lock = threading.RLock()
        self._in_operation = False
        # Journal sequence number of the last operation
        self._seq = 0
        if db is not None:
            last = db.get_last_operation()
            if last:
                self._seq = last[0]

    # ═══════════════════════════════════════════════════════════════
    # QUERIES (pure, never settle)
    # ═══════════════════════════════════════════════════════════════

    def total_staked(self) -> int:
        return self.state.total_staked

    def balance_of(self, staker: str) -> int:
        acc = self.state.peek_account(staker)
        return acc.balance if acc else 0

    def nonce_of(self, staker: str) -> int:
        """Nonce the next signed request from `staker` must carry."""
        acc = self.state.peek_account(staker)
        return acc.nonce if acc else 0

    def custodian_of(self, unit: int) -> Optional[str]:
        return self.state.custody.custodian_of(unit)

    def units_of(self, staker: str) -> List[int]:
        return self.state.custody.units_of(staker)

    def earned(self, staker: str, now: Optional[int] = None) -> int:
        acc = self.state.peek_account(staker)
        if acc is None:
            return 0
        return earned(acc, self.state.reward, self._now(now))

    def reward_per_unit(self, now: Optional[int] = None) -> int:
        return current_reward_per_unit(self.state.reward, self._now(now))

    def last_time_reward_applicable(self, now: Optional[int] = None) -> int:
        return applicable_time(self.state.reward, self._now(now))

    def reward_for_duration(self) -> int:
        return reward_for_duration(self.state.reward)

    def is_paused(self) -> bool:
        return self.pause_gate.is_paused()

    def status(self, now: Optional[int] = None) -> dict:
        now = self._now(now)
        reward = self.state.reward
        return {
            "network": self.config.network_id,
            "holder": self.holder,
            "total_staked": reward.total_staked,
            "reward_rate": str(reward.reward_rate),
            "reward_per_unit": str(current_reward_per_unit(reward, now)),
            "reward_per_unit_stored": str(reward.reward_per_unit_stored),
            "last_update_time": reward.last_update_time,
            "period_finish": reward.period_finish,
            "period_active": is_active(reward, now),
            "reward_for_duration": str(reward_for_duration(reward)),
            "paused": self.pause_gate.is_paused(),
        }

    # ═══════════════════════════════════════════════════════════════
    # OPERATIONS
    # ═══════════════════════════════════════════════════════════════
    #
    # `nonce`, when given, must equal nonce_of(staker) and is consumed by a
    # successful operation. The RPC layer passes the signed request's nonce.

    def stake(self, staker: str, units: Iterable[int], now: Optional[int] = None,
              nonce: Optional[int] = None) -> OperationReceipt:
        units = list(units)
        return self._execute(OperationType.STAKE, staker, units, now, nonce,
                             lambda t: self._apply_stake(staker, units, t, nonce))

    def withdraw(self, staker: str, units: Iterable[int], now: Optional[int] = None,
                 nonce: Optional[int] = None) -> OperationReceipt:
        """Never blocked by the pause gate."""
        units = list(units)
        return self._execute(OperationType.WITHDRAW, staker, units, now, nonce,
                             lambda t: self._apply_withdraw(staker, units, t, nonce, pay_reward=False))

    def exit(self, staker: str, units: Iterable[int], now: Optional[int] = None,
             nonce: Optional[int] = None) -> OperationReceipt:
        """Withdraw followed by a reward payout, as one operation."""
        units = list(units)
        return self._execute(OperationType.EXIT, staker, units, now, nonce,
                             lambda t: self._apply_withdraw(staker, units, t, nonce, pay_reward=True))

    def claim(self, staker: str, now: Optional[int] = None,
              nonce: Optional[int] = None) -> OperationReceipt:
        """Pays out everything owed to `staker`. Zero owed is a no-op."""
        return self._execute(OperationType.CLAIM, staker, [], now, nonce,
                             lambda t: self._apply_claim(staker, t, nonce))

    # ═══════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════

    def _now(self, now: Optional[int]) -> int:
        return self.clock() if now is None else now

    def _execute(self, op_type: OperationType, staker: str, units: List[int],
                 now: Optional[int], nonce: Optional[int],
                 apply: Callable[[int], Tuple[int, PendingEvents]]) -> OperationReceipt:
        with self._lock:
            if self._in_operation:
                raise ReentrantCall(f"{op_type.value} rejected: another operation is in flight")
            self._in_operation = True
            try:
                now = self._now(now)
                self._seq += 1
                op_id = sha256_hex(
                    f"{self._seq}:{op_type.value}:{staker}:{','.join(map(str, units))}:{now}:{nonce}".encode()
                )

                try:
                    reward_paid, events = apply(now)
                except ProtocolError as e:
                    self._record_failure(op_id, op_type, staker, units, now, e)
                    raise

                receipt = OperationReceipt(
                    op_id=op_id,
                    op_type=op_type.value,
                    staker=staker,
                    status='confirmed',
                    units=units,
                    reward_paid=reward_paid,
                    timestamp=now,
                )
                self.receipts.add(receipt)
                if self.db is not None:
                    self.persist()
                    self.db.save_operation(self._seq, op_id, json.dumps(receipt.to_dict()))

                metrics.record_operation(op_type.value, 'confirmed', len(units), reward_paid)
                logger.info(f"{op_type.value} {staker}: units={units} reward_paid={reward_paid} "
                            f"total_staked={self.state.total_staked}")

                for name, payload in events:
                    self.event_bus.emit(name, **payload.model_dump())
                return receipt
            finally:
                self._in_operation = False

    def _record_failure(self, op_id: str, op_type: OperationType, staker: str,
                        units: List[int], now: int, error: ProtocolError):
        reason = f"{type(error).__name__}: {error}"
        self.receipts.add(OperationReceipt(
            op_id=op_id,
            op_type=op_type.value,
            staker=staker,
            status='failed',
            units=units,
            timestamp=now,
            error=reason,
        ))
        metrics.record_failure(op_type.value, type(error).__name__)
        if isinstance(error, FatalLedgerError):
            logger.critical(f"{op_type.value} {staker} hit a fatal ledger error: {reason}")
        else:
            logger.warning(f"{op_type.value} {staker} rejected: {reason}")

    def _check_batch(self, units: List[int]):
        if not units:
            raise EmptyBatch("Staking: No tokenIds provided")
        if len(units) > self.config.max_batch_size:
            raise BatchTooLarge(f"Batch of {len(units)} exceeds max {self.config.max_batch_size}")
        seen = set()
        for unit in units:
            if unit in seen:
                raise DuplicateUnit(f"Unit {unit} appears more than once in batch")
            seen.add(unit)

    def _check_nonce(self, staker: str, nonce: Optional[int]):
        if nonce is None:
            return
        expected = self.nonce_of(staker)
        if nonce != expected:
            raise InvalidNonce(f"Invalid nonce for {staker}: expected {expected}, got {nonce}")

    def _check_reward_funds(self, payout: int):
        have = self.reward_token.balance_of(self.holder)
        if have < payout:
            raise InsufficientBalance(f"Reward pool holds {have}, owes {payout}")

    def _commit(self, staged: StakingState) -> StakingState:
        """Swaps in the staged state and returns the previous one for rollback."""
        if self.check_invariants:
            staged.check_invariants()
        previous = self.state
        self.state = staged
        return previous

    def _rollback(self, previous: StakingState, moved: List[int], sender: str, recipient: str,
                  refund: int = 0, refund_from: Optional[str] = None):
        """Restores `previous` and reverses the asset transfers and payout already done."""
        self.state = previous
        for unit in reversed(moved):
            try:
                self.asset_registry.transfer_from(self.holder, sender, recipient, unit)
            except ProtocolError as e:
                logger.critical(f"Could not reverse transfer of unit {unit} ({sender} -> {recipient}): {e}")
                raise FatalLedgerError(f"Rollback failed for unit {unit}: {e}") from e
        if refund:
            try:
                self.reward_token.transfer(refund_from, self.holder, refund)
            except ProtocolError as e:
                logger.critical(f"Could not reclaim reward payout of {refund} from {refund_from}: {e}")
                raise FatalLedgerError(f"Rollback failed for reward payout: {e}") from e
        if moved or refund:
            logger.warning(f"Rolled back {len(moved)} asset transfer(s), refund={refund}")

    def _settled_clone(self, staker: str, now: int, nonce: Optional[int]) -> StakingState:
        staged = self.state.clone()
        settle_global(staged.reward, now)
        acc = staged.get_account(staker)
        settle_account(acc, staged.reward)
        if nonce is not None:
            acc.nonce += 1
        return staged

    def _apply_stake(self, staker: str, units: List[int], now: int,
                     nonce: Optional[int]) -> Tuple[int, PendingEvents]:
        # Pause gate first, ahead of the batch shape
        if self.pause_gate.is_paused():
            raise Paused("Pausable: paused")
        self._check_batch(units)
        self._check_nonce(staker, nonce)

        # Checks: every unit exists and belongs to the caller
        for unit in units:
            if self.asset_registry.owner_of(unit) != staker:
                raise NotAuthorized(f"ERC721: transfer caller is not owner nor approved (token {unit})")

        # Effects
        staged = self._settled_clone(staker, now, nonce)
        for unit in units:
            staged.custody.take(unit, staker)
        staged.increment(staker, len(units))
        previous = self._commit(staged)

        # Interactions
        moved: List[int] = []
        try:
            for unit in units:
                self.asset_registry.transfer_from(self.holder, staker, self.holder, unit)
                moved.append(unit)
        except ProtocolError:
            self._rollback(previous, moved, sender=self.holder, recipient=staker)
            raise

        return 0, [("Staked", StakedBatch(staker=staker, count=len(units), units=units))]

    def _apply_withdraw(self, staker: str, units: List[int], now: int, nonce: Optional[int],
                        pay_reward: bool) -> Tuple[int, PendingEvents]:
        self._check_batch(units)
        self._check_nonce(staker, nonce)

        # Checks: the whole batch must be custodied by the caller
        for unit in units:
            if self.state.custody.custodian_of(unit) != staker:
                raise NotStaker(f"Staking: Not the staker of the token {unit}")

        # Effects
        staged = self._settled_clone(staker, now, nonce)
        for unit in units:
            staged.custody.release(unit, staker)
        staged.decrement(staker, len(units))

        payout = 0
        if pay_reward:
            acc = staged.get_account(staker)
            payout = acc.rewards
            acc.rewards = 0
            acc.total_reward_paid += payout
            self._check_reward_funds(payout)
        previous = self._commit(staged)

        # Interactions: payout before the units leave custody
        moved: List[int] = []
        paid = 0
        try:
            if payout > 0:
                self.reward_token.transfer(self.holder, staker, payout)
                paid = payout
            for unit in units:
                self.asset_registry.transfer_from(self.holder, self.holder, staker, unit)
                moved.append(unit)
        except ProtocolError:
            self._rollback(previous, moved, sender=staker, recipient=self.holder,
                           refund=paid, refund_from=staker)
            raise

        events: PendingEvents = [("Withdrawn", WithdrawnBatch(staker=staker, count=len(units), units=units))]
        if payout > 0:
            events.append(("RewardPaid", RewardPaid(staker=staker, amount=payout)))
        return payout, events

    def _apply_claim(self, staker: str, now: int, nonce: Optional[int]) -> Tuple[int, PendingEvents]:
        self._check_nonce(staker, nonce)

        staged = self._settled_clone(staker, now, nonce)
        acc = staged.get_account(staker)
        payout = acc.rewards
        acc.rewards = 0
        acc.total_reward_paid += payout
        self._check_reward_funds(payout)
        previous = self._commit(staged)

        if payout == 0:
            return 0, []

        try:
            self.reward_token.transfer(self.holder, staker, payout)
        except ProtocolError:
            self._rollback(previous, [], sender=staker, recipient=self.holder)
            raise

        return payout, [("RewardPaid", RewardPaid(staker=staker, amount=payout))]

    # ═══════════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════════

    def persist(self):
        """Writes engine state and exportable collaborator state to DB."""
        if self.db is None:
            raise ValueError("Engine has no database attached")
        self.state.persist(self.db)
        collaborators = {
            "collab:registry": self.asset_registry,
            "collab:reward_token": self.reward_token,
            "collab:pause_gate": self.pause_gate,
        }
        puts = {key: json.dumps(c.to_dict()) for key, c in collaborators.items() if hasattr(c, "to_dict")}
        if puts:
            self.db.write_batch(puts)
