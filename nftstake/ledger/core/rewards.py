"""
Reward accumulator.

Distributes a fixed emission rate across all staked units with a lazily
settled reward-per-unit index:

    reward_per_unit += elapsed * reward_rate * REWARD_PRECISION // total_staked
    owed(account)   += balance * (reward_per_unit - account.paid) // REWARD_PRECISION

Settlement happens at fixed points (start of every state-changing operation),
never on read. Reads use `current_reward_per_unit` / `earned`, which are pure.

While total stake is zero the index does not move and the emission for that
interval is forfeited.
"""
from pydantic import BaseModel
import logging

from ...protocol.config.params import REWARD_PRECISION
from .accounts import StakerAccount

logger = logging.getLogger(__name__)


class GlobalRewardState(BaseModel):
    total_staked: int = 0
    reward_per_unit_stored: int = 0
    last_update_time: int = 0
    period_finish: int = 0
    reward_rate: int = 0
    reward_duration: int = 0


def start_reward_period(reward_budget: int, duration: int, start_time: int) -> GlobalRewardState:
    """
    Creates the reward state for a period beginning at `start_time`.

    reward_rate is truncated; the remainder of `reward_budget` is never emitted.
    """
    if duration <= 0:
        raise ValueError(f"duration must be positive, got {duration}")
    rate = reward_budget // duration
    logger.info(f"Reward period: rate={rate}/s, duration={duration}s, "
                f"finish={start_time + duration}, unallocated={reward_budget - rate * duration}")
    return GlobalRewardState(
        last_update_time=start_time,
        period_finish=start_time + duration,
        reward_rate=rate,
        reward_duration=duration,
    )


def applicable_time(reward: GlobalRewardState, now: int) -> int:
    return min(now, reward.period_finish)


def is_active(reward: GlobalRewardState, now: int) -> bool:
    return now < reward.period_finish and reward.reward_rate > 0


def current_reward_per_unit(reward: GlobalRewardState, now: int) -> int:
    if reward.total_staked == 0:
        return reward.reward_per_unit_stored

    elapsed = applicable_time(reward, now) - reward.last_update_time
    if elapsed <= 0:
        return reward.reward_per_unit_stored

    return reward.reward_per_unit_stored + (
        elapsed * reward.reward_rate * REWARD_PRECISION // reward.total_staked
    )


def settle_global(reward: GlobalRewardState, now: int) -> None:
    """Crystallizes the index up to `now`. Must precede any change of total stake."""
    reward.reward_per_unit_stored = current_reward_per_unit(reward, now)
    # Never move the settlement clock backwards
    reward.last_update_time = max(reward.last_update_time, applicable_time(reward, now))


def pending_reward(account: StakerAccount, reward_per_unit: int) -> int:
    return account.balance * (reward_per_unit - account.reward_per_unit_paid) // REWARD_PRECISION


def settle_account(account: StakerAccount, reward: GlobalRewardState) -> None:
    """
    Moves the account's accrual since its last settlement into `rewards`.

    Uses the balance before the pending stake change, so it must run after
    `settle_global` and before the balance mutates.
    """
    accrued = pending_reward(account, reward.reward_per_unit_stored)
    account.rewards += accrued
    account.reward_per_unit_paid = reward.reward_per_unit_stored
    if accrued:
        logger.debug(f"Settled {account.address}: +{accrued} (owed={account.rewards})")


def earned(account: StakerAccount, reward: GlobalRewardState, now: int) -> int:
    """Owed reward as of `now`, without mutating anything."""
    return account.rewards + pending_reward(account, current_reward_per_unit(reward, now))


def reward_for_duration(reward: GlobalRewardState) -> int:
    return reward.reward_rate * reward.reward_duration
