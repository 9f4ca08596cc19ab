from unittest.mock import MagicMock

import pytest

from nftstake.ledger.core.collaborators import AssetRegistry
from nftstake.ledger.core.engine import StakingEngine
from nftstake.ledger.core.events import EventRecorder
from nftstake.protocol.config.params import REWARD_PRECISION
from nftstake.protocol.types.common import (
    BatchTooLarge, DuplicateUnit, EmptyBatch, FatalLedgerError, InsufficientBalance,
    InvalidNonce, NoSuchUnit, NotAuthorized, NotStaker, Paused, ReentrantCall, Underflow,
)

from conftest import REWARD, REWARD_RATE, TEST_CONFIG, make_address


def _snapshot(engine, collection, reward_token, staker):
    return (
        engine.state.to_dict(),
        collection.to_dict()["owners"],
        reward_token.balance_of(engine.holder),
        reward_token.balance_of(staker),
    )


# --- Stake ---

def test_stake_success(engine, collection, nft_holder, staker_with_units):
    receipt = engine.stake(nft_holder, [1, 2])

    assert receipt.ok
    assert collection.balance_of(engine.holder) == 2
    assert engine.total_staked() == 2
    assert engine.balance_of(nft_holder) == 2
    assert engine.custodian_of(1) == nft_holder
    assert engine.custodian_of(2) == nft_holder
    assert engine.units_of(nft_holder) == [1, 2]


def test_second_stake_updates_fields(engine, collection, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    collection.generate_test_assets(1, nft_holder)
    assert collection.balance_of(engine.holder) == 2

    engine.stake(nft_holder, [3])

    assert collection.balance_of(engine.holder) == 3
    assert engine.total_staked() == 3
    assert engine.balance_of(nft_holder) == 3
    for unit in (1, 2, 3):
        assert engine.custodian_of(unit) == nft_holder


def test_stake_events_in_order(engine, bus, nft_holder, staker_with_units):
    recorder = EventRecorder(bus, ["Transfer", "Staked"])

    engine.stake(nft_holder, [1, 2])

    assert recorder.names() == ["Transfer", "Transfer", "Staked"]
    assert recorder.events[0][1] == {"sender": nft_holder, "recipient": engine.holder, "unit": 1}
    assert recorder.events[1][1] == {"sender": nft_holder, "recipient": engine.holder, "unit": 2}
    assert recorder.events[2][1] == {"staker": nft_holder, "count": 2, "units": [1, 2]}


def test_stake_nonexistent_unit(engine, collection, nft_holder, staker_with_units):
    before = _snapshot(engine, collection, engine.reward_token, nft_holder)

    with pytest.raises(NoSuchUnit, match="ERC721: operator query for nonexistent token"):
        engine.stake(nft_holder, [100])

    assert _snapshot(engine, collection, engine.reward_token, nft_holder) == before


def test_stake_not_owned_unit(engine, collection, non_nft_holder, staker_with_units):
    with pytest.raises(NotAuthorized, match="ERC721: transfer caller is not owner nor approved"):
        engine.stake(non_nft_holder, [1])

    assert engine.total_staked() == 0
    assert engine.custodian_of(1) is None


def test_stake_empty_batch(engine, nft_holder, staker_with_units):
    with pytest.raises(EmptyBatch, match="Staking: No tokenIds provided"):
        engine.stake(nft_holder, [])


def test_stake_empty_batch_when_paused(engine, pause_gate, owner, nft_holder):
    pause_gate.pause(owner)

    with pytest.raises(Paused):
        engine.stake(nft_holder, [])


def test_stake_when_paused(engine, pause_gate, owner, nft_holder, staker_with_units):
    pause_gate.pause(owner)

    with pytest.raises(Paused, match="Pausable: paused"):
        engine.stake(nft_holder, [1])
    assert engine.total_staked() == 0


def test_stake_duplicate_unit_in_batch(engine, nft_holder, staker_with_units):
    with pytest.raises(DuplicateUnit):
        engine.stake(nft_holder, [1, 1])
    assert engine.total_staked() == 0


def test_stake_batch_too_large(engine, collection, nft_holder, staker_with_units):
    units = collection.generate_test_assets(TEST_CONFIG.max_batch_size + 1, nft_holder)

    with pytest.raises(BatchTooLarge):
        engine.stake(nft_holder, units)
    assert collection.balance_of(engine.holder) == 0


def test_stake_already_staked_unit(engine, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1])

    # Unit 1 is now owned by the holder, so the registry rejects the caller
    with pytest.raises(NotAuthorized):
        engine.stake(nft_holder, [1])
    assert engine.balance_of(nft_holder) == 1


def test_stake_partial_transfer_failure_rolls_back(engine, collection, nft_holder):
    collection.generate_test_assets(2, nft_holder)
    # Only unit 1 is approved: the second transfer fails mid-batch
    collection.approve(nft_holder, engine.holder, 1)

    with pytest.raises(NotAuthorized):
        engine.stake(nft_holder, [1, 2])

    assert collection.owner_of(1) == nft_holder
    assert collection.owner_of(2) == nft_holder
    assert engine.total_staked() == 0
    assert engine.balance_of(nft_holder) == 0
    assert engine.custodian_of(1) is None


def test_stake_failed_compensation_is_fatal(clock, reward_token, pause_gate, nft_holder):
    registry = MagicMock(spec=AssetRegistry)
    registry.owner_of.return_value = nft_holder
    registry.transfer_from.side_effect = [None, NotAuthorized("second"), NotAuthorized("reversal")]
    engine = StakingEngine(registry, reward_token, pause_gate,
                           config=TEST_CONFIG, clock=clock, start_time=clock.now)

    with pytest.raises(FatalLedgerError, match="Rollback failed for unit 1"):
        engine.stake(nft_holder, [1, 2])

    # Ledger state is still restored
    assert engine.total_staked() == 0
    assert registry.transfer_from.call_count == 3


# --- Withdraw ---

def test_withdraw_success(engine, collection, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    assert collection.balance_of(engine.holder) == 2

    engine.withdraw(nft_holder, [1, 2])

    assert collection.balance_of(engine.holder) == 0
    assert collection.balance_of(nft_holder) == 2
    assert collection.owner_of(1) == nft_holder
    assert collection.owner_of(2) == nft_holder
    assert engine.total_staked() == 0
    assert engine.balance_of(nft_holder) == 0
    assert engine.custodian_of(1) is None
    assert engine.custodian_of(2) is None


def test_withdraw_when_paused(engine, pause_gate, owner, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    pause_gate.pause(owner)

    assert engine.withdraw(nft_holder, [1, 2]).ok


def test_partial_withdraw(engine, collection, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])

    engine.withdraw(nft_holder, [2])

    assert collection.balance_of(engine.holder) == 1
    assert collection.balance_of(nft_holder) == 1
    assert collection.owner_of(1) == engine.holder
    assert collection.owner_of(2) == nft_holder
    assert engine.total_staked() == 1
    assert engine.balance_of(nft_holder) == 1
    assert engine.custodian_of(1) == nft_holder
    assert engine.custodian_of(2) is None


def test_withdraw_events_in_order(engine, bus, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    recorder = EventRecorder(bus, ["Transfer", "Withdrawn", "RewardPaid"])

    engine.withdraw(nft_holder, [1, 2])

    assert recorder.names() == ["Transfer", "Transfer", "Withdrawn"]
    assert recorder.events[0][1] == {"sender": engine.holder, "recipient": nft_holder, "unit": 1}
    assert recorder.events[2][1] == {"staker": nft_holder, "count": 2, "units": [1, 2]}


def test_withdraw_units_staked_by_someone_else(engine, collection, nft_holder,
                                               non_nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    before = _snapshot(engine, collection, engine.reward_token, nft_holder)

    with pytest.raises(NotStaker, match="Staking: Not the staker of the token"):
        engine.withdraw(non_nft_holder, [1, 2])

    assert _snapshot(engine, collection, engine.reward_token, nft_holder) == before


def test_withdraw_aborts_whole_batch_on_foreign_unit(engine, collection, nft_holder,
                                                    another_nft_holder, staker_with_units):
    collection.generate_test_assets(1, another_nft_holder)
    collection.set_approval_for_all(another_nft_holder, engine.holder, True)
    engine.stake(nft_holder, [1, 2])
    engine.stake(another_nft_holder, [3])

    with pytest.raises(NotStaker):
        engine.withdraw(nft_holder, [1, 3])

    # Unit 1 was not released either
    assert engine.custodian_of(1) == nft_holder
    assert collection.owner_of(1) == engine.holder
    assert engine.balance_of(nft_holder) == 2


def test_withdraw_empty_batch(engine, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])

    with pytest.raises(EmptyBatch, match="Staking: No tokenIds provided"):
        engine.withdraw(nft_holder, [])


def test_withdraw_keeps_accrued_reward(engine, clock, reward_token, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    clock.advance(10)

    receipt = engine.withdraw(nft_holder, [1, 2])

    assert receipt.reward_paid == 0
    assert reward_token.balance_of(nft_holder) == 0
    assert engine.earned(nft_holder) == 10 * REWARD_RATE
    # Nothing accrues once the stake is gone
    clock.advance(100)
    assert engine.earned(nft_holder) == 10 * REWARD_RATE


def test_withdraw_underflow_on_corrupted_custody(engine, nft_holder, staker_with_units):
    # Custody record without matching stake count
    engine.state.custody.take(99, nft_holder)

    with pytest.raises(Underflow):
        engine.withdraw(nft_holder, [99])
    assert engine.custodian_of(99) == nft_holder


# --- Exit / Claim ---

def test_exit(engine, clock, collection, reward_token, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    clock.advance(1)

    receipt = engine.exit(nft_holder, [1, 2])

    assert collection.balance_of(engine.holder) == 0
    assert collection.balance_of(nft_holder) == 2
    assert collection.owner_of(1) == nft_holder
    assert collection.owner_of(2) == nft_holder
    assert engine.total_staked() == 0
    assert engine.balance_of(nft_holder) == 0
    assert engine.custodian_of(1) is None
    assert engine.custodian_of(2) is None

    assert reward_token.balance_of(engine.holder) == REWARD - REWARD_RATE
    assert reward_token.balance_of(nft_holder) == REWARD_RATE
    assert receipt.reward_paid == REWARD_RATE
    assert engine.earned(nft_holder) == 0


def test_exit_events(engine, bus, clock, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    clock.advance(1)
    recorder = EventRecorder(bus, ["Withdrawn", "RewardPaid"])

    engine.exit(nft_holder, [1, 2])

    assert recorder.names() == ["Withdrawn", "RewardPaid"]
    assert recorder.events[1][1] == {"staker": nft_holder, "amount": REWARD_RATE}


def test_exit_insufficient_reward_balance_rolls_back(engine, clock, collection, reward_token,
                                                     owner, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    reward_token.transfer(engine.holder, owner, REWARD)
    clock.advance(5)

    with pytest.raises(InsufficientBalance):
        engine.exit(nft_holder, [1, 2])

    # Units moved back into custody, stake and owed reward untouched
    assert collection.owner_of(1) == engine.holder
    assert collection.owner_of(2) == engine.holder
    assert engine.balance_of(nft_holder) == 2
    assert engine.custodian_of(1) == nft_holder
    assert engine.earned(nft_holder) == 5 * REWARD_RATE


def test_exit_insufficient_reward_after_approval_revoked(engine, clock, collection, reward_token,
                                                         owner, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    collection.set_approval_for_all(nft_holder, engine.holder, False)
    reward_token.transfer(engine.holder, owner, REWARD)
    clock.advance(5)
    before = _snapshot(engine, collection, reward_token, nft_holder)

    # Plain InsufficientBalance, not a failed rollback
    with pytest.raises(InsufficientBalance, match="Reward pool holds 0"):
        engine.exit(nft_holder, [1, 2])

    assert _snapshot(engine, collection, reward_token, nft_holder) == before
    assert collection.owner_of(1) == engine.holder
    assert engine.units_of(nft_holder) == [1, 2]
    engine.state.check_invariants()


def test_exit_unit_transfer_failure_refunds_reward(clock, reward_token, pause_gate, nft_holder):
    registry = MagicMock(spec=AssetRegistry)
    registry.owner_of.return_value = nft_holder
    # stake 1, stake 2, exit 1, exit 2 fails, reversal of 1
    registry.transfer_from.side_effect = [None, None, None, NotAuthorized("second"), None]
    engine = StakingEngine(registry, reward_token, pause_gate,
                           config=TEST_CONFIG, clock=clock, start_time=clock.now)
    reward_token.mint(engine.holder, REWARD)
    engine.stake(nft_holder, [1, 2])
    clock.advance(5)

    with pytest.raises(NotAuthorized):
        engine.exit(nft_holder, [1, 2])

    assert reward_token.balance_of(engine.holder) == REWARD
    assert reward_token.balance_of(nft_holder) == 0
    assert engine.balance_of(nft_holder) == 2
    assert engine.earned(nft_holder) == 5 * REWARD_RATE
    assert registry.transfer_from.call_count == 5
    registry.transfer_from.assert_called_with(engine.holder, nft_holder, engine.holder, 1)


def test_claim(engine, clock, reward_token, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    clock.advance(30)

    receipt = engine.claim(nft_holder)

    assert receipt.reward_paid == 30 * REWARD_RATE
    assert reward_token.balance_of(nft_holder) == 30 * REWARD_RATE
    assert engine.earned(nft_holder) == 0
    # Stake untouched
    assert engine.balance_of(nft_holder) == 2
    assert engine.state.peek_account(nft_holder).total_reward_paid == 30 * REWARD_RATE


def test_claim_insufficient_reward_balance(engine, clock, reward_token, owner, nft_holder,
                                           staker_with_units):
    engine.stake(nft_holder, [1, 2])
    reward_token.transfer(engine.holder, owner, REWARD)
    clock.advance(5)

    with pytest.raises(InsufficientBalance):
        engine.claim(nft_holder)

    assert engine.earned(nft_holder) == 5 * REWARD_RATE
    assert engine.state.get_account(nft_holder).total_reward_paid == 0


def test_claim_with_nothing_owed_is_noop(engine, bus, reward_token, non_nft_holder):
    recorder = EventRecorder(bus, ["RewardPaid"])

    receipt = engine.claim(non_nft_holder)

    assert receipt.ok
    assert receipt.reward_paid == 0
    assert recorder.events == []
    assert reward_token.balance_of(engine.holder) == REWARD


def test_claim_allowed_when_paused(engine, clock, pause_gate, owner, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1])
    clock.advance(2)
    pause_gate.pause(owner)

    assert engine.claim(nft_holder).reward_paid == 2 * REWARD_RATE


# --- Receipts / reentrancy ---

def test_failed_operation_records_receipt(engine, nft_holder):
    with pytest.raises(EmptyBatch):
        engine.stake(nft_holder, [])

    assert engine.receipts.count("failed") == 1
    failed = next(iter(engine.receipts.receipts.values()))
    assert failed.op_type == "STAKE"
    assert failed.error.startswith("EmptyBatch")
    assert not failed.ok


def test_confirmed_receipt_lookup(engine, clock, nft_holder, staker_with_units):
    receipt = engine.stake(nft_holder, [1, 2])

    stored = engine.receipts.get(receipt.op_id)
    assert stored is receipt
    assert stored.units == [1, 2]
    assert stored.timestamp == clock.now


def test_reentrant_call_rejected(engine, bus, nft_holder, staker_with_units):
    errors = []

    def reenter(**data):
        try:
            engine.withdraw(nft_holder, [data["unit"]])
        except ReentrantCall as e:
            errors.append(e)

    unsubscribe = bus.subscribe("Transfer", reenter)
    engine.stake(nft_holder, [1, 2])

    assert len(errors) == 2
    assert engine.balance_of(nft_holder) == 2
    # Engine is usable again after the operation completes
    unsubscribe()
    assert engine.withdraw(nft_holder, [1]).ok


def test_listener_sees_committed_state(engine, bus, nft_holder, staker_with_units):
    results = []

    def on_staked(**data):
        # Engine events fire after commit
        results.append(engine.balance_of(data["staker"]))

    bus.subscribe("Staked", on_staked)
    engine.stake(nft_holder, [1, 2])
    assert results == [2]


# --- Rewards across stakers ---

def test_two_stakers_share_rewards(engine, clock, collection, nft_holder,
                                   another_nft_holder, staker_with_units):
    collection.generate_test_assets(2, another_nft_holder)
    collection.set_approval_for_all(another_nft_holder, engine.holder, True)

    engine.stake(nft_holder, [1, 2])
    clock.advance(10)
    engine.stake(another_nft_holder, [3, 4])
    clock.advance(10)

    alice = engine.earned(nft_holder)
    bob = engine.earned(another_nft_holder)
    # Alone for 10s, half for 10s
    assert alice == 10 * REWARD_RATE + 5 * REWARD_RATE
    assert bob == 5 * REWARD_RATE
    assert alice + bob <= 20 * REWARD_RATE


def test_no_accrual_while_nothing_staked(engine, clock, nft_holder, staker_with_units):
    clock.advance(1_000)
    engine.stake(nft_holder, [1])
    clock.advance(1)

    # Only the second after staking counts
    assert engine.earned(nft_holder) == REWARD_RATE


def test_payouts_bounded_after_period_end(engine, clock, reward_token, collection,
                                          nft_holder, another_nft_holder, staker_with_units):
    collection.generate_test_assets(1, another_nft_holder)
    collection.set_approval_for_all(another_nft_holder, engine.holder, True)
    engine.stake(nft_holder, [1, 2])
    engine.stake(another_nft_holder, [3])

    clock.advance(TEST_CONFIG.reward_duration + 1_000)
    assert engine.last_time_reward_applicable() == engine.state.reward.period_finish
    engine.exit(nft_holder, [1, 2])
    engine.exit(another_nft_holder, [3])

    paid = reward_token.balance_of(nft_holder) + reward_token.balance_of(another_nft_holder)
    assert paid <= engine.reward_for_duration()
    # Truncation loses at most one unit per settlement per staker
    assert engine.reward_for_duration() - paid <= 4
    assert reward_token.balance_of(engine.holder) == REWARD - paid


def test_status(engine, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1])

    status = engine.status()
    assert status["total_staked"] == 1
    assert status["reward_rate"] == str(REWARD_RATE)
    assert status["period_active"] is True
    assert status["paused"] is False
    assert status["holder"] == engine.holder


def test_engine_queries_for_unknown_staker(engine):
    stranger = make_address("stranger")
    assert engine.balance_of(stranger) == 0
    assert engine.earned(stranger) == 0
    assert engine.units_of(stranger) == []
    # Queries do not create accounts
    assert engine.state.peek_account(stranger) is None


def test_reward_per_unit_query_is_pure(engine, clock, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1, 2])
    clock.advance(4)

    assert engine.reward_per_unit() == 4 * REWARD_RATE * REWARD_PRECISION // 2
    assert engine.state.reward.reward_per_unit_stored == 0
    assert engine.last_time_reward_applicable() == clock.now


# --- Request nonces ---

def test_nonce_consumed_by_successful_operation(engine, nft_holder, staker_with_units):
    assert engine.nonce_of(nft_holder) == 0

    engine.stake(nft_holder, [1], nonce=0)
    engine.withdraw(nft_holder, [1], nonce=1)

    assert engine.nonce_of(nft_holder) == 2


def test_stale_nonce_rejected(engine, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1], nonce=0)

    with pytest.raises(InvalidNonce, match="expected 1, got 0"):
        engine.stake(nft_holder, [2], nonce=0)
    assert engine.units_of(nft_holder) == [1]


def test_failed_operation_keeps_nonce(engine, nft_holder, staker_with_units):
    with pytest.raises(NotStaker):
        engine.withdraw(nft_holder, [1], nonce=0)

    assert engine.nonce_of(nft_holder) == 0


def test_operation_without_nonce_leaves_counter(engine, nft_holder, staker_with_units):
    engine.stake(nft_holder, [1])
    engine.claim(nft_holder)

    assert engine.nonce_of(nft_holder) == 0
