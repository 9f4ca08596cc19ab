"""Shared fixtures: deterministic clock, in-process collaborators and an engine."""
import pytest

from nftstake.ledger.core.collaborators import NFTCollection, PauseSwitch, RewardTokenLedger
from nftstake.ledger.core.engine import StakingEngine
from nftstake.ledger.core.events import EventBus
from nftstake.protocol.config.params import SECONDS_PER_YEAR, StakingConfig
from nftstake.protocol.crypto.addresses import address_from_pubkey
from nftstake.protocol.crypto.hash import sha256
from nftstake.protocol.crypto.keys import public_key_from_private

REWARD_DURATION = SECONDS_PER_YEAR  # 1 year in seconds
REWARD = 1_000_000 * 10**18         # 1,000,000 reward tokens
REWARD_RATE = REWARD // REWARD_DURATION
GENESIS_TIME = 1_700_000_000

TEST_CONFIG = StakingConfig(
    network_id="test",
    reward_duration=REWARD_DURATION,
    reward_budget=REWARD,
    max_batch_size=20,
)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: int = GENESIS_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


def make_private_key(label: str) -> bytes:
    return sha256(label.encode())


def make_address(label: str) -> str:
    """Address of the key made by make_private_key(label)."""
    pub = public_key_from_private(make_private_key(label))
    return address_from_pubkey(pub, prefix=TEST_CONFIG.address_prefix)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def owner():
    return make_address("owner")


@pytest.fixture
def nft_holder():
    return make_address("nft-holder")


@pytest.fixture
def non_nft_holder():
    return make_address("non-nft-holder")


@pytest.fixture
def another_nft_holder():
    return make_address("another-nft-holder")


@pytest.fixture
def collection(bus):
    return NFTCollection(event_bus=bus)


@pytest.fixture
def reward_token():
    return RewardTokenLedger()


@pytest.fixture
def pause_gate(owner):
    return PauseSwitch(owner=owner)


@pytest.fixture
def engine(collection, reward_token, pause_gate, clock, bus):
    """Engine with a funded reward budget and a reward period starting now."""
    eng = StakingEngine(
        collection, reward_token, pause_gate,
        config=TEST_CONFIG,
        clock=clock,
        event_bus=bus,
        start_time=clock.now,
    )
    reward_token.mint(eng.holder, REWARD)
    return eng


@pytest.fixture
def staker_with_units(engine, collection, nft_holder):
    """nft_holder owns units 1 and 2 and has approved the engine."""
    units = collection.generate_test_assets(2, nft_holder)
    collection.set_approval_for_all(nft_holder, engine.holder, True)
    return units
