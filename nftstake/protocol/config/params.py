# MIT License
# Copyright (c) 2025 Hashborn

import os
from typing import Dict

# Global Constants
DENOM = "rwd"
DECIMALS = 18

# Fixed-point unit of the reward-per-unit index.
# Truncation loses at most 1 reward unit per settlement per staker.
REWARD_PRECISION = 10**18

SECONDS_PER_YEAR = 31_556_952

class StakingConfig:
    def __init__(self,
                 network_id: str,
                 reward_duration: int,
                 reward_budget: int,
                 address_prefix: str = "nfts",
                 custody_module: str = "custody",
                 max_batch_size: int = 100):
        if reward_duration <= 0:
            raise ValueError(f"reward_duration must be positive, got {reward_duration}")
        if reward_budget < 0:
            raise ValueError(f"reward_budget must be non-negative, got {reward_budget}")
        self.network_id = network_id
        self.reward_duration = reward_duration
        self.reward_budget = reward_budget
        self.address_prefix = address_prefix
        self.custody_module = custody_module
        self.max_batch_size = max_batch_size

    def reward_rate(self) -> int:
        """Reward units emitted per second. The remainder of the division is never allocated."""
        return self.reward_budget // self.reward_duration

    def undistributable_remainder(self) -> int:
        return self.reward_budget - self.reward_rate() * self.reward_duration

NETWORKS: Dict[str, StakingConfig] = {
    "devnet": StakingConfig(
        network_id="devnet",
        reward_duration=SECONDS_PER_YEAR,
        reward_budget=1_000_000 * 10**DECIMALS,
        max_batch_size=100,
    ),
    "testnet": StakingConfig(
        network_id="testnet",
        reward_duration=30 * 24 * 3600,  # 30 days
        reward_budget=100_000 * 10**DECIMALS,
        max_batch_size=50,
    ),
    "mainnet": StakingConfig(
        network_id="mainnet",
        reward_duration=SECONDS_PER_YEAR,
        reward_budget=10_000_000 * 10**DECIMALS,
        max_batch_size=50,
    ),
}

CURRENT_CONFIG = NETWORKS[os.environ.get("NFTSTAKE_NETWORK", "devnet")]
