"""NFT staking ledger with time-based reward accrual."""

__version__ = "0.1.0"
