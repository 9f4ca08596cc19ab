from pydantic import BaseModel


class StakerAccount(BaseModel):
    address: str
    balance: int = 0                     # Number of units currently staked

    # Reward tracking
    reward_per_unit_paid: int = 0        # Index value at last settlement (scaled)
    rewards: int = 0                     # Accrued but not yet paid out

    # Lifetime totals (informational)
    total_reward_paid: int = 0

    # Signed request counter
    nonce: int = 0
