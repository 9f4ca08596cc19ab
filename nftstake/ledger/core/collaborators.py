"""
External collaborators of the staking engine.

The engine only depends on the abstract interfaces below. The in-process
implementations back the devnet node and the test-suite; a deployment can
inject adapters to a real asset registry / token ledger instead.
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set
import logging

from ...protocol.types.common import InsufficientBalance, NoSuchUnit, NotAuthorized
from .events import EventBus

logger = logging.getLogger(__name__)


class AssetRegistry(ABC):
    """Non-fungible asset registry (owns unit identity and transfer rules)."""

    @abstractmethod
    def owner_of(self, unit: int) -> str:
        """Current owner. Raises NoSuchUnit for unknown units."""

    @abstractmethod
    def transfer_from(self, operator: str, sender: str, recipient: str, unit: int) -> None:
        """Moves `unit` from `sender` to `recipient` on behalf of `operator`.

        Raises NoSuchUnit or NotAuthorized.
        """

    @abstractmethod
    def balance_of(self, holder: str) -> int:
        pass


class RewardToken(ABC):
    """Fungible reward-token ledger."""

    @abstractmethod
    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Raises InsufficientBalance if `sender` holds less than `amount`."""

    @abstractmethod
    def balance_of(self, holder: str) -> int:
        pass


class PauseGate(ABC):
    """Administrative pause switch, queried (never owned) by the engine."""

    @abstractmethod
    def is_paused(self) -> bool:
        pass


# ═══════════════════════════════════════════════════════════════════
# IN-PROCESS IMPLEMENTATIONS
# ═══════════════════════════════════════════════════════════════════

class NFTCollection(AssetRegistry):
    """ERC721-style collection kept in memory."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus
        self._owners: Dict[int, str] = {}
        self._token_approvals: Dict[int, str] = {}
        self._operator_approvals: Dict[str, Set[str]] = {}

    def mint(self, to: str, unit: int) -> None:
        if unit in self._owners:
            raise ValueError(f"Unit {unit} already minted")
        self._owners[unit] = to
        self._emit_transfer("", to, unit)

    def generate_test_assets(self, count: int, to: str) -> list:
        """Mints `count` units to `to` using the next free ids (starting at 1)."""
        start = max(self._owners, default=0) + 1
        units = list(range(start, start + count))
        for unit in units:
            self.mint(to, unit)
        return units

    def owner_of(self, unit: int) -> str:
        owner = self._owners.get(unit)
        if owner is None:
            raise NoSuchUnit(f"ERC721: operator query for nonexistent token {unit}")
        return owner

    def exists(self, unit: int) -> bool:
        return unit in self._owners

    def balance_of(self, holder: str) -> int:
        return sum(1 for owner in self._owners.values() if owner == holder)

    def approve(self, caller: str, approved: str, unit: int) -> None:
        if self.owner_of(unit) != caller:
            raise NotAuthorized(f"ERC721: approve caller is not owner of token {unit}")
        self._token_approvals[unit] = approved

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        operators = self._operator_approvals.setdefault(owner, set())
        if approved:
            operators.add(operator)
        else:
            operators.discard(operator)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return operator in self._operator_approvals.get(owner, set())

    def is_approved_or_owner(self, operator: str, unit: int) -> bool:
        owner = self.owner_of(unit)
        return (operator == owner
                or self._token_approvals.get(unit) == operator
                or self.is_approved_for_all(owner, operator))

    def transfer_from(self, operator: str, sender: str, recipient: str, unit: int) -> None:
        if not self.is_approved_or_owner(operator, unit):
            raise NotAuthorized(f"ERC721: transfer caller is not owner nor approved (token {unit})")
        if self._owners[unit] != sender:
            raise NotAuthorized(f"ERC721: transfer of token {unit} that is not own")
        if not recipient:
            raise ValueError("ERC721: transfer to the zero address")

        self._token_approvals.pop(unit, None)
        self._owners[unit] = recipient
        self._emit_transfer(sender, recipient, unit)

    def _emit_transfer(self, sender: str, recipient: str, unit: int) -> None:
        if self.event_bus:
            self.event_bus.emit("Transfer", sender=sender, recipient=recipient, unit=unit)

    def to_dict(self) -> dict:
        return {
            "owners": {str(k): v for k, v in self._owners.items()},
            "token_approvals": {str(k): v for k, v in self._token_approvals.items()},
            "operator_approvals": {k: sorted(v) for k, v in self._operator_approvals.items()},
        }

    @classmethod
    def from_dict(cls, data: dict, event_bus: Optional[EventBus] = None) -> 'NFTCollection':
        collection = cls(event_bus)
        collection._owners = {int(k): v for k, v in data.get("owners", {}).items()}
        collection._token_approvals = {int(k): v for k, v in data.get("token_approvals", {}).items()}
        collection._operator_approvals = {k: set(v) for k, v in data.get("operator_approvals", {}).items()}
        return collection


class RewardTokenLedger(RewardToken):
    """ERC20-style balance ledger kept in memory."""

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(balances) if balances else {}

    def mint(self, to: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Cannot mint negative amount {amount}")
        self._balances[to] = self._balances.get(to, 0) + amount

    def balance_of(self, holder: str) -> int:
        return self._balances.get(holder, 0)

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Cannot transfer negative amount {amount}")
        have = self._balances.get(sender, 0)
        if have < amount:
            raise InsufficientBalance(f"ERC20: transfer amount {amount} exceeds balance {have}")
        self._balances[sender] = have - amount
        self._balances[recipient] = self._balances.get(recipient, 0) + amount
        logger.debug(f"Reward transfer {sender} -> {recipient}: {amount}")

    def to_dict(self) -> dict:
        # Amounts exceed JSON-safe integers for some consumers
        return {"balances": {k: str(v) for k, v in self._balances.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> 'RewardTokenLedger':
        return cls({k: int(v) for k, v in data.get("balances", {}).items()})


class PauseSwitch(PauseGate):
    """Owner-controlled pause flag."""

    def __init__(self, owner: str, paused: bool = False):
        self.owner = owner
        self._paused = paused

    def is_paused(self) -> bool:
        return self._paused

    def pause(self, caller: str) -> None:
        self._check_owner(caller)
        self._paused = True
        logger.info(f"Staking paused by {caller}")

    def unpause(self, caller: str) -> None:
        self._check_owner(caller)
        self._paused = False
        logger.info(f"Staking unpaused by {caller}")

    def _check_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise NotAuthorized("Ownable: caller is not the owner")

    def to_dict(self) -> dict:
        return {"owner": self.owner, "paused": self._paused}

    @classmethod
    def from_dict(cls, data: dict) -> 'PauseSwitch':
        return cls(owner=data["owner"], paused=bool(data.get("paused", False)))
