from enum import Enum


class OperationType(str, Enum):
    STAKE = "STAKE"
    WITHDRAW = "WITHDRAW"
    EXIT = "EXIT"          # Withdraw + reward payout
    CLAIM = "CLAIM"        # Reward payout only


class ProtocolError(Exception):
    pass


# ═══════════════════════════════════════════════════════
# INPUT VALIDATION
# ═══════════════════════════════════════════════════════

class ValidationError(ProtocolError):
    pass

class EmptyBatch(ValidationError):
    def __init__(self, message: str = "No unit ids provided"):
        super().__init__(message)

class BatchTooLarge(ValidationError):
    pass

class DuplicateUnit(ValidationError):
    pass

class InvalidNonce(ValidationError):
    pass


# ═══════════════════════════════════════════════════════
# AUTHORIZATION / CUSTODY
# ═══════════════════════════════════════════════════════

class AuthorizationError(ProtocolError):
    pass

class NotAuthorized(AuthorizationError):
    """Caller is neither owner nor approved for the unit (asset registry)."""

class NotStaker(AuthorizationError):
    """Caller is not the recorded custodian of the unit."""

class InvalidSignature(AuthorizationError):
    """Request signature or public key does not match the staker."""

class NoSuchUnit(ProtocolError):
    """Unit does not exist in the asset registry."""

class AlreadyStaked(ProtocolError):
    pass


# ═══════════════════════════════════════════════════════
# ENGINE / COLLABORATOR STATE
# ═══════════════════════════════════════════════════════

class Paused(ProtocolError):
    def __init__(self, message: str = "Staking is paused"):
        super().__init__(message)

class InsufficientBalance(ProtocolError):
    pass

class ReentrantCall(ProtocolError):
    pass


class FatalLedgerError(ProtocolError):
    """Ledger data is inconsistent. Never retried."""

class Underflow(FatalLedgerError):
    pass
