from pydantic import BaseModel, Field
from typing import List
from ..crypto.hash import sha256_hex
from ..crypto.keys import sign as crypto_sign
from ..crypto.keys import verify as crypto_verify


class StakedBatch(BaseModel):
    """Emitted once per successful stake, after all state mutations."""
    staker: str
    count: int
    units: List[int] = Field(default_factory=list)


class WithdrawnBatch(BaseModel):
    """Emitted once per successful withdraw/exit, after all state mutations."""
    staker: str
    count: int
    units: List[int] = Field(default_factory=list)


class RewardPaid(BaseModel):
    staker: str
    amount: int


class SignedRequest(BaseModel):
    """
    Request body signed by the staker's key.

    The signature covers the operation name, so a stake request cannot be
    replayed against /withdraw. The nonce must match the staker's account.
    """
    staker: str
    nonce: int = 0
    signature: str = ""  # hex, 64 bytes (r,s)
    pub_key: str = ""    # hex compressed public key of staker

    def _fields(self) -> str:
        return ""

    def hash(self, op: str) -> str:
        payload_str = (
            op
            + self.staker
            + self._fields()
            + str(self.nonce)
            + self.pub_key
        )
        return sha256_hex(payload_str.encode("utf-8"))

    def sign(self, op: str, priv_key_bytes: bytes):
        msg_hash = bytes.fromhex(self.hash(op))
        self.signature = crypto_sign(msg_hash, priv_key_bytes).hex()

    def verify_signature(self, op: str) -> bool:
        try:
            msg_hash = bytes.fromhex(self.hash(op))
            sig_bytes = bytes.fromhex(self.signature)
            pub_bytes = bytes.fromhex(self.pub_key)
        except ValueError:
            return False
        return crypto_verify(msg_hash, sig_bytes, pub_bytes)


class BatchRequest(SignedRequest):
    units: List[int] = Field(default_factory=list)

    def _fields(self) -> str:
        return ",".join(str(u) for u in self.units)


class ClaimRequest(SignedRequest):
    pass
