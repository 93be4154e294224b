"""Pydantic models for the relayer wire contract.

Requests and responses are tagged unions: relay requests carry a `kind`
discriminator and relay results a literal `success` flag, so a payload is
either fully validated into one variant or rejected at the boundary.
"""

import re
import time
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from velo.core.pools import PoolSize
from velo.crypto.keys import is_valid_address
from velo.crypto.stealth import StealthMetaAddress
from velo.utils.encoding import b58decode

COMMITMENT_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestModel(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ProofPayload(WireModel):
    """A client-generated proof and the public signals it commits to."""
    proof: Dict = Field(..., description="Backend-specific proof object")
    public_signals: List[str] = Field(..., min_length=6, max_length=6, description="Decimal public signals")


class NoteFields(RequestModel):
    """The note opening shared by both relay variants."""
    note_commitment: str = Field(..., description="Commitment (64 char hex)")
    nullifier: str = Field(..., description="Nullifier (base58, 32 bytes)")
    secret: str = Field(..., description="Secret (base58, 32 bytes)")
    pool_size: PoolSize = Field(..., description="SMALL, MEDIUM or LARGE")
    proof: Optional[ProofPayload] = Field(None, description="Optional client-side withdrawal proof")
    sender_signature: Optional[str] = Field(None, description="Unused; accepted for older clients")

    @field_validator("note_commitment")
    @classmethod
    def _commitment_hex(cls, value: str) -> str:
        if not COMMITMENT_PATTERN.match(value):
            raise ValueError("Invalid commitment format (expected 64 char hex)")
        return value.lower()

    @field_validator("nullifier", "secret")
    @classmethod
    def _base58_32(cls, value: str) -> str:
        b58decode(value, expected_length=32)
        return value


class RelayWithdrawRequest(NoteFields):
    """Withdraw a note to a static recipient address."""
    kind: Literal["withdraw"] = "withdraw"
    recipient: str = Field(..., description="Recipient public key (base58)")

    @field_validator("recipient")
    @classmethod
    def _recipient_address(cls, value: str) -> str:
        if not is_valid_address(value):
            raise ValueError("Invalid recipient address")
        return value


class RelayStealthRequest(NoteFields):
    """Withdraw a note to a one-time address derived from a stealth meta-address."""
    kind: Literal["stealth"] = "stealth"
    recipient_stealth_meta: str = Field(..., description="Recipient stealth meta-address (base58)")

    @field_validator("recipient_stealth_meta")
    @classmethod
    def _meta_address(cls, value: str) -> str:
        StealthMetaAddress.decode(value)
        return value


RelayRequest = Annotated[Union[RelayWithdrawRequest, RelayStealthRequest], Field(discriminator="kind")]


class RelaySuccess(WireModel):
    """Result of a relayed withdrawal."""
    success: Literal[True] = True
    signature: str = Field(..., description="Transaction signature")
    fee: int = Field(..., description="Relayer fee in lamports")
    recipient_amount: int = Field(..., description="Lamports received by the recipient")
    pool_size: PoolSize
    mode: Literal["test", "proof"]
    timestamp: int = Field(default_factory=now_ms)
    stealth_address: Optional[str] = None
    ephemeral_public_key: Optional[str] = None
    view_tag: Optional[int] = None


class RelayFailure(WireModel):
    """Error body for every failed request."""
    success: Literal[False] = False
    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Error kind")
    retryable: bool = False
    timestamp: int = Field(default_factory=now_ms)


class FeeEstimateRequest(RequestModel):
    pool_size: PoolSize


class FeeEstimateResponse(WireModel):
    """Fee quote for one withdrawal."""
    pool_size: PoolSize
    denomination: int
    fee: int
    recipient_amount: int
    fee_sol: float
    recipient_amount_sol: float


class RelayerInfoResponse(WireModel):
    """Relayer address, fee schedule and supported pools."""
    address: str
    program_id: str
    fee_bps: int
    fee_percent: float
    min_fee: int
    max_fee: int
    supported_pools: List[PoolSize]
    relay_mode: Literal["test", "proof"]
    is_active: bool = True
    total_relayed: int = 0


class PoolStatus(WireModel):
    """Liquidity and accumulator position of one pool."""
    pool_size: PoolSize
    denomination: int
    address: str
    vault: str
    balance: int
    can_withdraw: bool
    next_index: Optional[int] = None
    root: Optional[str] = None
    initialized: bool = True


class PoolsResponse(WireModel):
    pools: List[PoolStatus]


class HealthResponse(WireModel):
    """Health check response."""
    status: str = Field(..., description="Service status")
    relayer: str = Field(..., description="Relayer address")
    timestamp: int = Field(default_factory=now_ms)
    version: str = "0.1.0"
