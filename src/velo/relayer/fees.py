"""Relayer fee schedule."""

from dataclasses import dataclass

from velo.core.pools import LAMPORTS_PER_SOL, PoolSize
from velo.models.schemas import FeeEstimateResponse

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class FeeSchedule:
    """
    fee = clamp(denomination * fee_bps / 10000, min_fee, max_fee)

    All amounts are lamports; the division rounds down.
    """

    min_fee: int = 10_000
    max_fee: int = 100_000_000
    fee_bps: int = 50

    def __post_init__(self):
        if self.min_fee < 0 or self.max_fee < self.min_fee:
            raise ValueError("Fee bounds must satisfy 0 <= min_fee <= max_fee")
        if not 0 <= self.fee_bps <= BPS_DENOMINATOR:
            raise ValueError("fee_bps must be between 0 and 10000")

    @classmethod
    def from_settings(cls, settings) -> "FeeSchedule":
        return cls(min_fee=settings.min_fee, max_fee=settings.max_fee, fee_bps=settings.fee_bps)

    @property
    def fee_percent(self) -> float:
        return self.fee_bps / 100

    def fee_for(self, pool: PoolSize) -> int:
        proportional = pool.lamports * self.fee_bps // BPS_DENOMINATOR
        return min(max(proportional, self.min_fee), self.max_fee, pool.lamports)

    def estimate(self, pool: PoolSize) -> FeeEstimateResponse:
        fee = self.fee_for(pool)
        recipient_amount = pool.lamports - fee
        return FeeEstimateResponse(
            pool_size=pool,
            denomination=pool.lamports,
            fee=fee,
            recipient_amount=recipient_amount,
            fee_sol=fee / LAMPORTS_PER_SOL,
            recipient_amount_sol=recipient_amount / LAMPORTS_PER_SOL,
        )
