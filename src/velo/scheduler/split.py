"""Splitting an arbitrary amount into fixed-denomination withdrawals.

An observer of the pools sees several unrelated withdrawals of standard sizes
at randomized times instead of one transfer of the true amount.
"""

import asyncio
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from velo.core.pools import LAMPORTS_PER_SOL, PoolSize
from velo.exceptions import PartialSplitFailure, SplitError, UnrepresentableAmount

logger = logging.getLogger(__name__)

DEFAULT_MIN_DELAY = 5.0
DEFAULT_MAX_DELAY = 60.0

Amount = Union[Decimal, str, int, float]
SendOne = Callable[[PoolSize, int], Awaitable[str]]


def sol_to_lamports(amount: Amount) -> int:
    """
    Exact SOL to lamports conversion, rounding sub-lamport digits down.

    Raises:
        ValueError: If the amount is negative or not a number
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValueError(f"Not an amount: {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise ValueError(f"Amount must be a non-negative number: {amount!r}")
    return int((value * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


def format_sol(lamports: int) -> str:
    text = format(Decimal(lamports) / LAMPORTS_PER_SOL, "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


@dataclass
class SplitPart:
    """One withdrawal of a split: which tier, when, and its position in submission order."""

    pool: PoolSize
    delay: float
    order: int

    @property
    def amount(self) -> int:
        return self.pool.lamports

    def to_dict(self) -> dict:
        return {
            "poolSize": self.pool.value,
            "amount": self.pool.sol,
            "delay": self.delay,
            "order": self.order,
        }


@dataclass
class SplitPlan:
    """Parts of a split in submission order, with the amount they cover."""

    requested: int
    parts: List[SplitPart] = field(default_factory=list)

    @property
    def total_amount(self) -> int:
        return sum(part.amount for part in self.parts)

    @property
    def unfulfilled(self) -> int:
        """Lamports below the smallest denomination that no part covers."""
        return self.requested - self.total_amount

    @property
    def estimated_duration(self) -> float:
        return max((part.delay for part in self.parts), default=0.0)

    @property
    def num_transactions(self) -> int:
        return len(self.parts)

    def counts(self) -> Dict[PoolSize, int]:
        return dict(Counter(part.pool for part in self.parts))

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "totalAmount": self.total_amount,
            "unfulfilled": self.unfulfilled,
            "estimatedDuration": self.estimated_duration,
            "numTransactions": self.num_transactions,
            "parts": [part.to_dict() for part in self.parts],
        }


def decompose(lamports: int) -> List[PoolSize]:
    """Greedy largest-first decomposition into pool tiers."""
    pools = []
    remaining = lamports
    for pool in PoolSize.ordered():
        count, remaining = divmod(remaining, pool.lamports)
        pools.extend([pool] * count)
    return pools


def plan_split(amount: Amount, strict: bool = False, rng: Optional[random.Random] = None,
               min_delay: float = DEFAULT_MIN_DELAY, max_delay: float = DEFAULT_MAX_DELAY) -> SplitPlan:
    """
    Plan the withdrawals that together send `amount` SOL.

    Each part gets an independent uniform(min_delay, max_delay) gap; the gaps
    are summed into increasing absolute delays, and the tiers are shuffled
    across those delay slots so submission order does not follow the
    decomposition.

    Args:
        amount: Amount in SOL
        strict: Raise instead of reporting a sub-minimum remainder
        rng: Random source, for reproducible plans

    Raises:
        UnrepresentableAmount: In strict mode, if part of the amount cannot be covered
        ValueError: On a negative amount or bad delay bounds
    """
    if not 0 <= min_delay <= max_delay:
        raise ValueError("Delays must satisfy 0 <= min_delay <= max_delay")
    rng = rng or random.SystemRandom()
    requested = sol_to_lamports(amount)

    pools = decompose(requested)
    slots = []
    elapsed = 0.0
    for _ in pools:
        elapsed += rng.uniform(min_delay, max_delay)
        slots.append(elapsed)
    rng.shuffle(pools)

    plan = SplitPlan(
        requested=requested,
        parts=[SplitPart(pool=pool, delay=delay, order=i) for i, (pool, delay) in enumerate(zip(pools, slots))],
    )
    if plan.unfulfilled:
        if strict:
            raise UnrepresentableAmount(
                f"{format_sol(plan.unfulfilled)} SOL is below the smallest denomination"
            )
        logger.warning(f"Split leaves {plan.unfulfilled} lamports unfulfilled")
    return plan


def describe(plan: SplitPlan) -> str:
    """Human summary such as '1x 1 SOL + 5x 0.1 SOL over ~3 minutes'."""
    counts = plan.counts()
    pieces = [f"{counts[pool]}x {format_sol(pool.lamports)} SOL" for pool in PoolSize.ordered() if counts.get(pool)]
    if not pieces:
        return "nothing to send"
    minutes = int(-(-plan.estimated_duration // 60))
    text = f"{' + '.join(pieces)} over ~{minutes} minutes"
    if plan.unfulfilled:
        text += f" ({format_sol(plan.unfulfilled)} SOL unfulfilled)"
    return text


@dataclass
class NoteCoverage:
    valid: bool
    missing: Dict[PoolSize, int]


def validate_notes(plan: SplitPlan, notes: Iterable) -> NoteCoverage:
    """
    Check that there is one unspent note per part.

    `notes` may hold Note objects or bare PoolSize values.
    """
    have = Counter(getattr(note, "pool", note) for note in notes if not getattr(note, "used", False))
    missing = {}
    for pool, needed in plan.counts().items():
        if needed > have.get(pool, 0):
            missing[pool] = needed - have.get(pool, 0)
    return NoteCoverage(valid=not missing, missing=missing)


class PartState(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNCONFIRMED = "unconfirmed"


@dataclass
class PartStatus:
    index: int
    part: SplitPart
    state: PartState = PartState.PENDING
    wait: float = 0.0
    signature: Optional[str] = None
    error: Optional[str] = None


class SplitExecution:
    """
    Sends the parts of a plan one at a time, in delay order.

    Each call to step() makes one transition of the current part:
    PENDING -> WAITING -> SENDING -> SUCCEEDED | FAILED. Execution halts at the
    first failure. cancel() stops a part whose transaction has not been started;
    a part whose send is in flight is left UNCONFIRMED, because its transaction
    may still land, until the caller settles it with confirm().
    """

    def __init__(self, plan: SplitPlan, send_one: SendOne,
                 on_update: Optional[Callable[[PartStatus], None]] = None):
        self.plan = plan
        self.send_one = send_one
        self.on_update = on_update
        ordered = sorted(plan.parts, key=lambda part: part.delay)
        self.statuses = [PartStatus(index=i, part=part) for i, part in enumerate(ordered)]
        self._cursor = 0
        self._halted = False
        self._cancel = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._halted or self._cursor >= len(self.statuses)

    @property
    def current(self) -> Optional[PartStatus]:
        return None if self.done else self.statuses[self._cursor]

    @property
    def completed(self) -> List[PartStatus]:
        return [s for s in self.statuses if s.state is PartState.SUCCEEDED]

    @property
    def failed(self) -> Optional[PartStatus]:
        return next((s for s in self.statuses if s.state is PartState.FAILED), None)

    @property
    def unconfirmed(self) -> List[PartStatus]:
        return [s for s in self.statuses if s.state is PartState.UNCONFIRMED]

    def cancel(self) -> None:
        self._cancel.set()

    def confirm(self, index: int, succeeded: bool, signature: Optional[str] = None) -> PartStatus:
        """Settle a part left UNCONFIRMED by cancellation."""
        status = self.statuses[index]
        if status.state is not PartState.UNCONFIRMED:
            raise SplitError(f"Part {index} is {status.state.value}, not unconfirmed")
        status.state = PartState.SUCCEEDED if succeeded else PartState.FAILED
        status.signature = signature
        self._notify(status)
        return status

    def _notify(self, status: PartStatus) -> None:
        if self.on_update is not None:
            self.on_update(status)

    def _cancel_remaining(self) -> None:
        for status in self.statuses[self._cursor:]:
            if status.state in (PartState.PENDING, PartState.WAITING, PartState.SENDING):
                status.state = PartState.CANCELLED
                self._notify(status)
        self._halted = True
        logger.info(f"Split cancelled after {len(self.completed)} of {len(self.statuses)} parts")

    async def step(self) -> PartStatus:
        if self.done:
            raise SplitError("Split execution has already finished")
        status = self.statuses[self._cursor]

        # SENDING here means send_one has not been started yet
        if self._cancel.is_set() and status.state in (PartState.PENDING, PartState.WAITING, PartState.SENDING):
            self._cancel_remaining()
            return status

        if status.state is PartState.PENDING:
            previous = self.statuses[self._cursor - 1].part.delay if self._cursor else 0.0
            status.wait = max(0.0, status.part.delay - previous)
            status.state = PartState.WAITING

        elif status.state is PartState.WAITING:
            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=status.wait)
            except asyncio.TimeoutError:
                status.state = PartState.SENDING
            else:
                self._cancel_remaining()
                return status

        elif status.state is PartState.SENDING:
            await self._send(status)

        self._notify(status)
        return status

    async def _send(self, status: PartStatus) -> None:
        send = asyncio.ensure_future(self.send_one(status.part.pool, status.index))
        cancelled = asyncio.ensure_future(self._cancel.wait())
        done, _ = await asyncio.wait({send, cancelled}, return_when=asyncio.FIRST_COMPLETED)

        if send not in done:
            send.cancel()
            status.state = PartState.UNCONFIRMED
            self._cancel_remaining()
            logger.warning(f"Part {status.index} was cancelled while sending; confirm its outcome")
            return

        cancelled.cancel()
        try:
            status.signature = send.result()
        except Exception as e:
            status.state = PartState.FAILED
            status.error = str(e)
            self._halted = True
            logger.error(f"Split part {status.index} ({status.part.pool.value}) failed: {e}")
        else:
            status.state = PartState.SUCCEEDED
            self._cursor += 1

    async def run(self) -> List[PartStatus]:
        """
        Drive the execution to the end.

        Raises:
            PartialSplitFailure: If a part failed; lists the parts already sent
        """
        while not self.done:
            await self.step()
        failed = self.failed
        if failed is not None:
            raise PartialSplitFailure(
                f"Part {failed.index} failed after {len(self.completed)} parts were sent: {failed.error}",
                completed=self.completed,
                failed=failed,
            )
        return self.statuses


async def execute_split(plan: SplitPlan, send_one: SendOne,
                        on_update: Optional[Callable[[PartStatus], None]] = None) -> List[PartStatus]:
    """Run a whole plan; see SplitExecution."""
    return await SplitExecution(plan, send_one, on_update).run()
