"""Main package initialization."""

__version__ = "0.1.0"
__author__ = "Velo Team"
__description__ = "Velo: fixed-denomination privacy pools with relayed withdrawals"

from .core.commitment import Commitment, Note
from .core.merkle_tree import MerkleTree
from .core.pools import PoolSize
from .proving.pipeline import ProofPipeline
from .relayer.fees import FeeSchedule
from .scheduler.split import SplitPlan, plan_split

__all__ = [
    "Commitment",
    "Note",
    "MerkleTree",
    "PoolSize",
    "ProofPipeline",
    "FeeSchedule",
    "SplitPlan",
    "plan_split",
]
