"""Custom exceptions for the Velo privacy pool system."""

from typing import List, Optional


class VeloError(Exception):
    """Base exception for all Velo errors."""

    retryable = False


# Note Errors
class NoteError(VeloError):
    """Base exception for note and commitment errors."""
    pass


class MalformedNote(NoteError):
    """Raised when a commitment, nullifier or secret fails format checks."""
    pass


# Merkle Tree Errors
class MerkleTreeError(VeloError):
    """Base exception for Merkle accumulator errors."""
    pass


class TreeFullError(MerkleTreeError):
    """Raised when the accumulator already holds 2^depth leaves."""
    pass


class InvalidLeafIndexError(MerkleTreeError):
    """Raised when a leaf index has not been appended yet."""
    pass


class StaleRoot(MerkleTreeError):
    """Raised when a path or proof refers to a root the accumulator has moved past."""

    retryable = True


# Proof Errors
class ProofError(VeloError):
    """Base exception for proof pipeline errors."""
    pass


class ConstraintViolation(ProofError):
    """Raised when a witness does not satisfy the withdraw circuit."""

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


class ProofVerificationError(ProofError):
    """Raised when a proof does not verify against its public signals."""
    pass


class ProofGenerationError(ProofError):
    """Raised when the proving toolchain fails for a reason other than the witness."""
    pass


class ArtifactMissing(ProofError):
    """Raised when setup artifacts are missing or belong to another circuit."""
    pass


class CeremonyError(ProofError):
    """Raised when a setup or ceremony step fails."""
    pass


# Ledger Errors
class LedgerError(VeloError):
    """Base exception for ledger program rejections."""
    pass


class NullifierAlreadySpent(LedgerError):
    """Raised when a nullifier hash has already been used for a withdrawal."""
    pass


class InsufficientPoolLiquidity(LedgerError):
    """Raised when a pool vault cannot cover a withdrawal."""
    pass


class UnknownPoolError(LedgerError):
    """Raised when a pool tier has not been initialized."""
    pass


# Relayer Errors
class RelayerError(VeloError):
    """Base exception for relayer errors."""
    pass


class SpendInProgress(RelayerError):
    """Raised when another relay for the same nullifier hash is still in flight."""
    pass


class InvalidRelayRequest(RelayerError):
    """Raised when a relay request fails validation."""
    pass


class RelayerUnavailable(RelayerError):
    """Raised when the relayer cannot be reached or is temporarily failing."""

    retryable = True


# Split Errors
class SplitError(VeloError):
    """Base exception for split planning and execution."""
    pass


class UnrepresentableAmount(SplitError):
    """Raised in strict mode when an amount leaves a sub-minimum remainder."""
    pass


class PartialSplitFailure(SplitError):
    """Raised when a split stops after some of its parts were already sent."""

    def __init__(self, message: str, completed: Optional[List] = None, failed=None):
        super().__init__(message)
        self.completed = list(completed or [])
        self.failed = failed


# Storage Errors
class StorageError(VeloError):
    """Base exception for storage errors."""
    pass
