"""The relayer: validates notes and submits withdrawals it signs itself.

The depositor never signs a withdrawal; the relayer's key pays the network
fee and is the only signer, so the transaction graph does not link the
recipient to the deposit.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional, Tuple, Union

from velo.circuit.withdraw import WithdrawInputs
from velo.core.commitment import Note, parse_commitment_hex
from velo.core.pools import PoolSize, pool_address, vault_address
from velo.crypto.keys import Keypair
from velo.crypto.stealth import StealthMetaAddress, derive_stealth_payment
from velo.exceptions import (
    InsufficientPoolLiquidity,
    InvalidRelayRequest,
    MalformedNote,
    NullifierAlreadySpent,
    ProofVerificationError,
    SpendInProgress,
    StaleRoot,
    UnknownPoolError,
)
from velo.ledger.base import AccumulatorReader, LedgerProgram, SignedInstruction, SpendChecker, TransactionResult
from velo.models.schemas import (
    FeeEstimateResponse,
    PoolStatus,
    ProofPayload,
    RelayerInfoResponse,
    RelayStealthRequest,
    RelaySuccess,
    RelayWithdrawRequest,
)
from velo.proving.pipeline import ProofPipeline
from velo.relayer.fees import FeeSchedule
from velo.storage.database import DatabaseManager
from velo.utils.encoding import b58decode
from velo.utils.hash import address_to_field, field_to_bytes

logger = logging.getLogger(__name__)


class RelayerService:
    """
    Request handling for one relayer key.

    Spends are checked against a local cache first (cheap) and then against
    the ledger (authoritative); the ledger's own rejection on submit is the
    final word and is copied into the local cache. Only one relay per
    nullifier hash may be in flight at a time.
    """

    def __init__(self, keypair: Keypair, ledger: LedgerProgram, accumulator: AccumulatorReader,
                 spend_checker: SpendChecker, fees: Optional[FeeSchedule] = None,
                 program_id: Optional[str] = None, mode: str = "test",
                 pipeline: Optional[ProofPipeline] = None, db: Optional[DatabaseManager] = None,
                 stale_root_retries: int = 3):
        if mode not in ("test", "proof"):
            raise ValueError(f"Unknown relay mode: {mode}")
        if mode == "proof" and pipeline is None:
            raise ValueError("Proof mode needs a proof pipeline")

        self.keypair = keypair
        self.ledger = ledger
        self.accumulator = accumulator
        self.spend_checker = spend_checker
        self.fees = fees or FeeSchedule()
        self.program_id = program_id or getattr(ledger, "program_id")
        self.mode = mode
        self.pipeline = pipeline
        self.db = db
        self.stale_root_retries = stale_root_retries

        self._in_flight = set()
        self._in_flight_lock = threading.Lock()
        self._local_spent: Dict[str, str] = {}
        self._relayed = 0

    @classmethod
    def from_settings(cls, settings, ledger, keypair: Optional[Keypair] = None,
                      db: Optional[DatabaseManager] = None) -> "RelayerService":
        """
        Build a service whose accumulator and spend checks go to `ledger`.

        The keypair is loaded from settings.relayer_keypair_path when not
        given; without either a throwaway key is generated.
        """
        if keypair is None:
            if settings.relayer_keypair_path is not None:
                keypair = Keypair.from_json_file(settings.relayer_keypair_path)
            else:
                keypair = Keypair.generate()
                logger.warning(f"No relayer keypair configured; using ephemeral key {keypair.address}")

        pipeline = ProofPipeline.from_settings(settings) if settings.relay_mode == "proof" else None
        return cls(
            keypair=keypair,
            ledger=ledger,
            accumulator=ledger,
            spend_checker=ledger,
            fees=FeeSchedule.from_settings(settings),
            program_id=settings.program_id,
            mode=settings.relay_mode,
            pipeline=pipeline,
            db=db,
            stale_root_retries=settings.stale_root_retries,
        )

    @property
    def address(self) -> str:
        return self.keypair.address

    # Read-only endpoints
    def estimate_fee(self, pool: PoolSize) -> FeeEstimateResponse:
        return self.fees.estimate(PoolSize(pool))

    def info(self) -> RelayerInfoResponse:
        return RelayerInfoResponse(
            address=self.address,
            program_id=self.program_id,
            fee_bps=self.fees.fee_bps,
            fee_percent=self.fees.fee_percent,
            min_fee=self.fees.min_fee,
            max_fee=self.fees.max_fee,
            supported_pools=list(PoolSize),
            relay_mode=self.mode,
            is_active=True,
            total_relayed=self.total_relayed,
        )

    @property
    def total_relayed(self) -> int:
        if self.db is not None:
            with self.db.get_session() as session:
                return self.db.count_relayed(session)
        return self._relayed

    def pools_status(self):
        statuses = []
        for pool in PoolSize:
            balance = self.ledger.balance(vault_address(pool, self.program_id))
            status = PoolStatus(
                pool_size=pool,
                denomination=pool.lamports,
                address=pool_address(pool, self.program_id),
                vault=vault_address(pool, self.program_id),
                balance=balance,
                can_withdraw=balance >= pool.lamports,
            )
            try:
                snapshot = self.accumulator.snapshot(pool)
            except UnknownPoolError:
                status.initialized = False
                status.can_withdraw = False
            else:
                status.next_index = snapshot.next_index
                status.root = field_to_bytes(snapshot.root).hex()
            statuses.append(status)
        return statuses

    # Local spent cache
    def _locally_spent(self, key: str) -> bool:
        if key in self._local_spent:
            return True
        if self.db is not None:
            with self.db.get_session() as session:
                return self.db.is_spent(session, key)
        return False

    def _remember_spent(self, key: str, pool: PoolSize, signature: Optional[str]) -> None:
        self._local_spent[key] = signature or ""
        if self.db is not None:
            with self.db.get_session() as session:
                self.db.record_spent(session, key, pool.value, signature)

    @contextmanager
    def _spend_guard(self, key: str):
        with self._in_flight_lock:
            if key in self._in_flight:
                raise SpendInProgress("A relay for this note is already in progress")
            self._in_flight.add(key)
        try:
            yield
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(key)

    # Relay
    def _open_note(self, request: Union[RelayWithdrawRequest, RelayStealthRequest]) -> Note:
        try:
            nullifier = b58decode(request.nullifier, expected_length=32)
            secret = b58decode(request.secret, expected_length=32)
        except ValueError as e:
            raise MalformedNote(f"Invalid note encoding: {e}") from e

        note = Note.from_parts(request.pool_size, nullifier, secret)
        if note.commitment != parse_commitment_hex(request.note_commitment):
            raise MalformedNote("Invalid note: commitment does not match nullifier and secret")

        leaf_index = self.accumulator.index_of(note.pool, note.commitment)
        if leaf_index is None:
            raise MalformedNote(f"Commitment is not in the {note.pool.value} pool")
        return note.with_leaf_index(leaf_index)

    def relay_withdraw(self, request: RelayWithdrawRequest) -> RelaySuccess:
        """
        Relay a withdrawal to a static recipient.

        Raises:
            MalformedNote: If the note does not open its commitment or is not deposited
            NullifierAlreadySpent: If the note was already withdrawn
            SpendInProgress: If another relay for the note is in flight
            InsufficientPoolLiquidity: If the vault cannot pay out
            ProofVerificationError: If a client proof does not check out
            StaleRoot: If a proof kept missing the current root
        """
        note = self._open_note(request)
        result, fee = self._relay(note, request.recipient, request.proof)
        return RelaySuccess(
            signature=result.signature,
            fee=fee,
            recipient_amount=note.denomination - fee,
            pool_size=note.pool,
            mode=self.mode,
        )

    def relay_stealth_transfer(self, request: RelayStealthRequest) -> RelaySuccess:
        """
        Relay a withdrawal to a fresh one-time address for the recipient.

        The response carries the ephemeral key and view tag the recipient
        scans for; nothing else links the payment to the meta-address.
        """
        if request.proof is not None:
            raise InvalidRelayRequest(
                "Client proofs cannot bind a stealth address the relayer derives; omit the proof"
            )
        note = self._open_note(request)
        try:
            payment = derive_stealth_payment(StealthMetaAddress.decode(request.recipient_stealth_meta))
        except ValueError as e:
            raise InvalidRelayRequest(f"Unusable stealth meta-address: {e}") from e
        result, fee = self._relay(note, payment.stealth_address, None)
        return RelaySuccess(
            signature=result.signature,
            fee=fee,
            recipient_amount=note.denomination - fee,
            pool_size=note.pool,
            mode=self.mode,
            stealth_address=payment.stealth_address,
            ephemeral_public_key=payment.ephemeral_public,
            view_tag=payment.view_tag,
        )

    def handle(self, request: Union[RelayWithdrawRequest, RelayStealthRequest]) -> RelaySuccess:
        if isinstance(request, RelayStealthRequest):
            return self.relay_stealth_transfer(request)
        return self.relay_withdraw(request)

    def _relay(self, note: Note, recipient: str, client_proof: Optional[ProofPayload]) -> Tuple[TransactionResult, int]:
        key = note.nullifier_hash_hex
        pool = note.pool

        if self._locally_spent(key):
            raise NullifierAlreadySpent("Note already spent")

        with self._spend_guard(key):
            if self.spend_checker.is_spent(pool, note.nullifier_hash):
                self._remember_spent(key, pool, None)
                raise NullifierAlreadySpent("Note already spent")

            vault_balance = self.ledger.balance(vault_address(pool, self.program_id))
            if vault_balance < pool.lamports:
                raise InsufficientPoolLiquidity(f"Insufficient pool liquidity in {pool.value}")

            fee = self.fees.fee_for(pool)
            try:
                if self.mode == "test":
                    result = self._submit_test(note, recipient, fee)
                elif client_proof is not None:
                    result = self._submit_client_proof(note, recipient, fee, client_proof)
                else:
                    result = self._submit_with_proof(note, recipient, fee)
            except NullifierAlreadySpent:
                self._remember_spent(key, pool, None)
                raise

            self._remember_spent(key, pool, result.signature)
            self._relayed += 1

        logger.info(f"Relayed {pool.value} withdrawal {result.signature} (fee {fee} lamports)")
        return result, fee

    def _submit(self, name: str, data: Dict) -> TransactionResult:
        instruction = SignedInstruction.create(self.keypair, self.program_id, name, data)
        return self.ledger.submit(instruction)

    def _submit_test(self, note: Note, recipient: str, fee: int) -> TransactionResult:
        return self._submit("withdraw_test", {
            "denomination": note.denomination,
            "nullifierHash": note.nullifier_hash_hex,
            "recipient": recipient,
            "fee": fee,
        })

    def _submit_proof(self, note: Note, recipient: str, proof: Dict, public_signals) -> TransactionResult:
        return self._submit("withdraw", {
            "denomination": note.denomination,
            "proof": proof,
            "publicSignals": [str(s) for s in public_signals],
            "recipient": recipient,
        })

    def _submit_client_proof(self, note: Note, recipient: str, fee: int, payload: ProofPayload) -> TransactionResult:
        try:
            signals = [int(s) for s in payload.public_signals]
        except ValueError as e:
            raise InvalidRelayRequest("Public signals must be decimal integers") from e
        root, nullifier_hash, recipient_field, relayer_field, proof_fee, refund = signals

        if nullifier_hash != note.nullifier_hash:
            raise ProofVerificationError("Proof is for a different nullifier")
        if recipient_field != address_to_field(b58decode(recipient, expected_length=32)):
            raise ProofVerificationError("Proof is bound to a different recipient")
        if relayer_field != address_to_field(self.keypair.public_bytes):
            raise ProofVerificationError("Proof is bound to a different relayer")
        if proof_fee != fee or refund != 0:
            raise ProofVerificationError(f"Proof must bind fee {fee} and refund 0")
        if not self.accumulator.is_known_root(note.pool, root):
            raise StaleRoot("Proof root is not a recent root of the pool")
        if not self.pipeline.verify(payload.public_signals, payload.proof):
            raise ProofVerificationError("Withdrawal proof did not verify")

        return self._submit_proof(note, recipient, payload.proof, payload.public_signals)

    def _submit_with_proof(self, note: Note, recipient: str, fee: int) -> TransactionResult:
        recipient_bytes = b58decode(recipient, expected_length=32)
        last_error = None
        for attempt in range(self.stale_root_retries + 1):
            try:
                snapshot = self.accumulator.snapshot(note.pool)
                elements, indices = self.accumulator.path_for(note.pool, note.leaf_index, at_root=snapshot.root)
                inputs = WithdrawInputs.from_note(
                    note, snapshot.root, elements, indices,
                    recipient=recipient_bytes, relayer=self.keypair.public_bytes, fee=fee,
                )
                bundle = self.pipeline.prove(inputs)
                return self._submit_proof(note, recipient, bundle.proof, bundle.public_signals)
            except StaleRoot as e:
                last_error = e
                logger.warning(f"Root advanced while proving (attempt {attempt + 1}); refreshing snapshot")
        raise last_error
