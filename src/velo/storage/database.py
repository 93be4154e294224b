"""SQLAlchemy storage for the relayer's local spent-nullifier cache."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from velo.exceptions import StorageError

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SpentNullifier(Base):
    """A nullifier hash this relayer has seen spent, with the relay transaction."""
    __tablename__ = "spent_nullifiers"

    id = Column(Integer, primary_key=True)
    nullifier_hash = Column(String(64), unique=True, nullable=False, index=True)
    pool_size = Column(String(16), nullable=False)
    relay_signature = Column(String(128), nullable=True)
    spent_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SpentNullifier({self.nullifier_hash[:8]}... {self.pool_size})>"


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, database_url: str = "sqlite:///velo_relayer.db", echo: bool = False):
        """
        Initialize database manager.

        Args:
            database_url: SQLAlchemy URL; "sqlite://" keeps everything in memory
            echo: Log SQL statements
        """
        self.database_url = database_url
        engine_args = {"echo": echo}
        if database_url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_args["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_args)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_tables(self):
        """Create all tables in database."""
        Base.metadata.create_all(self.engine)

    def drop_tables(self):
        """Drop all tables (for testing)."""
        Base.metadata.drop_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # Nullifier operations
    def record_spent(self, session: Session, nullifier_hash: str, pool_size: str,
                     relay_signature: Optional[str] = None) -> SpentNullifier:
        """
        Record a spent nullifier hash. Recording the same hash twice keeps the first row.

        Raises:
            StorageError: If the write fails
        """
        existing = self.get_spent(session, nullifier_hash)
        if existing:
            return existing
        record = SpentNullifier(
            nullifier_hash=nullifier_hash,
            pool_size=pool_size,
            relay_signature=relay_signature,
        )
        try:
            session.add(record)
            session.commit()
        except IntegrityError:
            session.rollback()
            return self.get_spent(session, nullifier_hash)
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to record spent nullifier: {e}") from e
        return record

    def get_spent(self, session: Session, nullifier_hash: str) -> Optional[SpentNullifier]:
        """Get spent nullifier record by hash."""
        return session.query(SpentNullifier).filter_by(nullifier_hash=nullifier_hash).first()

    def is_spent(self, session: Session, nullifier_hash: str) -> bool:
        """Check if nullifier has been recorded as spent."""
        return self.get_spent(session, nullifier_hash) is not None

    def count_relayed(self, session: Session) -> int:
        """Number of withdrawals this relayer submitted itself."""
        return session.query(SpentNullifier).filter(SpentNullifier.relay_signature.isnot(None)).count()


# Default database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager(database_url: str = "sqlite:///velo_relayer.db") -> DatabaseManager:
    """Get or create default database manager."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)
        _db_manager.create_tables()
    return _db_manager


def reset_db_manager():
    """Reset database manager (for testing)."""
    global _db_manager
    _db_manager = None
