"""
Database service for the activity engine
"""

import os
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Hashable, Iterator, Optional, Tuple
from weakref import WeakSet
from sqlalchemy import create_engine, event, select, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from ..models import Base, Attempt, AttemptStatus, ReviewState, LedgerEntry
from .settings_config_service import get_settings_service


class KeyLockRegistry:
    """Per-key mutexes for read-modify-write sections within one process.

    Locks are reference counted so the registry does not grow with every key
    ever seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self):
        return len(self._locks)


class DatabaseService:
    """Database service for managing SQLite connections and sessions"""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database service"""
        if db_path is None:
            db_path = os.getenv("ACTIVITY_ENGINE_DB_PATH") or get_settings_service().get(
                "database", "path", "activity_engine.db"
            )

        self.db_path = Path(db_path)
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker[Session]] = None
        self._open_sessions: WeakSet[Session] = WeakSet()
        self.key_locks = KeyLockRegistry()

        from .logging import get_logging_service

        self.logger = get_logging_service().get_logger("database")

        self._setup_engine()
        self._create_tables()

    def _setup_engine(self):
        """Set up SQLAlchemy engine with SQLite optimizations"""
        database_url = f"sqlite:///{self.db_path}"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        if os.getenv("ACTIVITY_ENGINE_TEST_MODE"):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                pool_pre_ping=True,
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=bool(os.getenv("ACTIVITY_ENGINE_DEV_MODE")),
                connect_args={"check_same_thread": False, "timeout": 30},
                pool_pre_ping=True,
                pool_recycle=3600,
            )

        # Use WAL mode for better concurrency
        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            if isinstance(dbapi_connection, sqlite3.Connection):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        weakref.finalize(self, self.engine.dispose)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    def _create_tables(self):
        """Create all database tables"""
        if self.engine is None:
            raise RuntimeError("Database engine not initialized")
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a database session"""
        if self.SessionLocal is None:
            raise RuntimeError("Database session factory not initialized")
        session = self.SessionLocal()
        self._open_sessions.add(session)
        return session

    @contextmanager
    def key_lock(self, *key: Hashable) -> Iterator[None]:
        """Serialise read-modify-write on one logical key, e.g.
        ``("attempt", student_id, activity_id)``."""
        with self.key_locks.hold(tuple(key)):
            yield

    def close(self):
        """Close database connections"""
        if self.engine:
            for session in list(self._open_sessions):
                session.close()
            self.engine.dispose()

    def get_database_stats(self) -> dict:
        """Get row counts for the engine's append-only and mutable tables"""
        with self.get_session() as session:
            return {
                "review_states": session.scalar(
                    select(func.count()).select_from(ReviewState)
                ),
                "attempts": session.scalar(select(func.count()).select_from(Attempt)),
                "pending_attempts": session.scalar(
                    select(func.count())
                    .select_from(Attempt)
                    .where(Attempt.status == AttemptStatus.GRADING_PENDING)
                ),
                "ledger_entries": session.scalar(
                    select(func.count()).select_from(LedgerEntry)
                ),
            }


# Global database service instance
_db_service: Optional[DatabaseService] = None


def get_db_service() -> DatabaseService:
    """Get the global database service instance"""
    global _db_service
    if _db_service is None:
        _db_service = DatabaseService()
    return _db_service


def init_db_service(db_path: Optional[str] = None) -> DatabaseService:
    """Initialize (or replace) the global database service"""
    global _db_service
    if _db_service is not None:
        _db_service.close()
    _db_service = DatabaseService(db_path)
    return _db_service
