"""
Database configuration, session management and row locking
"""
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import Select

from .config import DATABASE_URL

T = TypeVar("T")

# Create engine
engine = create_engine(
    DATABASE_URL,
    future=True,
    pool_pre_ping=True,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Create base class for models
Base = declarative_base()


class Storage:
    """Session factory handed to every security component.

    Components open one short session per operation. Any read-modify-write on
    shared state goes through ``with_row_lock`` so that concurrent requests
    touching the same logical key serialize on that single row.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    def session(self) -> Session:
        return self.session_factory()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        s = self.session_factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    @staticmethod
    def locking_select(model, key: Dict[str, Any], *criteria) -> Select:
        """SELECT ... FOR UPDATE of the single row identified by ``key``."""
        return select(model).filter_by(**key).where(*criteria).with_for_update()

    def with_row_lock(
        self,
        session: Session,
        model,
        key: Dict[str, Any],
        fn: Callable[[Optional[Any]], T],
        *criteria,
    ) -> T:
        """Call ``fn(row)`` while holding the row lock for ``key``.

        ``row`` is None when no row exists yet. The lock lasts until the
        caller commits or rolls back ``session``.
        """
        row = session.execute(self.locking_select(model, key, *criteria)).scalars().first()
        return fn(row)
