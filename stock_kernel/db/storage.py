"""
Module: stock_kernel.db.storage
Responsibility: The single injected storage handle.  Owns the SQLAlchemy
    engine and session factory with an explicit ``open()``/``close()``
    lifecycle, and hands out transactional units of work.
Architecture position: Kernel > DB.  Constructed once by the process
    (or by a test fixture) and passed by reference to the API facade.
    There is no module-level engine.

Invariants enforced:
    - Atomicity: ``unit_of_work()`` commits on normal exit and rolls back
      on any exception.  Shipment batching and ledger consumption share
      one unit of work, so they commit or roll back together.
    - Bounded waits: lock waits are capped by ``lock_timeout_seconds``
      (PostgreSQL ``lock_timeout``, SQLite busy timeout) and pool waits by
      ``pool_timeout_seconds``.  Contention surfaces as BusyError.
    - PostgreSQL runs READ COMMITTED with explicit ``SELECT ... FOR
      UPDATE`` where serialization is required.  SQLite starts every
      transaction with ``BEGIN IMMEDIATE`` so writers serialize on the
      database lock instead.

Failure modes:
    - RuntimeError if used before ``open()`` or after ``close()``.
    - BusyError on lock timeout, deadlock or serialization failure.
    - StaleVersionError if the ORM detects a concurrent version bump.
    - DuplicateKeyError on a unique constraint violation at flush/commit.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from stock_kernel.db.base import Base
from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.ports import AuditWriter
from stock_kernel.exceptions import (
    BusyError,
    DuplicateKeyError,
    StaleVersionError,
    StockKernelError,
)
from stock_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from stock_config.schema import DatabaseConfig

logger = get_logger("db.storage")

T = TypeVar("T")

# lock_not_available, deadlock_detected, serialization_failure, query_canceled
_PG_CONTENTION_CODES = frozenset({"55P03", "40P01", "40001", "57014"})
_SQLITE_CONTENTION_MARKERS = ("database is locked", "database table is locked")


def is_contention_error(exc: OperationalError) -> bool:
    """True when the driver error means "try again later"."""
    orig = exc.orig
    if getattr(orig, "pgcode", None) in _PG_CONTENTION_CODES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _SQLITE_CONTENTION_MARKERS)


class Storage:
    """
    Storage handle with explicit lifecycle.

    Contract:
        ``open()`` before use, ``close()`` when done.  Usable as a context
        manager.  Every database interaction goes through
        ``unit_of_work()`` or ``run_in_transaction()``.

    Guarantees:
        - Each unit of work gets its own Session; sessions are never
          shared between threads.
        - Buffered audit events are published only after COMMIT.

    Non-goals:
        - Does NOT retry BusyError.  Retrying is the caller's decision.
        - In-memory SQLite is not supported for concurrent use; use a
          file-backed database.
    """

    def __init__(
        self,
        database_url: str,
        *,
        echo: bool = False,
        pool_size: int = 10,
        max_overflow: int = 10,
        pool_timeout_seconds: float = 30,
        lock_timeout_seconds: float = 5,
    ):
        self.database_url = database_url
        self._echo = echo
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_timeout = pool_timeout_seconds
        self._lock_timeout = lock_timeout_seconds
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Storage:
        return cls(
            config.url,
            echo=config.echo,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout_seconds=config.pool_timeout_seconds,
            lock_timeout_seconds=config.lock_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Storage is not open. Call open() first.")
        return self._engine

    def open(self) -> Storage:
        """Create the engine and session factory.  Idempotent."""
        if self._engine is not None:
            return self

        if self.database_url.startswith("sqlite"):
            engine = create_engine(
                self.database_url,
                echo=self._echo,
                connect_args={"timeout": self._lock_timeout},
            )
            _install_sqlite_immediate_transactions(engine)
        else:
            lock_ms = int(self._lock_timeout * 1000)
            engine = create_engine(
                self.database_url,
                echo=self._echo,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                pool_timeout=self._pool_timeout,
                pool_pre_ping=True,
                isolation_level="READ COMMITTED",
                connect_args={"options": f"-c lock_timeout={lock_ms}"},
            )

        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info(
            "storage_opened",
            extra={
                "dialect": engine.dialect.name,
                "lock_timeout_seconds": self._lock_timeout,
            },
        )
        return self

    def close(self) -> None:
        """Dispose the engine.  Safe to call twice."""
        if self._engine is None:
            return
        self._engine.dispose()
        logger.info("storage_closed", extra={"dialect": self._engine.dialect.name})
        self._engine = None
        self._session_factory = None

    def __enter__(self) -> Storage:
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def create_schema(self) -> None:
        import stock_kernel.models  # noqa: F401  registers every table

        Base.metadata.create_all(self.engine)

    def drop_schema(self) -> None:
        import stock_kernel.models  # noqa: F401

        Base.metadata.drop_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def unit_of_work(
        self,
        audit_writer: AuditWriter | None = None,
        clock: Clock | None = None,
    ) -> Iterator[UnitOfWork]:
        """
        Provide a transactional scope.

        Commits on normal exit, rolls back on any exception and closes the
        session either way.  Driver errors are translated to the kernel's
        typed errors on the way out.
        """
        if self._session_factory is None:
            raise RuntimeError("Storage is not open. Call open() first.")

        session = self._session_factory()
        uow = UnitOfWork(session, audit_writer, clock)
        try:
            yield uow
            session.commit()
        except OperationalError as exc:
            self._rollback(session, uow, exc)
            if is_contention_error(exc):
                logger.warning("busy_contention", extra={"driver_error": str(exc.orig)})
                raise BusyError(str(exc.orig)) from exc
            raise
        except StaleDataError as exc:
            self._rollback(session, uow, exc)
            raise StaleVersionError("unknown", "unknown", None, None) from exc
        except IntegrityError as exc:
            self._rollback(session, uow, exc)
            if "unique" in str(exc.orig).lower() or "duplicate" in str(exc.orig).lower():
                raise DuplicateKeyError("record", str(exc.orig)) from exc
            raise
        except BaseException as exc:
            self._rollback(session, uow, exc)
            raise
        else:
            uow.publish()
        finally:
            session.close()

    def run_in_transaction(
        self,
        fn: Callable[[UnitOfWork], T],
        audit_writer: AuditWriter | None = None,
        clock: Clock | None = None,
    ) -> T:
        """Run ``fn`` inside one unit of work and return its result."""
        with self.unit_of_work(audit_writer, clock) as uow:
            return fn(uow)

    @staticmethod
    def _rollback(session: Session, uow: UnitOfWork, exc: BaseException) -> None:
        session.rollback()
        uow.discard()
        if isinstance(exc, StockKernelError):
            logger.info(
                "transaction_rolled_back",
                extra={"error_code": exc.code, "error_type": type(exc).__name__},
            )
        else:
            logger.warning(
                "transaction_rolled_back",
                extra={"error_type": type(exc).__name__},
                exc_info=True,
            )


def _install_sqlite_immediate_transactions(engine: Engine) -> None:
    """
    Make pysqlite start every transaction with BEGIN IMMEDIATE.

    pysqlite's own transaction handling defers BEGIN until the first DML,
    which lets two readers both proceed to a write and then deadlock.
    Taking the write lock at BEGIN serializes writers behind the busy
    timeout instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
