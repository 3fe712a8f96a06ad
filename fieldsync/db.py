import json
import os
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, TypeVar, Union

import structlog
from sqlalchemy import MetaData, Table, create_engine, delete, func, insert, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from .config import settings
from .errors import SchemaIntegrityError, StoreError, UnknownTableError


logger = structlog.get_logger(__name__)

T = TypeVar("T")

Where = Optional[Dict[str, Any]]
OrderBy = Optional[Union[str, Sequence[str]]]


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def _sqlite_path(url: str) -> Optional[str]:
    if _is_memory_url(url) or not url.startswith("sqlite:///"):
        return None
    return url[len("sqlite:///"):].split("?", 1)[0]


def make_engine(url: str) -> Engine:
    if _is_memory_url(url):
        # One shared connection, otherwise every checkout gets an empty database
        return create_engine(
            url,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    path = _sqlite_path(url)
    if path:
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
    )


class Database:
    """
    Local store: a single SQLite connection behind a narrow CRUD facade.

    Rows are plain dicts keyed by column name. dict/list values are stored as JSON text.
    Every statement outside transaction() commits on its own.
    """

    def __init__(self, url: Optional[str] = None, reset_on_corruption: Optional[bool] = None):
        self.url = url or settings.database_url
        self.reset_on_corruption = (
            settings.reset_on_corruption if reset_on_corruption is None else reset_on_corruption
        )
        self.engine: Optional[Engine] = None
        self._conn: Optional[Connection] = None
        self._metadata = MetaData()
        self._lock = threading.RLock()
        self._tx_depth = 0

    # ------------------------------------------------------------------ lifecycle

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def init(self) -> "Database":
        """Open the connection and bring the schema up to date, resetting a corrupt store."""
        from .migrations import run_migrations

        with self._lock:
            if self.is_open:
                return self
            self._open()
            try:
                run_migrations(self)
            except SchemaIntegrityError as e:
                if not self.reset_on_corruption:
                    self.close()
                    raise
                logger.warning("schema_integrity_failed_resetting", url=self.url, error=e.detail)
                self.reset()
                return self
            except Exception:
                self.close()
                raise
            self._reflect()
            logger.info("database_ready", url=self.url)
            return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            if self.engine is not None:
                self.engine.dispose()
                self.engine = None
            self._metadata = MetaData()
            self._tx_depth = 0

    def reset(self) -> None:
        """
        Destroy the local store and rebuild it from migration 1.

        File databases are deleted; in-memory databases are discarded with their engine.
        Anything not yet pushed is lost.
        """
        from .migrations import run_migrations

        with self._lock:
            self.close()
            path = _sqlite_path(self.url)
            if path:
                for suffix in ("", "-wal", "-shm", "-journal"):
                    if os.path.exists(path + suffix):
                        os.remove(path + suffix)
            self._open()
            run_migrations(self)
            self._reflect()
            logger.warning("database_reset", url=self.url)

    def _open(self) -> None:
        self.engine = make_engine(self.url)
        self._conn = self.engine.connect()
        if self.url.startswith("sqlite") and not _is_memory_url(self.url):
            self._conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            self._conn.commit()

    def _reflect(self) -> None:
        metadata = MetaData()
        metadata.reflect(bind=self._require_conn())
        self._require_conn().commit()
        self._metadata = metadata

    def _require_conn(self) -> Connection:
        if self._conn is None:
            raise StoreError("Database is not initialized; call init() first")
        return self._conn

    # ------------------------------------------------------------------ execution

    def _execute(self, statement, params: Optional[Dict[str, Any]] = None, fetch: bool = False):
        with self._lock:
            conn = self._require_conn()
            try:
                result = conn.execute(statement, params or {})
                if fetch:
                    out = [dict(row._mapping) for row in result]
                else:
                    out = result.rowcount
                if self._tx_depth == 0:
                    conn.commit()
                return out
            except Exception:
                if self._tx_depth == 0:
                    conn.rollback()
                raise

    @contextmanager
    def atomic(self) -> Iterator["Database"]:
        """Context manager form of transaction(); nested blocks join the outer one."""
        with self._lock:
            conn = self._require_conn()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            self._tx_depth = 1
            try:
                yield self
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._tx_depth = 0

    def transaction(self, fn: Callable[["Database"], T]) -> T:
        """
        Run fn(db) atomically.

        Args:
            fn: Callable receiving this Database

        Returns:
            Whatever fn returns; on exception everything is rolled back and the error re-raised
        """
        with self.atomic():
            return fn(self)

    # ------------------------------------------------------------------ schema helpers

    def table(self, name: str) -> Table:
        tbl = self._metadata.tables.get(name)
        if tbl is None:
            raise UnknownTableError(name)
        return tbl

    def has_table(self, name: str) -> bool:
        return name in self._metadata.tables

    def columns(self, name: str) -> List[str]:
        return [c.name for c in self.table(name).columns]

    def _prepare(self, tbl: Table, data: Dict[str, Any]) -> Dict[str, Any]:
        unknown = [k for k in data if k not in tbl.c]
        if unknown:
            raise StoreError(f"Unknown column(s) for {tbl.name}: {', '.join(sorted(unknown))}")
        prepared = {}
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                value = json.dumps(value, separators=(",", ":"))
            elif isinstance(value, bool):
                value = 1 if value else 0
            prepared[key] = value
        return prepared

    def _where(self, tbl: Table, where: Where):
        clauses = []
        for key, value in (where or {}).items():
            if key not in tbl.c:
                raise StoreError(f"Unknown column for {tbl.name}: {key}")
            column = tbl.c[key]
            if value is None:
                clauses.append(column.is_(None))
            elif isinstance(value, (list, tuple, set)):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses

    # ------------------------------------------------------------------ CRUD facade

    def find_all(
        self,
        table: str,
        where: Where = None,
        order_by: OrderBy = None,
        order: str = "ASC",
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        tbl = self.table(table)
        stmt = select(tbl).where(*self._where(tbl, where))
        if order_by:
            names = [order_by] if isinstance(order_by, str) else list(order_by)
            for name in names:
                column = tbl.c[name]
                stmt = stmt.order_by(column.desc() if order.upper() == "DESC" else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        return self._execute(stmt, fetch=True)

    def find_one(self, table: str, where: Where) -> Optional[Dict[str, Any]]:
        rows = self.find_all(table, where=where, limit=1)
        return rows[0] if rows else None

    def find_by_id(self, table: str, id: Any) -> Optional[Dict[str, Any]]:
        return self.find_one(table, {"id": id})

    def insert(self, table: str, data: Dict[str, Any]) -> Any:
        """Insert one row. Returns the primary key (the autoincrement id when not supplied)."""
        tbl = self.table(table)
        with self._lock:
            conn = self._require_conn()
            try:
                result = conn.execute(insert(tbl).values(**self._prepare(tbl, data)))
                key = data.get("id")
                if key is None and result.inserted_primary_key:
                    key = result.inserted_primary_key[0]
                if self._tx_depth == 0:
                    conn.commit()
                return key
            except Exception:
                if self._tx_depth == 0:
                    conn.rollback()
                raise

    def upsert(self, table: str, data: Dict[str, Any], conflict_keys: Sequence[str] = ("id",)) -> None:
        """Insert, or update the given columns of the row that already holds the conflict keys."""
        tbl = self.table(table)
        values = self._prepare(tbl, data)
        stmt = sqlite_insert(tbl).values(**values)
        changes = {k: stmt.excluded[k] for k in values if k not in conflict_keys}
        if changes:
            stmt = stmt.on_conflict_do_update(index_elements=list(conflict_keys), set_=changes)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_keys))
        self._execute(stmt)

    def update(self, table: str, id: Any, data: Dict[str, Any]) -> int:
        return self.update_where(table, {"id": id}, data)

    def update_where(self, table: str, where: Where, data: Dict[str, Any]) -> int:
        if not data:
            return 0
        tbl = self.table(table)
        stmt = update(tbl).where(*self._where(tbl, where)).values(**self._prepare(tbl, data))
        return self._execute(stmt)

    def remove(self, table: str, id: Any) -> int:
        return self.remove_where(table, {"id": id})

    def remove_where(self, table: str, where: Where) -> int:
        tbl = self.table(table)
        return self._execute(delete(tbl).where(*self._where(tbl, where)))

    def count(self, table: str, where: Where = None) -> int:
        tbl = self.table(table)
        stmt = select(func.count()).select_from(tbl).where(*self._where(tbl, where))
        rows = self._execute(stmt, fetch=True)
        return int(next(iter(rows[0].values()))) if rows else 0

    def raw_query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a SELECT with named (:param) placeholders."""
        return self._execute(text(sql), params, fetch=True)

    def raw_exec(self, sql: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Run a write statement with named (:param) placeholders. Returns the affected row count."""
        return self._execute(text(sql), params)
