# db/__init__.py
import logging
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from services.errors import StorageConflict, StorageError

logger = logging.getLogger(__name__)


def is_postgres_url(url: str) -> bool:
    return url.startswith(("postgres://", "postgresql://")) or "dbname=" in url


def _ensure_sqlite_path(url: str) -> str:
    # Aceita: sqlite:///arquivo.db | sqlite:////abs/arquivo.db | arquivo.db
    if url.startswith("sqlite:////"):
        return url.replace("sqlite:////", "/", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "", 1)
    return url


class Database:
    """
    Acesso ao banco (psycopg | sqlite3), criado uma vez no boot e injetado.

    Postgres: pool limitado (psycopg_pool); acima de `pool_size` as requisições
    esperam na fila até `timeout_s` e então falham com StorageError.
    SQLite: uma conexão por transação, com `BEGIN IMMEDIATE` (lock de escrita
    desde o início).
    """

    def __init__(self, url: str, pool_size: int = 10, timeout_s: float = 10.0):
        self.url = url.strip()
        self.pool_size = pool_size
        self.timeout_s = timeout_s
        self.is_postgres = is_postgres_url(self.url)
        self._pool = None
        if self.is_postgres:
            self._pool = self._open_pool()

    def _open_pool(self):
        from psycopg.rows import dict_row
        from psycopg_pool import ConnectionPool

        statement_timeout_ms = int(self.timeout_s * 1000)
        pool = ConnectionPool(
            self.url,
            min_size=1,
            max_size=self.pool_size,
            timeout=self.timeout_s,
            kwargs={
                "row_factory": dict_row,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=False,
        )
        pool.open()
        return pool

    def _sqlite_connection(self) -> sqlite3.Connection:
        path = _ensure_sqlite_path(self.url)
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, timeout=self.timeout_s, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def qp(self, sql: str) -> str:
        """
        Converte placeholders estilo SQLite ('?') para Postgres ('%s') quando necessário.
        """
        if self.is_postgres:
            return sql.replace("?", "%s")
        return sql

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """
        Abre uma transação e entrega um cursor; commit no fim, rollback em erro.
        Erros do driver saem como StorageError (StorageConflict para unicidade).
        """
        if self.is_postgres:
            with self._postgres_cursor() as cur:
                yield cur
        else:
            with self._sqlite_cursor() as cur:
                yield cur

    @contextmanager
    def _postgres_cursor(self) -> Iterator[Any]:
        import psycopg
        from psycopg_pool import PoolTimeout

        try:
            with self._pool.connection() as conn:
                # O context manager do pool faz commit/rollback da transação
                with conn.cursor() as cur:
                    yield cur
        except PoolTimeout as e:
            raise StorageError("connection pool exhausted") from e
        except psycopg.errors.UniqueViolation as e:
            raise StorageConflict(str(e)) from e
        except psycopg.Error as e:
            raise StorageError(str(e)) from e

    @contextmanager
    def _sqlite_cursor(self) -> Iterator[Any]:
        try:
            conn = self._sqlite_connection()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        cur = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise StorageConflict(str(e)) from e
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise StorageError(str(e)) from e
        except OverflowError as e:
            # Valor fora da faixa do SQLite no bind dos parâmetros
            if conn.in_transaction:
                conn.rollback()
            raise StorageError(str(e)) from e
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            if cur is not None:
                cur.close()
            conn.close()

    def adapt_ddl(self, sql: str) -> str:
        if self.is_postgres:
            return sql
        # Ajustes de compatibilidade mínimos para SQLite
        sql = re.sub(r"\bBIGSERIAL PRIMARY KEY\b", "INTEGER PRIMARY KEY AUTOINCREMENT", sql, flags=re.I)
        sql = sql.replace("TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP", "TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))")
        sql = sql.replace("TIMESTAMPTZ", "TEXT")
        return sql

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None


def open_database(url: str, pool_size: int = 10, timeout_s: float = 10.0, *, ensure_schema: bool = True) -> Database:
    database = Database(url, pool_size=pool_size, timeout_s=timeout_s)
    if ensure_schema:
        from db.models import init_db

        init_db(database)
        logger.info("[BOOT] DB inicializado (%s).", "postgres" if database.is_postgres else "sqlite")
    return database
