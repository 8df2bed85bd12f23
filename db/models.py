import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from db import Database
from services.errors import StorageConflict, StorageError
from utils.payload import NormalizedOrder
from utils.security import generate_token, normalize_email

logger = logging.getLogger(__name__)

# Tentativas de reconciliação quando uma entrega concorrente ganha a corrida
RECONCILE_ATTEMPTS = 3

# DDL (estilo Postgres; adaptado para SQLite em Database.adapt_ddl)
# Uma linha por token emitido. Tabela só recebe INSERT.
DDL = [
    """
    CREATE TABLE IF NOT EXISTS showroom_orders (
        id                  BIGSERIAL PRIMARY KEY,
        order_id            TEXT NOT NULL,
        token_index         INTEGER NOT NULL,
        order_number        BIGINT,
        token               TEXT NOT NULL,
        email               TEXT,
        contact_email       TEXT,
        customer_email      TEXT,
        customer_first_name TEXT,
        customer_last_name  TEXT,
        billing_name        TEXT,
        shipping_name       TEXT,
        created_at          TIMESTAMPTZ,
        processed_at        TIMESTAMPTZ,
        cancelled_at        TIMESTAMPTZ,
        financial_status    TEXT,
        test                BOOLEAN NOT NULL DEFAULT FALSE,
        inserted_at         TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # (order_id, token_index) único serializa entregas concorrentes do mesmo pedido
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_showroom_orders_order_seq ON showroom_orders (order_id, token_index)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_showroom_orders_token ON showroom_orders (token)",
    "CREATE INDEX IF NOT EXISTS ix_showroom_orders_email ON showroom_orders (lower(email))",
    "CREATE INDEX IF NOT EXISTS ix_showroom_orders_contact_email ON showroom_orders (lower(contact_email))",
    "CREATE INDEX IF NOT EXISTS ix_showroom_orders_customer_email ON showroom_orders (lower(customer_email))",
]

_COLUMNS = (
    "id, order_id, token_index, order_number, token, email, contact_email, customer_email, "
    "customer_first_name, customer_last_name, billing_name, shipping_name, "
    "created_at, processed_at, cancelled_at, financial_status, test"
)


@dataclass
class OrderRecord:
    id: int
    order_id: str
    token_index: int
    token: str
    order_number: Optional[int] = None
    email: Optional[str] = None
    contact_email: Optional[str] = None
    customer_email: Optional[str] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    billing_name: Optional[str] = None
    shipping_name: Optional[str] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    financial_status: Optional[str] = None
    test: bool = False

    @property
    def recipient(self) -> Optional[str]:
        for candidate in (self.email, self.contact_email, self.customer_email):
            if candidate and candidate.strip():
                return candidate.strip()
        return None


@dataclass
class Reconciliation:
    tokens: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)

    @property
    def already_satisfied(self) -> bool:
        return not self.created


def init_db(database: Database) -> None:
    """
    Cria a tabela e os índices se não existirem. Idempotente.
    """
    with database.transaction() as cur:
        for stmt in DDL:
            cur.execute(database.adapt_ddl(stmt))


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _ts_param(database: Database, value: Optional[datetime]) -> Any:
    # Postgres recebe datetime; SQLite guarda texto ISO-8601
    if value is None or database.is_postgres:
        return value
    return value.isoformat()


def _row_to_record(row: Any) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        order_id=row["order_id"],
        token_index=row["token_index"],
        token=row["token"],
        order_number=row["order_number"],
        email=row["email"],
        contact_email=row["contact_email"],
        customer_email=row["customer_email"],
        customer_first_name=row["customer_first_name"],
        customer_last_name=row["customer_last_name"],
        billing_name=row["billing_name"],
        shipping_name=row["shipping_name"],
        created_at=_iso(row["created_at"]),
        processed_at=_iso(row["processed_at"]),
        cancelled_at=_iso(row["cancelled_at"]),
        financial_status=row["financial_status"],
        test=bool(row["test"]),
    )


def _existing_tokens(cur, database: Database, order_id: str) -> List[str]:
    cur.execute(
        database.qp("SELECT token FROM showroom_orders WHERE order_id = ? ORDER BY token_index ASC"),
        (order_id,),
    )
    return [r["token"] for r in cur.fetchall()]


def _insert_token(cur, database: Database, order: NormalizedOrder, token_index: int, token: str) -> None:
    cur.execute(
        database.qp(
            "INSERT INTO showroom_orders ("
            "order_id, token_index, order_number, token, email, contact_email, customer_email, "
            "customer_first_name, customer_last_name, billing_name, shipping_name, "
            "created_at, processed_at, cancelled_at, financial_status, test"
            ") VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)"
        ),
        (
            order.order_id,
            token_index,
            order.order_number,
            token,
            order.email,
            order.contact_email,
            order.customer_email,
            order.customer_first_name,
            order.customer_last_name,
            order.billing_name,
            order.shipping_name,
            _ts_param(database, order.created_at),
            _ts_param(database, order.processed_at),
            _ts_param(database, order.cancelled_at),
            order.financial_status,
            order.test,
        ),
    )


def _reconcile_once(database: Database, order: NormalizedOrder, owed_quantity: int) -> Reconciliation:
    with database.transaction() as cur:
        tokens = _existing_tokens(cur, database, order.order_id)
        have = len(tokens)
        if have >= owed_quantity:
            return Reconciliation(tokens=tokens, created=[])
        created = []
        for token_index in range(have + 1, owed_quantity + 1):
            token = generate_token()
            _insert_token(cur, database, order, token_index, token)
            created.append(token)
        return Reconciliation(tokens=tokens + created, created=created)


def reconcile_tokens(database: Database, order: NormalizedOrder, owed_quantity: int) -> Reconciliation:
    """
    Leitura + inserção do delta numa única transação.

    Se outra entrega do mesmo pedido inserir antes, o índice único
    (order_id, token_index) derruba esta transação; refazemos a leitura e
    enxergamos os tokens já gravados em vez de emitir um segundo lote.
    """
    for attempt in range(1, RECONCILE_ATTEMPTS + 1):
        try:
            result = _reconcile_once(database, order, owed_quantity)
        except StorageConflict:
            logger.info("[LEDGER] conflito no pedido %s (tentativa %d); relendo.", order.order_id, attempt)
            continue
        if result.created:
            logger.info(
                "[LEDGER] pedido %s: +%d token(s), total %d.",
                order.order_id, len(result.created), len(result.tokens),
            )
        return result
    raise StorageError(f"could not reconcile order {order.order_id} after {RECONCILE_ATTEMPTS} attempts")


def tokens_for_order(database: Database, order_id: str) -> List[str]:
    with database.transaction() as cur:
        return _existing_tokens(cur, database, order_id)


def find_by_token(database: Database, token: str) -> Optional[OrderRecord]:
    with database.transaction() as cur:
        cur.execute(database.qp(f"SELECT {_COLUMNS} FROM showroom_orders WHERE token = ?"), (token,))
        row = cur.fetchone()
        if not row:
            return None
        return _row_to_record(row)


def find_by_email(database: Database, email: str) -> List[OrderRecord]:
    needle = normalize_email(email)
    if not needle:
        return []
    with database.transaction() as cur:
        cur.execute(
            database.qp(
                f"SELECT {_COLUMNS} FROM showroom_orders "
                "WHERE lower(email) = ? OR lower(contact_email) = ? OR lower(customer_email) = ? "
                "ORDER BY id ASC"
            ),
            (needle, needle, needle),
        )
        return [_row_to_record(r) for r in cur.fetchall()]
