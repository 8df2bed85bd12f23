# utils/payload.py
# Normalização do pedido recebido no webhook (sem efeitos colaterais).
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from services.errors import ValidationError

_DIGITS = re.compile(r"^[0-9]+$")

# Ordem de preferência do destinatário
RECIPIENT_CANDIDATES = ("email", "contact_email", "contactEmail", "customer.email")


@dataclass
class NormalizedOrder:
    order_id: str
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    order_number: Optional[int] = None
    financial_status: Optional[str] = None
    cancelled: bool = False
    recipient: Optional[str] = None
    email: Optional[str] = None
    contact_email: Optional[str] = None
    customer_email: Optional[str] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    billing_name: Optional[str] = None
    shipping_name: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    test: bool = False


def _lookup(payload: Mapping[str, Any], path: str) -> Any:
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def first_present(payload: Mapping[str, Any], *paths: str) -> Any:
    """
    Retorna o primeiro valor presente entre os caminhos candidatos
    ("a" ou "a.b" para objetos aninhados). Strings vazias contam como ausentes.
    """
    for path in paths:
        value = _lookup(payload, path)
        if _is_present(value):
            return value.strip() if isinstance(value, str) else value
    return None


def _text(value: Any) -> Optional[str]:
    if not _is_present(value):
        return None
    return str(value).strip()


def parse_order_id(value: Any) -> str:
    if isinstance(value, bool):
        raise ValidationError("missing_or_invalid_order_id")
    if isinstance(value, int) and value > 0:
        return str(value)
    if isinstance(value, str):
        candidate = value.strip()
        if _DIGITS.match(candidate) and int(candidate) > 0:
            return candidate
    raise ValidationError("missing_or_invalid_order_id")


def parse_positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and _DIGITS.match(value.strip()):
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


# Limite de BIGINT (Postgres) e INTEGER (SQLite)
MAX_ORDER_NUMBER = 2 ** 63 - 1


def parse_order_number(value: Any) -> Optional[int]:
    # Só exibição: fora da faixa do banco vira None em vez de derrubar a gravação
    parsed = parse_positive_int(value)
    if parsed is None or parsed > MAX_ORDER_NUMBER:
        return None
    return parsed


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    ISO-8601 (com 'Z' ou offset; sem fuso => UTC) ou epoch em milissegundos.
    Retorna None quando não dá para interpretar.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _line_items(payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    items = first_present(payload, "line_items", "lineItems")
    if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
        return []
    return [dict(item) for item in items if isinstance(item, Mapping)]


def normalize_order(payload: Any, now: Optional[datetime] = None) -> NormalizedOrder:
    if not isinstance(payload, Mapping):
        raise ValidationError("invalid_payload")

    order_id = parse_order_id(first_present(payload, "id", "order_id"))

    raw_created = first_present(payload, "created_at", "createdAt")
    if raw_created is None:
        created_at = now or datetime.now(timezone.utc)
    else:
        created_at = parse_timestamp(raw_created)
        if created_at is None:
            raise ValidationError("invalid_timestamp")

    raw_cancelled = first_present(payload, "cancelled_at", "cancelledAt")
    status = first_present(payload, "financial_status", "financialStatus")

    return NormalizedOrder(
        order_id=order_id,
        line_items=_line_items(payload),
        order_number=parse_order_number(first_present(payload, "order_number", "orderNumber", "number")),
        financial_status=_text(status),
        cancelled=raw_cancelled is not None,
        recipient=_text(first_present(payload, *RECIPIENT_CANDIDATES)),
        email=_text(first_present(payload, "email")),
        contact_email=_text(first_present(payload, "contact_email", "contactEmail")),
        customer_email=_text(first_present(payload, "customer.email")),
        customer_first_name=_text(first_present(payload, "customer.first_name", "customer.firstName")),
        customer_last_name=_text(first_present(payload, "customer.last_name", "customer.lastName")),
        billing_name=_text(first_present(payload, "billing_address.name", "billingAddress.name")),
        shipping_name=_text(first_present(payload, "shipping_address.name", "shippingAddress.name")),
        created_at=created_at,
        processed_at=parse_timestamp(first_present(payload, "processed_at", "processedAt")),
        cancelled_at=parse_timestamp(raw_cancelled),
        test=first_present(payload, "test") is True,
    )
