# services/eligibility.py
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

from services.errors import ValidationError
from utils.payload import NormalizedOrder, first_present, parse_positive_int

PRODUCT_MISMATCH = "product_mismatch"
UNSUCCESSFUL_ORDER = "unsuccessful_order"


@dataclass(frozen=True)
class Ignored:
    reason: str


@dataclass(frozen=True)
class Eligible:
    quantity: int


Classification = Union[Ignored, Eligible]


def item_quantity(item: Mapping[str, Any]) -> int:
    # Quantidade ausente/inválida vale 1 (por item)
    return parse_positive_int(item.get("quantity")) or 1


def owed_quantity(line_items: Iterable[Mapping[str, Any]], target_product_id: str) -> int:
    target = str(target_product_id)
    total = 0
    for item in line_items:
        product_id = first_present(item, "product_id", "productId")
        if product_id is not None and str(product_id) == target:
            total += item_quantity(item)
    return total


def is_successful(order: NormalizedOrder) -> bool:
    if order.cancelled:
        return False
    return (order.financial_status or "").lower() == "paid"


def classify(order: NormalizedOrder, target_product_id: str) -> Classification:
    """
    Produto primeiro, pagamento/cancelamento depois: pedido não pago de
    outro produto é `product_mismatch`.
    """
    quantity = owed_quantity(order.line_items, target_product_id)
    if quantity == 0:
        return Ignored(PRODUCT_MISMATCH)
    if not is_successful(order):
        return Ignored(UNSUCCESSFUL_ORDER)
    return Eligible(quantity)


def require_recipient(order: NormalizedOrder) -> str:
    if not order.recipient:
        raise ValidationError("no_recipient")
    return order.recipient
