# services/orders.py
# Fluxo do webhook: normaliza -> classifica -> reconcilia -> notifica.
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from db import Database
from db.models import OrderRecord, find_by_email, find_by_token, reconcile_tokens
from services.eligibility import Ignored, classify, require_recipient
from services.errors import ValidationError
from services.mailer import Mailer
from services.notifications import notify
from utils.payload import normalize_order
from utils.security import normalize_email

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def process_order(payload: Any, *, database: Database, mailer: Mailer, settings) -> Outcome:
    """
    Webhook idempotente:
    - Pedido inválido -> 400 (nada chega ao banco).
    - Produto diferente / não pago / cancelado -> 202 ignored.
    - Reconciliação emite só a diferença entre devido e já gravado.
    - E-mail sai depois do commit, sempre com todos os tokens do pedido;
      reentregas reenviam os mesmos códigos, nunca um lote novo.
    StorageError/MailError sobem para a borda HTTP (500).
    """
    try:
        order = normalize_order(payload)
    except ValidationError as e:
        logger.info("[ORDERS] payload rejeitado: %s", e.code)
        return Outcome(400, {"error": e.code})

    verdict = classify(order, settings.target_product_id)
    if isinstance(verdict, Ignored):
        logger.info("[ORDERS] pedido %s ignorado: %s", order.order_id, verdict.reason)
        return Outcome(202, {"status": "ignored", "reason": verdict.reason})

    try:
        recipient = require_recipient(order)
    except ValidationError as e:
        logger.info("[ORDERS] pedido %s sem destinatário.", order.order_id)
        return Outcome(400, {"error": e.code})

    result = reconcile_tokens(database, order, verdict.quantity)

    notify(
        mailer,
        recipient,
        result.tokens,
        order_id=order.order_id,
        login_url=settings.showroom_login_url,
    )

    if result.already_satisfied:
        logger.info("[ORDERS] pedido %s já processado; códigos reenviados.", order.order_id)
        return Outcome(200, {"status": "already_processed", "tokens": result.tokens})

    return Outcome(
        201,
        {
            "status": "stored",
            "createdTokens": result.created,
            "totalTokens": len(result.tokens),
        },
    )


def record_to_profile(record: OrderRecord) -> Dict[str, Any]:
    return {
        "orderId": record.order_id,
        "orderNumber": record.order_number,
        "email": record.email,
        "contactEmail": record.contact_email,
        "customerEmail": record.customer_email,
        "customerFirstName": record.customer_first_name,
        "customerLastName": record.customer_last_name,
        "billingName": record.billing_name,
        "shippingName": record.shipping_name,
        "createdAt": record.created_at,
        "processedAt": record.processed_at,
        "financialStatus": record.financial_status,
        "test": record.test,
    }


def lookup_token(payload: Any, *, database: Database) -> Outcome:
    token = payload.get("token") if isinstance(payload, dict) else None
    if not isinstance(token, str) or not token.strip():
        return Outcome(400, {"error": "missing_token"})
    record = find_by_token(database, token.strip())
    if record is None:
        return Outcome(401, {"error": "Invalid token"})
    return Outcome(200, {"ok": True, "order": record_to_profile(record)})


def resend_tokens(email: str, *, database: Database, mailer: Mailer, settings) -> Outcome:
    """
    Reenvio manual: linhas que casam com o e-mail (email, contact_email ou
    customer_email), agrupadas por pedido. Cada pedido recebe UMA mensagem
    no seu próprio destinatário; tokens de um pedido nunca vão para outro.
    """
    if not normalize_email(email):
        return Outcome(404, {"error": "Not Found"})
    records = find_by_email(database, email)
    if not records:
        return Outcome(404, {"error": "Not Found"})

    by_order: Dict[str, List[OrderRecord]] = {}
    for r in records:
        by_order.setdefault(r.order_id, []).append(r)

    deliveries = []
    for order_id, rows in by_order.items():
        recipient = next((r.recipient for r in rows if r.recipient), None)
        tokens = [r.token for r in rows if r.token]
        if recipient and tokens:
            deliveries.append((order_id, recipient, tokens))
        else:
            logger.info("[ORDERS] pedido %s sem destinatário/tokens; pulando reenvio.", order_id)
    if not deliveries:
        return Outcome(409, {"error": "no_recipient_or_tokens"})

    for order_id, recipient, tokens in deliveries:
        notify(mailer, recipient, tokens, order_id=order_id, login_url=settings.showroom_login_url)

    token_count = sum(len(tokens) for _, _, tokens in deliveries)
    logger.info("[ORDERS] reenvio manual: %d token(s), %d pedido(s).", token_count, len(deliveries))
    return Outcome(
        200,
        {
            "status": "sent",
            "orderIds": [order_id for order_id, _, _ in deliveries],
            "tokenCount": token_count,
        },
    )
