# services/notifications.py
from typing import Optional, Sequence

from services.errors import MailError
from services.mailer import Mailer

SUBJECT = "Seus códigos de acesso ao showroom"


def render_body(tokens: Sequence[str], order_id: Optional[str] = None, login_url: str = "") -> str:
    lines = ["Olá!", ""]
    if order_id:
        lines.append(f"Obrigado pela compra (pedido {order_id}).")
    if len(tokens) == 1:
        lines.append("Este é o seu código de acesso ao showroom:")
    else:
        lines.append(f"Estes são os seus {len(tokens)} códigos de acesso ao showroom:")
    lines.append("")
    for i, token in enumerate(tokens, start=1):
        lines.append(f"  {i}. {token}")
    lines.append("")
    if login_url:
        lines.append(f"Entre em {login_url} e informe um dos códigos acima.")
        lines.append("")
    lines.append("Cada código é pessoal; guarde este e-mail.")
    return "\n".join(lines)


def notify(
    mailer: Mailer,
    recipient: Optional[str],
    tokens: Sequence[str],
    order_id: Optional[str] = None,
    login_url: str = "",
) -> Optional[str]:
    """
    Envia UMA mensagem com todos os tokens atuais (antigos + novos).
    Só deve ser chamada depois do commit do ledger. Sem retry interno.
    """
    if not recipient or not recipient.strip():
        raise MailError("no recipient")
    if not tokens:
        raise MailError("no tokens to send")
    body = render_body(list(tokens), order_id=order_id, login_url=login_url)
    return mailer.send(recipient.strip(), SUBJECT, body)
