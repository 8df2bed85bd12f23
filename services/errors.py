# services/errors.py
from typing import Optional


class ServiceError(Exception):
    """Base para erros do fluxo de pedidos."""


class ValidationError(ServiceError):
    """
    Payload malformado ou incompleto. Vira 4xx e nunca chega ao banco.
    `code` é o identificador estável devolvido ao chamador.
    """
    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class StorageError(ServiceError):
    """Falha de transação/conexão. O chamador pode reenviar o webhook inteiro."""


class StorageConflict(StorageError):
    """Violação de unicidade causada por uma entrega concorrente."""


class MailError(ServiceError):
    """Falha de envio depois da persistência já confirmada."""
