# config.py
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

from dotenv import load_dotenv
from psycopg.conninfo import make_conninfo


class ConfigError(RuntimeError):
    """Configuração ausente/inválida. O processo não deve subir."""


@dataclass(frozen=True)
class Settings:
    port: int
    target_product_id: str
    database_url: str
    smtp_host: str
    smtp_port: int
    smtp_from: str
    smtp_secure: bool = False
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_timeout_s: float = 15.0
    db_pool_size: int = 10
    db_timeout_s: float = 10.0
    app_env: str = "development"
    log_level: str = "INFO"
    showroom_login_url: str = ""
    max_body_bytes: int = 10 * 1024


_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


class _Reader:
    """Lê variáveis acumulando erros, para reportar todos de uma vez."""

    def __init__(self, environ: Mapping[str, str]):
        self.environ = environ
        self.errors: List[str] = []

    def raw(self, name: str) -> str:
        return (self.environ.get(name) or "").strip()

    def required(self, name: str) -> str:
        value = self.raw(name)
        if not value:
            self.errors.append(f"Missing required environment variable: {name}")
        return value

    def positive_int(self, name: str, default: Optional[int] = None) -> int:
        value = self.raw(name)
        if not value:
            if default is None:
                self.errors.append(f"Missing required environment variable: {name}")
                return 0
            return default
        try:
            parsed = int(value, 10)
        except ValueError:
            parsed = 0
        if parsed <= 0:
            self.errors.append(f"{name} must be a positive integer")
        return parsed

    def positive_float(self, name: str, default: float) -> float:
        value = self.raw(name)
        if not value:
            return default
        try:
            parsed = float(value)
        except ValueError:
            parsed = 0.0
        if parsed <= 0:
            self.errors.append(f"{name} must be a positive number")
        return parsed

    def boolean(self, name: str, default: bool = False) -> bool:
        value = self.raw(name).lower()
        if not value:
            return default
        if value in _TRUE:
            return True
        if value not in _FALSE:
            self.errors.append(f"{name} must be a boolean")
        return False


def _database_url(r: _Reader) -> str:
    url = r.raw("DATABASE_URL")
    if url:
        if not url.startswith(("sqlite:///", "postgres://", "postgresql://")):
            r.errors.append("DATABASE_URL must be a sqlite:/// or postgresql:// URL")
        return url
    # Sem DATABASE_URL: monta a conninfo do Postgres a partir das partes
    host = r.required("DB_HOST")
    port = r.positive_int("DB_PORT", default=5432)
    user = r.required("DB_USER")
    password = r.raw("DB_PASSWORD")
    name = r.required("DB_NAME")
    return make_conninfo(host=host, port=port, user=user, password=password, dbname=name)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Carrega e valida a configuração.
    Sem `environ` explícito, lê o ambiente do processo (e um .env, se houver).
    """
    if environ is None:
        load_dotenv()
        environ = os.environ
    r = _Reader(environ)

    settings = Settings(
        port=r.positive_int("PORT"),
        target_product_id=r.required("TARGET_PRODUCT_ID"),
        database_url=_database_url(r),
        smtp_host=r.required("SMTP_HOST"),
        smtp_port=r.positive_int("SMTP_PORT"),
        smtp_from=r.required("SMTP_FROM"),
        smtp_secure=r.boolean("SMTP_SECURE"),
        smtp_user=r.raw("SMTP_USER"),
        smtp_password=r.raw("SMTP_PASSWORD"),
        smtp_timeout_s=r.positive_float("SMTP_TIMEOUT_S", 15.0),
        db_pool_size=r.positive_int("DB_POOL_SIZE", default=10),
        db_timeout_s=r.positive_float("DB_TIMEOUT_S", 10.0),
        app_env=r.raw("APP_ENV") or "development",
        log_level=r.raw("LOG_LEVEL") or "INFO",
        showroom_login_url=r.raw("SHOWROOM_LOGIN_URL"),
        max_body_bytes=r.positive_int("MAX_BODY_BYTES", default=10 * 1024),
    )
    if r.errors:
        raise ConfigError("; ".join(r.errors))
    return settings
