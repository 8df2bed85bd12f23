from __future__ import annotations

import atexit
import logging
import signal
import sys
import time
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException, MethodNotAllowed, NotFound, RequestEntityTooLarge

from config import Settings, load_settings
from db import Database, open_database
from services.errors import MailError, StorageError
from services.mailer import Mailer
from services.orders import Outcome, lookup_token, process_order, resend_tokens
from utils.log import configure_logging

logger = logging.getLogger("showroom")

# Rotas da API aceitam só POST; demais métodos -> 405 com Allow: POST
POST_ONLY = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _respond(outcome: Outcome):
    return jsonify(outcome.body), outcome.status_code


def _error(status: int, message: str, **headers):
    resp = jsonify({"error": message})
    resp.status_code = status
    for k, v in headers.items():
        resp.headers[k.replace("_", "-")] = v
    return resp


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    mailer: Optional[Mailer] = None,
) -> Flask:
    """
    Monta o app com dependências explícitas (pool do banco e transporte SMTP),
    criadas uma vez aqui ou injetadas pelos testes.
    """
    settings = settings or load_settings()
    if database is None:
        database = open_database(
            settings.database_url,
            pool_size=settings.db_pool_size,
            timeout_s=settings.db_timeout_s,
        )
        # Pool aberto aqui (ex.: WSGI) fecha junto com o processo
        atexit.register(database.close)
    mailer = mailer or Mailer.from_settings(settings)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_body_bytes
    app.json.sort_keys = False

    # ==========================================================
    # Log de acesso
    # ==========================================================
    @app.before_request
    def _start_timer():
        g.started_at = time.perf_counter()

    @app.after_request
    def _access_log(resp):
        started = g.get("started_at")
        elapsed_ms = (time.perf_counter() - started) * 1000 if started else 0.0
        logger.info(
            "%s %s %s %s - %.1f ms",
            request.method, request.path, resp.status_code,
            resp.headers.get("Content-Length", "-"), elapsed_ms,
        )
        return resp

    # ==========================================================
    # Corpo JSON obrigatório nos POST
    # ==========================================================
    def _json_body():
        """Retorna (payload, erro). 415 sem application/json; 400 se malformado."""
        if not request.is_json:
            return None, _error(415, "Unsupported Media Type")
        payload = request.get_json(silent=True)
        if payload is None:
            return None, _error(400, "invalid_json")
        return payload, None

    # ==========================================================
    # Rotas
    # ==========================================================
    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "time": datetime.now(timezone.utc).isoformat()})

    @app.route("/orders", methods=POST_ONLY, provide_automatic_options=False)
    def orders():
        if request.method != "POST":
            return _error(405, "Method Not Allowed", Allow="POST")
        payload, err = _json_body()
        if err is not None:
            return err
        return _respond(process_order(payload, database=database, mailer=mailer, settings=settings))

    @app.route("/login", methods=POST_ONLY, provide_automatic_options=False)
    def login():
        if request.method != "POST":
            return _error(405, "Method Not Allowed", Allow="POST")
        payload, err = _json_body()
        if err is not None:
            return err
        return _respond(lookup_token(payload, database=database))

    @app.route("/showroom-mails/<path:email>/send", methods=POST_ONLY, provide_automatic_options=False)
    def showroom_mail_send(email: str):
        if request.method != "POST":
            return _error(405, "Method Not Allowed", Allow="POST")
        if not request.is_json:
            return _error(415, "Unsupported Media Type")
        return _respond(resend_tokens(email, database=database, mailer=mailer, settings=settings))

    # ==========================================================
    # Erros
    # ==========================================================
    @app.errorhandler(NotFound)
    def _not_found(_e):
        return _error(404, "Not Found")

    @app.errorhandler(MethodNotAllowed)
    def _method_not_allowed(e):
        valid = set(e.valid_methods or []) - {"OPTIONS"}
        allow = "POST" if "POST" in valid else ", ".join(sorted(valid))
        return _error(405, "Method Not Allowed", Allow=allow)

    @app.errorhandler(RequestEntityTooLarge)
    def _too_large(_e):
        return _error(413, "Payload Too Large")

    @app.errorhandler(StorageError)
    def _storage_error(e):
        logger.error("[ORDERS] falha de banco: %s", e)
        return _error(500, "Internal Server Error")

    @app.errorhandler(MailError)
    def _mail_error(e):
        # Persistência já confirmada; reentrega cai no caminho idempotente
        logger.error("[ORDERS] falha de e-mail após commit: %s", e)
        return _error(500, "Internal Server Error")

    @app.errorhandler(Exception)
    def _unhandled(e):
        if isinstance(e, HTTPException):
            return _error(e.code or 500, e.name)
        logger.exception("Unhandled error")
        return _error(500, "Internal Server Error")

    return app


# ==========================================================
# Boot local
# ==========================================================
def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    logger.info("[BOOT] Starting server in %s mode on port %d...", settings.app_env, settings.port)

    database = open_database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        timeout_s=settings.db_timeout_s,
    )
    app = create_app(settings, database=database)

    def _shutdown(signum, _frame):
        logger.info("Received %s. Shutting down gracefully.", signal.Signals(signum).name)
        sys.exit(0)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    try:
        app.run(host="0.0.0.0", port=settings.port, debug=settings.app_env == "development", use_reloader=False)
    finally:
        database.close()
        logger.info("[BOOT] recursos liberados.")


if __name__ == "__main__":
    main()
