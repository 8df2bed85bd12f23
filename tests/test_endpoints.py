import atexit

from app import create_app
from conftest import TARGET, make_order
from db import Database


def _count_rows(database):
    with database.transaction() as cur:
        cur.execute("SELECT COUNT(*) AS n FROM showroom_orders")
        return cur.fetchone()["n"]


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["status"] == "ok"


def test_paid_order_is_stored_then_already_processed(client, mailer):
    r = client.post("/orders", json=make_order())
    assert r.status_code == 201
    assert r.json["status"] == "stored"
    assert len(r.json["createdTokens"]) == 2
    assert r.json["totalTokens"] == 2
    created = r.json["createdTokens"]

    r = client.post("/orders", json=make_order())
    assert r.status_code == 200
    assert r.json == {"status": "already_processed", "tokens": created}

    # Cada entrega reenvia o conjunto completo
    assert len(mailer.sent) == 2
    for msg in mailer.sent:
        assert msg["to"] == "a@b.com"
        assert all(t in msg["body"] for t in created)


def test_top_up_across_deliveries(client, mailer):
    r = client.post("/orders", json=make_order(line_items=[{"product_id": TARGET, "quantity": 1}]))
    first = r.json["createdTokens"]
    r = client.post("/orders", json=make_order(line_items=[{"product_id": TARGET, "quantity": 3}]))
    assert r.status_code == 201
    assert len(r.json["createdTokens"]) == 2
    assert r.json["totalTokens"] == 3
    assert first[0] in mailer.sent[-1]["body"]


def test_pending_order_is_ignored(client, database, mailer):
    r = client.post("/orders", json=make_order(financial_status="pending"))
    assert r.status_code == 202
    assert r.json == {"status": "ignored", "reason": "unsuccessful_order"}
    assert _count_rows(database) == 0
    assert mailer.sent == []


def test_cancelled_order_is_ignored(client):
    r = client.post("/orders", json=make_order(cancelled_at="2024-01-01T00:00:00Z"))
    assert r.status_code == 202
    assert r.json["reason"] == "unsuccessful_order"


def test_wrong_product_reports_mismatch_first(client):
    r = client.post(
        "/orders",
        json=make_order(financial_status="pending", line_items=[{"product_id": "OTHER"}]),
    )
    assert r.status_code == 202
    assert r.json == {"status": "ignored", "reason": "product_mismatch"}


def test_validation_errors(client, database):
    r = client.post("/orders", json=make_order(id="abc"))
    assert r.status_code == 400
    assert r.json == {"error": "missing_or_invalid_order_id"}

    r = client.post("/orders", json=make_order(created_at="yesterday-ish"))
    assert r.status_code == 400
    assert r.json == {"error": "invalid_timestamp"}

    r = client.post("/orders", json=make_order(email=None))
    assert r.status_code == 400
    assert r.json == {"error": "no_recipient"}

    assert _count_rows(database) == 0


def test_mail_failure_keeps_tokens_and_retry_is_idempotent(client, database, mailer):
    mailer.fail = True
    r = client.post("/orders", json=make_order())
    assert r.status_code == 500
    assert r.json == {"error": "Internal Server Error"}
    assert _count_rows(database) == 2

    mailer.fail = False
    r = client.post("/orders", json=make_order())
    assert r.status_code == 200
    assert r.json["status"] == "already_processed"
    assert len(r.json["tokens"]) == 2
    assert len(mailer.sent) == 1
    assert _count_rows(database) == 2


def test_wrong_content_type(client):
    r = client.post("/orders", data="id=1", content_type="application/x-www-form-urlencoded")
    assert r.status_code == 415
    assert r.json == {"error": "Unsupported Media Type"}


def test_malformed_json(client):
    r = client.post("/orders", data="{nope", content_type="application/json")
    assert r.status_code == 400
    assert r.json == {"error": "invalid_json"}


def test_body_too_large(client):
    r = client.post("/orders", data="[" + "1," * 8000 + "1]", content_type="application/json")
    assert r.status_code == 413


def test_non_post_methods_get_405(client):
    for path in ("/orders", "/login", "/showroom-mails/a@b.com/send"):
        for method in ("get", "put", "delete", "patch", "options"):
            r = getattr(client, method)(path)
            assert r.status_code == 405, (method, path)
            assert r.headers["Allow"] == "POST"


def test_unknown_path_is_404(client):
    r = client.post("/nope", json={})
    assert r.status_code == 404
    assert r.json == {"error": "Not Found"}


def test_login_with_token(client):
    token = client.post("/orders", json=make_order(customer={"first_name": "Ana"})).json["createdTokens"][0]

    r = client.post("/login", json={"token": token})
    assert r.status_code == 200
    assert r.json["order"]["orderId"] == "1001"
    assert r.json["order"]["customerFirstName"] == "Ana"
    assert r.json["order"]["email"] == "a@b.com"

    r = client.post("/login", json={"token": "0" * 96})
    assert r.status_code == 401
    assert r.json == {"error": "Invalid token"}

    r = client.post("/login", json={})
    assert r.status_code == 400


def test_manual_resend(client, mailer):
    tokens = client.post("/orders", json=make_order()).json["createdTokens"]
    mailer.sent.clear()

    r = client.post("/showroom-mails/A@B.com/send", json={})
    assert r.status_code == 200
    assert r.json["status"] == "sent"
    assert r.json["tokenCount"] == 2
    assert r.json["orderIds"] == ["1001"]
    assert len(mailer.sent) == 1
    assert all(t in mailer.sent[0]["body"] for t in tokens)


def test_manual_resend_unknown_email(client, mailer):
    r = client.post("/showroom-mails/nobody@x.com/send", json={})
    assert r.status_code == 404
    assert mailer.sent == []


def test_manual_resend_keeps_tokens_with_their_own_order(client, mailer):
    alice = client.post(
        "/orders", json=make_order(id="1", email="alice@x.com", contact_email="shared@x.com")
    ).json["createdTokens"]
    bob = client.post(
        "/orders", json=make_order(id="2", email="bob@x.com", contact_email="shared@x.com")
    ).json["createdTokens"]
    mailer.sent.clear()

    r = client.post("/showroom-mails/shared@x.com/send", json={})
    assert r.status_code == 200
    assert r.json["orderIds"] == ["1", "2"]
    assert r.json["tokenCount"] == 4

    by_recipient = {msg["to"]: msg["body"] for msg in mailer.sent}
    assert sorted(by_recipient) == ["alice@x.com", "bob@x.com"]
    assert all(t in by_recipient["alice@x.com"] for t in alice)
    assert not any(t in by_recipient["alice@x.com"] for t in bob)
    assert all(t in by_recipient["bob@x.com"] for t in bob)
    assert not any(t in by_recipient["bob@x.com"] for t in alice)


def test_manual_resend_requires_json(client, mailer):
    client.post("/orders", json=make_order())
    mailer.sent.clear()
    r = client.post("/showroom-mails/a@b.com/send", data="x", content_type="text/plain")
    assert r.status_code == 415
    assert r.json == {"error": "Unsupported Media Type"}
    assert mailer.sent == []


def test_huge_order_number_does_not_block_tokens(client, database, mailer):
    r = client.post("/orders", json=make_order(order_number=2 ** 64))
    assert r.status_code == 201
    token = r.json["createdTokens"][0]
    assert len(mailer.sent) == 1

    r = client.post("/login", json={"token": token})
    assert r.json["order"]["orderNumber"] is None

    r = client.post("/orders", json=make_order(order_number=2 ** 64))
    assert r.status_code == 200
    assert _count_rows(database) == 2


def test_app_owned_database_is_closed_at_exit(settings, mailer, monkeypatch):
    registered = []
    monkeypatch.setattr(atexit, "register", registered.append)
    create_app(settings, mailer=mailer)
    assert len(registered) == 1
    assert isinstance(registered[0].__self__, Database)
    registered[0]()


def test_injected_database_is_left_to_the_caller(settings, database, mailer, monkeypatch):
    registered = []
    monkeypatch.setattr(atexit, "register", registered.append)
    create_app(settings, database=database, mailer=mailer)
    assert registered == []
