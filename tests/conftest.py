import pytest

from app import create_app
from config import Settings
from db import open_database
from services.errors import MailError
from services.mailer import Mailer

TARGET = "TARGET"


class RecordingMailer(Mailer):
    """Mailer de teste: guarda as mensagens em vez de abrir SMTP."""

    def __init__(self):
        super().__init__(host="localhost", port=25, sender="showroom@example.com")
        self.sent = []
        self.fail = False

    def send(self, to, subject, body):
        if self.fail:
            raise MailError("smtp down")
        self.sent.append({"to": to, "subject": subject, "body": body})
        return f"<{len(self.sent)}@test>"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        port=8080,
        target_product_id=TARGET,
        database_url=f"sqlite:///{tmp_path / 'showroom.db'}",
        smtp_host="localhost",
        smtp_port=25,
        smtp_from="showroom@example.com",
        showroom_login_url="https://showroom.example.com/login",
    )


@pytest.fixture
def database(settings):
    db = open_database(settings.database_url, timeout_s=30.0)
    yield db
    db.close()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(settings, database, mailer):
    return create_app(settings, database=database, mailer=mailer)


@pytest.fixture
def client(app):
    return app.test_client()


def make_order(**overrides):
    payload = {
        "id": "1001",
        "line_items": [{"product_id": TARGET, "quantity": 2}],
        "financial_status": "paid",
        "cancelled_at": None,
        "email": "a@b.com",
    }
    payload.update(overrides)
    return payload
