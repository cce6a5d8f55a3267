import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("APP_MODE", "test")

import pytest

import app


class FakeResponse:
    def __init__(self, status_code=200, text="ok", reason="OK"):
        self.status_code = status_code
        self.text = text
        self.reason = reason

    @property
    def ok(self):
        return self.status_code < 400


@pytest.fixture(autouse=True)
def fresh_db(monkeypatch):
    for name in ("CRON_SECRET", "SLACK_WEBHOOK_URL", "SMTP_HOST", "APP_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    app.Base.metadata.drop_all(bind=app.engine)
    app.Base.metadata.create_all(bind=app.engine)
    app.ensure_notification_settings()
    yield


@pytest.fixture
def member():
    return app.create_team_member("Dana", email="dana@example.com", timezone="America/New_York")


@pytest.fixture
def client():
    with app.app.test_client() as test_client:
        yield test_client


@pytest.fixture
def logged_in_client(client, member):
    response = client.post("/api/auth", json={"password": "sesame", "member_id": member["id"]})
    assert response.status_code == 200
    return client


@pytest.fixture
def fake_response():
    return FakeResponse
