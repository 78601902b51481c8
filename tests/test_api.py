from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import make_message
from zeno.api import create_app
from zeno.errors import PersistenceError
from zeno.schemas import GroundingLink, MediaInfo, VertexLinksRead


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(f"sqlite+aiosqlite:///{tmp_path}/api.db")) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_get_history(client, mocker):
    first = make_message(1, "good morning")
    first.date = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)
    second = make_message(
        2,
        "look at this",
        username=None,
        first_name="Bob",
        user_id=2,
        reply_to=1,
        media=MediaInfo(kind="photo", file_id="f1", mime_type="image/jpeg"),
    )
    # storage returns newest first
    get_history = mocker.patch("zeno.storage.Storage.get_history", return_value=[second, first])

    response = client.get("/history/-1001?limit=5")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/markdown")
    body = response.text
    assert body.startswith("# Chat -1001")
    assert "## 1 · @alice · 2026-10-19 08:30:00" in body
    assert body.index("good morning") < body.index("look at this")
    assert "*in reply to 1*" in body
    assert "*[photo: f1]*" in body
    assert get_history.call_args.args[-1] == 5


def test_get_history_storage_failure(client, mocker):
    mocker.patch(
        "zeno.storage.Storage.get_history", side_effect=PersistenceError("get_history failed")
    )
    response = client.get("/history/-1001")
    assert response.status_code == 500
    assert response.json()["error"] == "failed to get history"


def test_history_limit_is_bounded(client):
    assert client.get("/history/-1001?limit=0").status_code == 422


def test_get_links(client, mocker):
    record = VertexLinksRead(
        id="abc", links=[GroundingLink(title="A", uri="https://a.example")], sent=True
    )
    mocker.patch("zeno.storage.Storage.get_links", return_value=record)

    response = client.get("/links/abc")

    assert response.status_code == 200
    assert response.json() == {
        "id": "abc",
        "links": [{"title": "A", "uri": "https://a.example"}],
        "sent": True,
    }


def test_get_unknown_links(client, mocker):
    mocker.patch("zeno.storage.Storage.get_links", return_value=None)
    response = client.get("/links/missing")
    assert response.status_code == 404
