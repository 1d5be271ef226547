from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from webui.app import APP_TITLE, app


@pytest.fixture
def client():
    app.config.update(TESTING=True)
    return app.test_client()


def test_index_describes_send_route(client):
    resp = client.get("/")

    assert resp.status_code == 200
    assert resp.content_type.startswith("text/plain")
    text = resp.get_data(as_text=True)
    assert text.startswith(APP_TITLE)
    assert "POST /verifactu/send" in text


@pytest.mark.parametrize("path", ["/health", "/healthz"])
def test_liveness_routes_need_no_token(client, path):
    resp = client.get(path)
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True}


def test_send_route_rejects_get(client):
    assert client.get("/verifactu/send").status_code == 405
