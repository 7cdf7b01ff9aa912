import socket
import sqlite3

import pytest
from fastapi.testclient import TestClient

from qrbot import qr, webui
from qrbot.client import ClientInfo
from qrbot.db import Database
from qrbot.main import create_app, ensure_port_available
from qrbot.session import SessionState, StatusSnapshot

PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


class StubManager:
    def __init__(self, snap: StatusSnapshot):
        self.snap = snap

    def snapshot(self):
        return self.snap


def client_for(state, pending_qr=None, info=None, db=None) -> TestClient:
    # No context manager: startup hooks stay off, so no real session client is built
    app = create_app(manager=StubManager(StatusSnapshot(state, pending_qr, info)), db=db)
    return TestClient(app)


def test_health():
    resp = TestClient(create_app()).get("/health")
    assert resp.status_code == 200
    assert resp.text == "OK"


def test_head_root():
    resp = client_for(SessionState.UNINITIALIZED).head("/")
    assert resp.status_code == 200


@pytest.mark.parametrize("state", [SessionState.UNINITIALIZED, SessionState.AWAITING_QR, SessionState.DISCONNECTED])
def test_get_qr_initializing(state):
    resp = client_for(state).get("/get-qr")
    assert resp.status_code == 202
    assert resp.json()["status"] == "initializing"


def test_get_qr_waiting_for_scan():
    resp = client_for(SessionState.AWAITING_QR, pending_qr="2@abc,def,ghi").get("/get-qr")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "waiting_for_scan"
    assert body["qr_code_string"] == "2@abc,def,ghi"
    assert body["qr_code_data_url"].startswith("data:image/png;base64,")
    assert body["message"]


def test_get_qr_prerendered_image_passes_through():
    body = client_for(SessionState.AWAITING_QR, pending_qr=PNG_DATA_URL).get("/get-qr").json()
    assert body["qr_code_data_url"] == PNG_DATA_URL


def test_get_qr_connected():
    resp = client_for(SessionState.AUTHENTICATED, info=ClientInfo(display_name="+94770889232")).get("/get-qr")
    assert resp.status_code == 200
    assert resp.json() == {"status": "connected", "message": "Client is already connected as +94770889232."}


def test_get_qr_render_failure(monkeypatch):
    def boom(payload):
        raise ValueError("data too long")

    monkeypatch.setattr(qr, "to_data_url", boom)
    resp = client_for(SessionState.AWAITING_QR, pending_qr="x").get("/get-qr")
    assert resp.status_code == 500
    assert resp.json()["status"] == "error"


def test_dashboard_shows_qr():
    resp = client_for(SessionState.AWAITING_QR, pending_qr="2@abc").get("/")
    assert resp.status_code == 200
    assert "Scan to Connect" in resp.text
    assert 'src="data:image/png;base64,' in resp.text
    assert "Waiting for QR Scan (Image Displayed)" in resp.text
    assert 'http-equiv="refresh"' in resp.text


def test_dashboard_connected():
    resp = client_for(SessionState.AUTHENTICATED, info=ClientInfo(display_name="+94770889232")).get("/")
    assert "Ready (Connected as +94770889232)" in resp.text
    assert "Scan to Connect" not in resp.text
    assert 'http-equiv="refresh"' not in resp.text


def test_dashboard_render_failure_is_inline(monkeypatch):
    monkeypatch.setattr(qr, "to_data_url", lambda payload: 1 / 0)
    resp = client_for(SessionState.AWAITING_QR, pending_qr="x").get("/")
    assert resp.status_code == 200
    assert "Error displaying QR code" in resp.text


def test_dashboard_lists_recent_events(tmp_path):
    db = Database(tmp_path / "app.db")
    db.record_event("state_awaiting_qr")
    db.record_event("auth_failure", "<bad> credentials")
    resp = client_for(SessionState.AWAITING_QR, db=db).get("/")
    assert "state_awaiting_qr" in resp.text
    assert "&lt;bad&gt; credentials" in resp.text


class BrokenEventsDB:
    def recent_events(self, limit=10):
        raise sqlite3.OperationalError("database is locked")


def test_dashboard_renders_when_event_log_unreadable():
    resp = client_for(SessionState.AWAITING_QR, pending_qr="2@abc", db=BrokenEventsDB()).get("/")
    assert resp.status_code == 200
    assert "Waiting for QR Scan (Image Displayed)" in resp.text
    assert "<table>" not in resp.text


def test_status_labels():
    assert webui.status_label(StatusSnapshot(SessionState.UNINITIALIZED)) == "Initializing"
    assert "reconnecting" in webui.status_label(StatusSnapshot(SessionState.DISCONNECTED))


def test_port_in_use_aborts_startup():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
        with pytest.raises(SystemExit) as exc:
            ensure_port_available("127.0.0.1", port)
    assert str(port) in str(exc.value)
