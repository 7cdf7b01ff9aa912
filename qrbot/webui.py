import sqlite3
from html import escape
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse

from . import qr
from .db import Database
from .session import SessionManager, SessionState, StatusSnapshot
from .utils import json_log

router = APIRouter()


def get_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_event_db(request: Request) -> Optional[Database]:
    return getattr(request.app.state, "db", None)


def status_label(snap: StatusSnapshot) -> str:
    if snap.state == SessionState.AUTHENTICATED:
        name = snap.info.display_name if snap.info else "unknown"
        return f"Ready (Connected as {name})"
    if snap.pending_qr:
        return "Waiting for QR Scan (Image Displayed)"
    if snap.state == SessionState.AWAITING_QR:
        return "Waiting for a QR code from WhatsApp"
    if snap.state == SessionState.DISCONNECTED:
        return "Disconnected, reconnecting shortly"
    return "Initializing"


def html_page(body: str, refresh_seconds: Optional[int] = None) -> HTMLResponse:
    refresh = f'<meta http-equiv="refresh" content="{refresh_seconds}"/>' if refresh_seconds else ""
    html = f"""
<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8"/>
    <title>WhatsApp Bot Status</title>
    <meta name="viewport" content="width=device-width, initial-scale=1"/>
    {refresh}
    <style>
      :root {{
        --bg: #e8f5e9;
        --card: #ffffff;
        --muted: #666;
        --brand: #128C7E;
        --ok: #25D366;
        --wait: #FF9800;
        --err: #d32f2f;
      }}
      * {{ box-sizing: border-box; }}
      body {{
        margin: 0;
        font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;
        text-align: center;
        padding-top: 20px;
        background: var(--bg);
      }}
      .container {{
        max-width: 600px; margin: 0 auto; background: var(--card); padding: 30px;
        border-radius: 12px; box-shadow: 0 6px 20px rgba(0,0,0,0.15);
      }}
      h1 {{ color: var(--brand); font-size: 2em; }}
      .status-ready {{ color: var(--ok); font-weight: bold; font-size: 1.2em; }}
      .status-wait {{ color: var(--wait); font-weight: bold; font-size: 1.2em; }}
      .qr {{
        margin: 20px auto; padding: 20px; border: 2px dashed var(--wait); max-width: 300px;
        border-radius: 10px; background: #fffaf0;
      }}
      .qr img {{ width: 250px; height: 250px; border-radius: 5px; box-shadow: 0 4px 8px rgba(0,0,0,0.1); }}
      .err {{ color: var(--err); }}
      .muted {{ color: var(--muted); font-size: 0.9em; }}
      table {{ border-collapse: collapse; width: 100%; margin-top: 20px; font-size: 0.85em; }}
      th, td {{ border-bottom: 1px solid #eee; padding: 6px; text-align: left; }}
      a {{ color: var(--brand); text-decoration: none; }}
      a:hover {{ text-decoration: underline; }}
    </style>
  </head>
  <body>
    <div class="container">
      {body}
    </div>
  </body>
</html>
"""
    return HTMLResponse(html)


def _qr_block(payload: str) -> str:
    try:
        image = qr.to_data_url(payload)
    except Exception as e:
        json_log("qr_render_error", route="/", error=str(e))
        return '<p class="err">Error displaying QR code. Check logs.</p>'
    return f"""
      <div class="qr">
        <h2 style="color: #FF5722;">Scan to Connect</h2>
        <img src="{image}" alt="QR Code"/>
        <p><b>Session is not authenticated. Please scan the QR code using your phone's linked device feature.</b></p>
      </div>
    """


def _events_table(events: List[Dict[str, Any]]) -> str:
    if not events:
        return ""
    rows = "".join(
        f"<tr><td>{escape(e['created_at'] or '')}</td><td>{escape(e['event'] or '')}</td><td>{escape(e['detail'] or '')}</td></tr>"
        for e in events
    )
    return f"<table><tr><th>When</th><th>Event</th><th>Detail</th></tr>{rows}</table>"


@router.get("/", response_class=HTMLResponse)
async def dashboard(manager: SessionManager = Depends(get_manager), db: Optional[Database] = Depends(get_event_db)):
    snap = manager.snapshot()
    connected = snap.state == SessionState.AUTHENTICATED
    qr_html = _qr_block(snap.pending_qr) if snap.pending_qr else ""
    events: List[Dict[str, Any]] = []
    if db is not None:
        try:
            events = db.recent_events(10)
        except sqlite3.Error as e:
            json_log("session_events_read_error", error=str(e))

    body = f"""
      <h1>WhatsApp Chatbot Status</h1>
      <p class="{'status-ready' if connected else 'status-wait'}">Status: {escape(status_label(snap))}</p>
      {qr_html}
      <p class="muted">Raw QR data is available at: <b><a href="/get-qr">/get-qr</a></b></p>
      {_events_table(events)}
    """
    # QR codes rotate every ~20s, so keep the page fresh until linked
    return html_page(body, refresh_seconds=None if connected else 15)


@router.get("/get-qr")
async def get_qr(manager: SessionManager = Depends(get_manager)):
    snap = manager.snapshot()
    if snap.state == SessionState.AUTHENTICATED:
        name = snap.info.display_name if snap.info else "unknown"
        return JSONResponse({"status": "connected", "message": f"Client is already connected as {name}."})

    if snap.pending_qr:
        try:
            image = qr.to_data_url(snap.pending_qr)
        except Exception as e:
            json_log("qr_render_error", route="/get-qr", error=str(e))
            return JSONResponse({"status": "error", "message": "Failed to generate QR image."}, status_code=500)
        return JSONResponse(
            {
                "status": "waiting_for_scan",
                "qr_code_data_url": image,
                "qr_code_string": snap.pending_qr,
                "message": "Scan the QR code to authenticate the WhatsApp session.",
            }
        )

    return JSONResponse(
        {"status": "initializing", "message": "WhatsApp client is initializing. Please wait a few seconds and try again."},
        status_code=202,
    )
