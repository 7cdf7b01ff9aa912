import io
import logging
import os
import socket
import sys
from typing import Optional, TextIO

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response

from .db import Database
from .green_api import green_api_client_factory
from .session import RetryPolicy, SessionManager
from .utils import json_log

APP_TITLE = "WhatsApp QR Bot"
VERSION = "1.0.0"

load_dotenv()


# Force a UTF-8 text stream for logging to avoid 'charmap' errors on Windows consoles
def _utf8_stream_for_stdout() -> TextIO:
    if hasattr(sys.stdout, "buffer"):
        return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    return sys.stdout


logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[logging.StreamHandler(_utf8_stream_for_stdout())],
    force=True,  # override any existing handlers (e.g., added by uvicorn) to enforce UTF-8 stream
)


def create_app(manager: Optional[SessionManager] = None, db: Optional[Database] = None) -> FastAPI:
    app = FastAPI(title=APP_TITLE, version=VERSION)
    app.state.session_manager = manager
    app.state.db = db

    @app.on_event("startup")
    async def on_startup():
        if app.state.session_manager is None:
            app.state.db = app.state.db or Database()
            app.state.session_manager = SessionManager(
                green_api_client_factory(db=app.state.db),
                policy=RetryPolicy.from_env(db=app.state.db),
                db=app.state.db,
            )
        json_log("startup", version=VERSION)
        app.state.session_manager.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        json_log("shutdown")
        if app.state.session_manager is not None:
            await app.state.session_manager.stop()

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return PlainTextResponse("OK")

    @app.head("/")
    async def root_head():
        return Response(status_code=200)

    # Attach web router (import here to keep the app factory importable on its own)
    from .webui import router as web_router  # local import
    app.include_router(web_router)
    return app


app = create_app()


def ensure_port_available(host: str, port: int):
    """
    Fail fast with a readable message instead of a uvicorn traceback when the port is taken.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError as e:
            raise SystemExit(f"Cannot listen on {host}:{port}: {e.strerror or e}")


def run():
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    ensure_port_available(host, port)
    json_log("listening", host=host, port=port)
    uvicorn.run("qrbot.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()
