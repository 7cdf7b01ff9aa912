"""
Session lifecycle management.

`SessionManager` owns the one live session client of the process. It creates the
client, consumes its events from a queue in a single loop (the only writer of the
session state), and after a disconnect or a client fault destroys the client, waits
for the settling delay and builds a new one for the same identity.

Transitions:

    UNINITIALIZED  --startup-------->  AWAITING_QR
    AWAITING_QR    --qr------------->  AWAITING_QR    (newest QR replaces the old one)
    AWAITING_QR    --ready---------->  AUTHENTICATED
    AWAITING_QR    --auth_failure--->  AWAITING_QR    (QR cleared, wait for the next)
    AUTHENTICATED  --disconnected--->  DISCONNECTED -> UNINITIALIZED -> AWAITING_QR
    any            --fault---------->  DISCONNECTED -> UNINITIALIZED -> AWAITING_QR

Any other (state, event) pair is ignored.
"""
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Type

from .client import (
    AuthFailure,
    ClientFactory,
    ClientFault,
    ClientInfo,
    Disconnected,
    IncomingMessage,
    MessageReceived,
    QrReceived,
    Ready,
    SessionClient,
    SessionEvent,
)
from .db import Database, get_setting
from .qr import is_prerendered, to_ascii
from .replies import get_bot_response
from .utils import json_log, normalize_whatsapp_id


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_QR = "awaiting_qr"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class StatusSnapshot:
    state: SessionState
    pending_qr: Optional[str] = None
    info: Optional[ClientInfo] = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    How the manager waits between client generations.

    The default is a fixed settling delay with no attempt cap. `max_attempts` counts
    consecutive generations that never reached AUTHENTICATED.
    """

    delay_seconds: float = 5.0
    max_attempts: Optional[int] = None
    backoff_factor: float = 1.0
    max_delay_seconds: float = 300.0

    def delay_for(self, failures: int) -> float:
        if failures <= 1 or self.backoff_factor <= 1.0:
            return self.delay_seconds
        return min(self.delay_seconds * self.backoff_factor ** (failures - 1), self.max_delay_seconds)

    def exhausted(self, failures: int) -> bool:
        return bool(self.max_attempts) and failures >= self.max_attempts

    @classmethod
    def from_env(cls, db: Optional[Database] = None) -> "RetryPolicy":
        max_attempts = int(get_setting("SESSION_MAX_ATTEMPTS", "0", db=db))
        return cls(
            delay_seconds=float(get_setting("SESSION_SETTLE_SECONDS", "5", db=db)),
            max_attempts=max_attempts or None,
            backoff_factor=float(get_setting("SESSION_BACKOFF_FACTOR", "1.0", db=db)),
            max_delay_seconds=float(get_setting("SESSION_MAX_DELAY_SECONDS", "300", db=db)),
        )


TRANSITIONS: Dict[Tuple[SessionState, Type], str] = {
    (SessionState.AWAITING_QR, QrReceived): "_on_qr",
    (SessionState.AWAITING_QR, Ready): "_on_ready",
    (SessionState.AWAITING_QR, AuthFailure): "_on_auth_failure",
    (SessionState.AUTHENTICATED, Disconnected): "_on_disconnected",
}


class SessionManager:
    def __init__(
        self,
        client_factory: ClientFactory,
        policy: Optional[RetryPolicy] = None,
        responder: Callable[[str], str] = get_bot_response,
        db: Optional[Database] = None,
    ):
        self._factory = client_factory
        self.policy = policy or RetryPolicy()
        self._responder = responder
        self._db = db
        self._state = SessionState.UNINITIALIZED
        self._pending_qr: Optional[str] = None
        self._info: Optional[ClientInfo] = None
        self._client: Optional[SessionClient] = None
        self._task: Optional[asyncio.Task] = None
        self.generations = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_qr(self) -> Optional[str]:
        return self._pending_qr

    @property
    def client(self) -> Optional[SessionClient]:
        return self._client

    def snapshot(self) -> StatusSnapshot:
        """State, QR and account info read together, so callers never see a half-applied transition."""
        return StatusSnapshot(state=self._state, pending_qr=self._pending_qr, info=self._info)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        json_log("session_manager_stopped")

    async def run(self):
        failures = 0
        while True:
            try:
                authenticated = await self._run_generation()
            except Exception as e:
                self._record("client_fault", f"{type(e).__name__}: {e}")
                self._set_state(SessionState.DISCONNECTED)
                authenticated = False
            failures = 0 if authenticated else failures + 1
            if self.policy.exhausted(failures):
                self._record("session_recovery_exhausted", f"{failures} consecutive attempts")
                return
            delay = self.policy.delay_for(failures)
            json_log("session_recovery_wait", seconds=delay, failures=failures)
            await asyncio.sleep(delay)
            self._set_state(SessionState.UNINITIALIZED)

    async def _run_generation(self) -> bool:
        """
        One client from construction to teardown. Returns whether it reached AUTHENTICATED.
        """
        events: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self.generations += 1
        reached = False
        async with self._client_scope(events) as client:
            try:
                await client.initialize()
            except Exception as e:
                self._record("client_initialize_error", str(e))
                self._set_state(SessionState.DISCONNECTED)
                return False
            self._set_state(SessionState.AWAITING_QR)
            while True:
                event = await events.get()
                done = await self.handle_event(event)
                reached = reached or self._state == SessionState.AUTHENTICATED
                if done:
                    break
        return reached

    @contextlib.asynccontextmanager
    async def _client_scope(self, events: "asyncio.Queue[SessionEvent]"):
        if self._client is not None:
            raise RuntimeError("a session client is already active")
        client = self._factory(events)
        self._client = client
        self._record("client_created", f"generation {self.generations}")
        try:
            yield client
        finally:
            try:
                await client.destroy()
            except Exception as e:
                self._record("client_destroy_error", str(e))
            self._client = None

    async def handle_event(self, event: SessionEvent) -> bool:
        """
        Apply one event. Returns True when the current client must be torn down.
        """
        if isinstance(event, MessageReceived):
            await self._on_message(event.message)
            return False
        if isinstance(event, ClientFault):
            self._record("client_fault", event.error)
            self._set_state(SessionState.DISCONNECTED)
            return True

        handler = TRANSITIONS.get((self._state, type(event)))
        if handler is None:
            logging.debug("ignoring %s in state %s", type(event).__name__, self._state.value)
            return False
        return bool(getattr(self, handler)(event))

    def _on_qr(self, event: QrReceived):
        self._pending_qr = event.payload
        json_log("qr_received")
        if not is_prerendered(event.payload):
            try:
                logging.info(to_ascii(event.payload))
            except Exception as e:
                json_log("qr_ascii_error", error=str(e))

    def _on_ready(self, event: Ready):
        self._info = event.info
        self._set_state(SessionState.AUTHENTICATED, event.info.display_name)

    def _on_auth_failure(self, event: AuthFailure):
        self._pending_qr = None
        self._record("auth_failure", event.reason)

    def _on_disconnected(self, event: Disconnected) -> bool:
        self._set_state(SessionState.DISCONNECTED, event.reason)
        return True

    async def _on_message(self, message: IncomingMessage):
        if message.from_me or message.is_status or not message.body:
            return
        sender = normalize_whatsapp_id(message.from_) or message.from_
        json_log("message_in", sender=sender, text=message.body)
        reply = self._responder(message.body)
        client = self._client
        if client is None:
            return
        try:
            await client.send_message(message.from_, reply)
        except Exception as e:
            json_log("send_message_error", sender=sender, error=str(e))
            return
        json_log("message_out", to=sender, text=reply)

    def _set_state(self, new: SessionState, detail: Optional[str] = None):
        old = self._state
        self._state = new
        if new != SessionState.AWAITING_QR:
            self._pending_qr = None
        if new != SessionState.AUTHENTICATED:
            self._info = None
        if old != new:
            self._record(f"state_{new.value}", detail)

    def _record(self, event: str, detail: Optional[str] = None):
        json_log(event, detail=detail)
        if self._db is not None:
            try:
                self._db.record_event(event, detail)
            except Exception as e:
                json_log("session_event_store_error", error=str(e))
