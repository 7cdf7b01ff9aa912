import asyncio
import contextlib
from typing import Any, Dict, Optional

import httpx

from .client import (
    AuthFailure,
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
from .utils import is_status_broadcast, json_log, normalize_whatsapp_id, to_chat_jid

INCOMING_WEBHOOK = "incomingmessagereceived"
OUTGOING_WEBHOOKS = {"outgoingmessagereceived", "outgoingapimessagereceived"}


class GreenAPIError(RuntimeError):
    pass


class GreenAPIClient:
    def __init__(self, base_url: str, id_instance: str, api_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.id_instance = id_instance
        self.api_token = api_token
        self.transport = transport

    @classmethod
    def from_env(cls, db: Optional[Database] = None) -> "GreenAPIClient":
        base_url = get_setting("GREEN_API_BASE_URL", "https://api.green-api.com", db=db)
        id_instance = get_setting("GREEN_API_INSTANCE_ID", "", db=db)
        api_token = get_setting("GREEN_API_API_TOKEN", "", db=db)
        return cls(base_url=base_url, id_instance=id_instance, api_token=api_token)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/waInstance{self.id_instance}/{path}/{self.api_token}"

    def _url_delete_notification_delete(self, receipt_id: int) -> str:
        # Official: DELETE /waInstance{id}/DeleteNotification/{token}/{receiptId}
        return f"{self.base_url}/waInstance{self.id_instance}/DeleteNotification/{self.api_token}/{receipt_id}"

    def _url_delete_notification_post(self) -> str:
        # Official: POST /waInstance{id}/DeleteNotification/{token} with {\"receiptId\": ...}
        return f"{self.base_url}/waInstance{self.id_instance}/DeleteNotification/{self.api_token}"

    def _http(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def get_state_instance(self) -> str:
        """
        Returns the instance state: authorized, notAuthorized, blocked, sleepMode, starting or yellowCard.
        """
        async with self._http(30) as client:
            resp = await client.get(self._url("getStateInstance"))
            resp.raise_for_status()
            data = resp.json()
        state = (data or {}).get("stateInstance")
        if not state:
            raise GreenAPIError(f"getStateInstance returned no state: {data!r}")
        return state

    async def get_qr(self) -> Dict[str, Any]:
        """
        Returns {"type": "qrCode" | "alreadyLogged" | "error", "message": ...}.
        For qrCode the message is a base64 encoded PNG.
        """
        async with self._http(30) as client:
            resp = await client.get(self._url("qr"))
            resp.raise_for_status()
            return resp.json()

    async def get_wa_settings(self) -> Dict[str, Any]:
        async with self._http(30) as client:
            resp = await client.get(self._url("getWaSettings"))
            resp.raise_for_status()
            return resp.json()

    async def send_message(self, chat_id: str, message: str) -> Dict[str, Any]:
        """
        Send a text message to a chat.
        """
        url = self._url("sendMessage")
        payload = {"chatId": chat_id, "message": message}
        async with self._http(30) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def receive_notification(self) -> Optional[Dict[str, Any]]:
        """
        Long-polls Green API ReceiveNotification. Returns None when the queue is empty.
        """
        url = self._url("ReceiveNotification")
        async with self._http(65) as client:
            resp = await client.get(url)
            if resp.status_code == 200 and resp.content:
                # When no notification, API may return null
                return resp.json()
            if resp.status_code == 204:
                return None
            resp.raise_for_status()
            return None

    async def delete_notification(self, receipt_id: int) -> None:
        """
        Acknowledge and remove a notification so it is not delivered again.
        Order as per docs:
          1) DELETE /.../DeleteNotification/{token}/{receiptId}
          2) POST   /.../DeleteNotification/{token} with JSON {\"receiptId\": ...}
        """
        async with self._http(30) as client:
            resp = await client.delete(self._url_delete_notification_delete(receipt_id))
            if resp.status_code in (200, 204):
                return
            resp2 = await client.post(self._url_delete_notification_post(), json={"receiptId": receipt_id})
            if resp2.status_code in (200, 204):
                return
            resp2.raise_for_status()


def text_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    """
    Extract human text from common Green-API payload shapes.
    Handles:
      - textMessageData.textMessage (typeMessage == textMessage)
      - extendedTextMessageData.text (typeMessage == extendedTextMessage)
      - captions for image/file/document
    Fallback: None
    """
    md = payload.get("messageData") or {}
    if not md:
        return None

    t = (md.get("typeMessage") or "").lower()

    if t == "textmessage":
        tmd = md.get("textMessageData") or {}
        if tmd.get("textMessage"):
            return tmd.get("textMessage")

    # Extended text (links often live here)
    if t == "extendedtextmessage":
        etd = md.get("extendedTextMessageData") or {}
        for k in ("text", "description", "title"):
            v = etd.get(k)
            if isinstance(v, str) and v.strip():
                return v

    for k in ("imageMessageData", "fileMessageData", "documentMessageData"):
        if k in md:
            cap = (md.get(k) or {}).get("caption")
            if isinstance(cap, str) and cap.strip():
                return cap

    return None


def event_from_notification(body: Dict[str, Any]) -> Optional[SessionEvent]:
    """
    Map one ReceiveNotification body to a session event, or None for notifications we don't track.
    """
    kind = str(body.get("typeWebhook") or "").lower()

    if kind == "stateinstancechanged":
        state = body.get("stateInstance") or "unknown"
        if state != "authorized":
            return Disconnected(reason=f"instance state changed to {state}")
        return None

    if kind == INCOMING_WEBHOOK or kind in OUTGOING_WEBHOOKS:
        text = text_from_payload(body)
        if text is None:
            return None
        sender = body.get("senderData") or {}
        chat_id = sender.get("chatId") or sender.get("sender") or body.get("chatId") or ""
        return MessageReceived(
            IncomingMessage(
                from_=chat_id,
                body=text,
                from_me=kind in OUTGOING_WEBHOOKS,
                is_status=is_status_broadcast(chat_id),
                id=body.get("idMessage"),
            )
        )

    return None


class GreenAPISessionClient(SessionClient):
    """
    Session client backed by a Green API instance.

    The instance id is the persistent identity: a fresh client for the same instance
    picks up the device already linked on the Green API side, so a QR is only needed
    when the instance is not authorized.
    """

    def __init__(
        self,
        api: GreenAPIClient,
        events: "asyncio.Queue[SessionEvent]",
        poll_interval: float = 5.0,
        error_pause: float = 2.0,
    ):
        super().__init__(events)
        self.api = api
        self.poll_interval = poll_interval
        self.error_pause = error_pause
        self._task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        if not self.api.id_instance or not self.api.api_token:
            raise GreenAPIError("GREEN_API_INSTANCE_ID and GREEN_API_API_TOKEN must be set")
        json_log("green_api_initialize", instance=self.api.id_instance)
        self._task = asyncio.create_task(self._run())

    async def send_message(self, to: str, text: str) -> None:
        await self.api.send_message(to_chat_jid(to), text)

    async def destroy(self) -> None:
        task, self._task = self._task, None
        self.info = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self):
        try:
            await self._watch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("green_api_client_fault", error=str(e))
            await self.emit(ClientFault(error=str(e)))

    async def _watch(self):
        authorized = False
        last_qr: Optional[str] = None
        while True:
            try:
                state = await self.api.get_state_instance()
            except httpx.HTTPError as e:
                json_log("green_api_state_error", error=str(e))
                await asyncio.sleep(self.error_pause)
                continue

            if state == "authorized":
                if not authorized:
                    self.info = await self._load_info()
                    authorized = True
                    await self.emit(Ready(info=self.info))
                reason = await self._pump_notification()
                if reason:
                    self.info = None
                    await self.emit(Disconnected(reason=reason))
                    return
                continue

            if authorized:
                self.info = None
                await self.emit(Disconnected(reason=f"instance state is {state}"))
                return

            if state == "notAuthorized":
                last_qr = await self._poll_qr(last_qr)
            elif state == "blocked":
                # AuthFailure clears the pending QR, so the next QR must be emitted again
                last_qr = None
                await self.emit(AuthFailure(reason="instance is blocked"))
            await asyncio.sleep(self.poll_interval)

    async def _poll_qr(self, last_qr: Optional[str]) -> Optional[str]:
        try:
            data = await self.api.get_qr()
        except httpx.HTTPError as e:
            json_log("green_api_qr_error", error=str(e))
            return last_qr
        kind = data.get("type")
        if kind == "qrCode" and data.get("message"):
            payload = "data:image/png;base64," + data["message"]
            if payload != last_qr:
                await self.emit(QrReceived(payload=payload))
            return payload
        if kind == "error":
            await self.emit(AuthFailure(reason=str(data.get("message") or "qr error")))
            return None
        # alreadyLogged: the next state poll reports authorized
        return last_qr

    async def _load_info(self) -> ClientInfo:
        try:
            settings = await self.api.get_wa_settings()
        except httpx.HTTPError as e:
            json_log("green_api_settings_error", error=str(e))
            settings = {}
        wid = settings.get("wid") or to_chat_jid(settings.get("phone"))
        name = normalize_whatsapp_id(settings.get("phone")) or f"instance {self.api.id_instance}"
        return ClientInfo(display_name=name, wid=wid)

    async def _pump_notification(self) -> Optional[str]:
        """
        Handle at most one queued notification. Returns a disconnect reason when the
        instance reported it lost authorization.
        """
        try:
            data = await self.api.receive_notification()
        except httpx.HTTPError as e:
            json_log("receive_notification_error", error=str(e))
            await asyncio.sleep(self.error_pause)
            return None
        if not data:
            return None

        receipt_id = data.get("receiptId")
        body = data.get("body") or data
        event = event_from_notification(body)
        if receipt_id is not None:
            try:
                await self.api.delete_notification(int(receipt_id))
            except httpx.HTTPError as e:
                json_log("delete_notification_error", error=str(e), receipt_id=receipt_id)

        if isinstance(event, Disconnected):
            return event.reason
        if event is not None:
            await self.emit(event)
        return None


def green_api_client_factory(db: Optional[Database] = None, poll_interval: Optional[float] = None):
    """
    Factory handed to the session manager. Every call builds a fresh client bound to
    the same Green API instance.
    """
    api = GreenAPIClient.from_env(db=db)
    interval = poll_interval if poll_interval is not None else float(get_setting("QR_POLL_SECONDS", "5", db=db))

    def factory(events: "asyncio.Queue[SessionEvent]") -> GreenAPISessionClient:
        return GreenAPISessionClient(api, events, poll_interval=interval)

    return factory
