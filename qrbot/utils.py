import json
import logging
from datetime import datetime
from typing import Optional


def json_log(event: str, **kwargs):
    """
    Emit an ASCII-only JSON log line so Windows consoles with legacy codepages don't crash
    when messages contain emojis or non-ASCII characters.
    """
    payload = {"ts": datetime.utcnow().isoformat() + "Z", "event": event, **kwargs}
    line = json.dumps(payload, ensure_ascii=True, default=str)
    logging.info(line)


def normalize_whatsapp_id(chat_id: Optional[str]) -> Optional[str]:
    """
    Convert WhatsApp chat IDs like '94770889232@c.us' into a simple
    E.164-like phone representation: '+94770889232'.

    - Keeps only the part before '@'
    - Strips spaces, dashes, parentheses
    - Ensures a leading '+'
    - If input is None or empty, returns None
    """
    if not chat_id:
        return None
    s = str(chat_id).strip()
    if not s:
        return None
    local = s.split("@", 1)[0]
    cleaned = (
        local.replace(" ", "")
        .replace("-", "")
        .replace("(", "")
        .replace(")", "")
    )
    if not cleaned:
        return None
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.isdigit():
        return f"+{cleaned}"
    digits = "".join(ch for ch in cleaned if ch.isdigit())
    return f"+{digits}" if digits else cleaned


def to_chat_jid(chat: Optional[str]) -> Optional[str]:
    """
    Convert '+94770889232' to '94770889232@c.us' for Green API when sending.
    If value already looks like a JID with '@', return as-is.
    """
    if not chat:
        return None
    s = str(chat).strip()
    if "@" in s:
        return s
    local = normalize_whatsapp_id(s) or s
    local = local.lstrip("+")
    return f"{local}@c.us"


def is_status_broadcast(chat_id: Optional[str]) -> bool:
    return (chat_id or "").strip().lower() == "status@broadcast"
