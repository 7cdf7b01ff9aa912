from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union
from zoneinfo import ZoneInfo

REPLY_TIMEZONE = ZoneInfo("Asia/Kolkata")
REPLY_TIMEZONE_LABEL = "IST"

GREETING = "Hello there! Send me !help to see what I can do."
STATUS = "I am online and running. Scan the QR code on the status page if I ever go quiet."
THANKS = "You're welcome! Happy to assist."
HELP = (
    "🤖 Available Commands:\n\n"
    "- *Hi / Hello*: A friendly greeting.\n"
    "- *!status*: Check if the bot is running.\n"
    "- *!time*: Get the current server time.\n"
    "- *!help*: Show this list."
)
FALLBACK = "I received your message, but I only understand specific commands. Send *!help* to see what I can do."


@dataclass(frozen=True)
class ReplyRule:
    name: str
    matches: Callable[[str], bool]
    response: Union[str, Callable[[datetime], str]]

    def render(self, now: datetime) -> str:
        if callable(self.response):
            return self.response(now)
        return self.response


def format_time_of_day(now: datetime) -> str:
    """
    '3:05:09 pm' style time of day in the reply timezone, independent of host locale.
    """
    local = now.astimezone(REPLY_TIMEZONE)
    hour = local.hour % 12 or 12
    meridiem = "am" if local.hour < 12 else "pm"
    return f"{hour}:{local.minute:02d}:{local.second:02d} {meridiem}"


def _time_reply(now: datetime) -> str:
    return f"The current server time is {format_time_of_day(now)} ({REPLY_TIMEZONE_LABEL})."


# Evaluated top to bottom, first match wins
RULES: List[ReplyRule] = [
    ReplyRule("greeting", lambda t: t in ("hi", "hello"), GREETING),
    ReplyRule("status", lambda t: t == "!status" or "online" in t, STATUS),
    ReplyRule("time", lambda t: t == "!time", _time_reply),
    ReplyRule("thanks", lambda t: "thanks" in t or "thank you" in t, THANKS),
    ReplyRule("help", lambda t: t == "!help", HELP),
]


def normalize(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def get_bot_response(message: Optional[str], now: Optional[datetime] = None, rules: Optional[List[ReplyRule]] = None) -> str:
    text = normalize(message)
    now = now or datetime.now(tz=timezone.utc)
    for rule in RULES if rules is None else rules:
        if rule.matches(text):
            return rule.render(now)
    return FALLBACK
