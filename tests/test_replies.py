import time
from datetime import datetime, timezone

import pytest

from qrbot import replies
from qrbot.replies import FALLBACK, GREETING, HELP, STATUS, THANKS, get_bot_response

NOON_UTC = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_greeting():
    assert get_bot_response("Hi").startswith("Hello")
    assert get_bot_response("  HELLO ") == GREETING


def test_help_is_case_and_whitespace_insensitive():
    assert get_bot_response("!HELP ") == HELP


def test_fallback():
    assert get_bot_response("xyz123") == FALLBACK
    assert get_bot_response("") == FALLBACK
    assert get_bot_response(None) == FALLBACK


@pytest.mark.parametrize(
    "text,expected",
    [
        ("!status", STATUS),
        ("are you online?", STATUS),
        # "online" beats "thanks" because the status rule comes first
        ("thanks for being online", STATUS),
        ("thank you so much", THANKS),
        ("Thanks!", THANKS),
        # "hi" only matches exactly
        ("hi there", FALLBACK),
        ("!help me", FALLBACK),
    ],
)
def test_rule_order(text, expected):
    assert get_bot_response(text, now=NOON_UTC) == expected


def test_time_uses_ist():
    # 12:00 UTC is 17:30 IST
    assert get_bot_response("!time", now=NOON_UTC) == "The current server time is 5:30:00 pm (IST)."


@pytest.mark.skipif(not hasattr(time, "tzset"), reason="time.tzset is unavailable on this platform")
def test_time_ignores_host_timezone(monkeypatch):
    monkeypatch.setenv("TZ", "America/New_York")
    time.tzset()
    try:
        assert replies.format_time_of_day(NOON_UTC) == "5:30:00 pm"
        assert replies.format_time_of_day(datetime.fromtimestamp(NOON_UTC.timestamp())) == "5:30:00 pm"
    finally:
        monkeypatch.undo()
        time.tzset()


def test_time_midnight_and_morning():
    assert replies.format_time_of_day(datetime(2024, 3, 1, 18, 30, 5, tzinfo=timezone.utc)) == "12:00:05 am"
    assert replies.format_time_of_day(datetime(2024, 3, 1, 4, 0, 0, tzinfo=timezone.utc)) == "9:30:00 am"


def test_same_input_same_instant_same_output():
    assert get_bot_response("!time", now=NOON_UTC) == get_bot_response("!time", now=NOON_UTC)


def test_custom_rules():
    rules = [replies.ReplyRule("ping", lambda t: t == "ping", "pong")]
    assert get_bot_response("PING", rules=rules) == "pong"
    assert get_bot_response("hi", rules=rules) == FALLBACK
