import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from reminder_parser import (
    FALLBACK_MESSAGE, OpenAIBackend, ParserBackend, ReminderParser, RuleBasedBackend,
    to_utc_datetime,
)
from tests.conftest import NOW

TZ = "Asia/Kolkata"


@pytest.fixture
def rules():
    return ReminderParser(RuleBasedBackend())


def test_tomorrow_at_3pm(rules):
    intent = rules.parse("remind me tomorrow at 3pm to call mom", TZ, now=NOW)

    assert intent.is_reminder is True
    assert intent.date == "2024-01-02"
    assert intent.time == "15:00"
    assert "call mom" in intent.message


@pytest.mark.parametrize("text, expected_time", [
    ("remind me at 3 to call mom", "15:00"),
    ("remind me at 6 to call mom", "18:00"),
    ("remind me at 9 to call mom", "09:00"),
    ("remind me at 12 to call mom", "12:00"),
    ("remind me at 9pm to call mom", "21:00"),
    ("remind me at 3am to call mom", "03:00"),
    ("remind me at 14:30 to call mom", "14:30"),
    ("remind me at 07:15 to call mom", "07:15"),
])
def test_bare_hours_follow_the_ambiguity_rule(rules, text, expected_time):
    intent = rules.parse(text, TZ, now=NOW)

    assert intent.is_reminder is True
    assert intent.time == expected_time
    assert intent.message == "call mom"


def test_bare_twelve_is_noon_not_midnight(rules):
    intent = rules.parse("remind me tomorrow at 12 to call mom", TZ, now=NOW)

    assert (intent.date, intent.time) == ("2024-01-02", "12:00")
    assert rules.parse("remind me tomorrow at 12am to call mom", TZ, now=NOW).time == "00:00"


def test_time_already_passed_today_moves_to_tomorrow(rules):
    # 09:00 is before "now" (10:00)
    intent = rules.parse("remind me at 9 to call mom", TZ, now=NOW)

    assert intent.date == "2024-01-02"


def test_relative_hours(rules):
    intent = rules.parse("set reminder for meeting in 2 hours", TZ, now=NOW)

    assert intent.is_reminder is True
    assert intent.message == "meeting"
    assert (intent.date, intent.time) == ("2024-01-01", "12:00")


def test_relative_minutes(rules):
    intent = rules.parse("remind me in 30 minutes to drink water", TZ, now=NOW)

    assert (intent.date, intent.time) == ("2024-01-01", "10:30")
    assert intent.message == "drink water"


def test_next_weekday(rules):
    # 2024-01-01 is a Monday
    intent = rules.parse("remind me next Monday at 10am to submit the report", TZ, now=NOW)

    assert (intent.date, intent.time) == ("2024-01-08", "10:00")
    assert intent.message == "submit the report"


def test_explicit_date(rules):
    intent = rules.parse("remind me on 15 March at 5:30 pm to renew passport", TZ, now=NOW)

    assert (intent.date, intent.time) == ("2024-03-15", "17:30")
    assert intent.message == "renew passport"


def test_location_is_extracted(rules):
    intent = rules.parse("remind me to buy groceries at the supermarket tomorrow at 6pm", TZ, now=NOW)

    assert intent.location == "supermarket"
    assert intent.message == "buy groceries"
    assert (intent.date, intent.time) == ("2024-01-02", "18:00")


def test_day_part_without_hour(rules):
    intent = rules.parse("remind me tomorrow evening to water the plants", TZ, now=NOW)

    assert (intent.date, intent.time) == ("2024-01-02", "18:00")
    assert intent.message == "water the plants"


def test_hindi_devanagari(rules):
    intent = rules.parse("याद दिलाओ कल सुबह 9 बजे दवाई लेनी है", TZ, now=NOW)

    assert intent.is_reminder is True
    assert (intent.date, intent.time) == ("2024-01-02", "09:00")
    assert intent.message == "दवाई लेनी है"


def test_hindi_evening_makes_bare_hour_pm(rules):
    intent = rules.parse("kal shaam 7 baje yaad dilana gym jana hai", TZ, now=NOW)

    assert (intent.date, intent.time) == ("2024-01-02", "19:00")
    assert intent.message == "gym jana hai"


def test_hindi_relative(rules):
    intent = rules.parse("2 घंटे बाद याद दिलाना मीटिंग", TZ, now=NOW)

    assert (intent.date, intent.time) == ("2024-01-01", "12:00")
    assert intent.message == "मीटिंग"


def test_greeting_is_not_a_reminder(rules):
    intent = rules.parse("hello", TZ, now=NOW)

    assert intent.is_reminder is False
    assert intent.error_message


def test_date_word_alone_is_not_a_reminder(rules):
    intent = rules.parse("how are you today", TZ, now=NOW)

    assert intent.is_reminder is False


def test_trigger_without_time_leaves_time_empty(rules):
    intent = rules.parse("remind me tomorrow to call mom", TZ, now=NOW)

    assert intent.is_reminder is True
    assert intent.date == "2024-01-02"
    assert intent.time == ""


class ExplodingBackend(ParserBackend):
    name = "exploding"

    def extract(self, user_message, context):
        raise RuntimeError("backend down")


class ScriptedBackend(ParserBackend):
    name = "scripted"

    def __init__(self, payload):
        self.payload = payload

    def extract(self, user_message, context):
        return self.payload


def test_backend_failure_returns_fallback():
    intent = ReminderParser(ExplodingBackend()).parse("remind me at 5", TZ, now=NOW)

    assert intent.is_reminder is False
    assert intent.message == "remind me at 5"
    assert (intent.date, intent.time) == ("", "")
    assert intent.error_message == FALLBACK_MESSAGE


def test_malformed_backend_output_returns_fallback():
    parser = ReminderParser(ScriptedBackend({"message": "x", "date": "tomorrow", "time": "3pm",
                                             "location": None, "is_reminder": True,
                                             "error_message": None}))

    intent = parser.parse("remind me tomorrow at 3pm", TZ, now=NOW)

    assert intent.is_reminder is False
    assert intent.error_message == FALLBACK_MESSAGE


def test_invalid_timezone_returns_fallback(rules):
    intent = rules.parse("remind me at 5 to call mom", "Mars/Olympus", now=NOW)

    assert intent.is_reminder is False


def test_not_a_reminder_gets_guidance_when_backend_gives_none():
    parser = ReminderParser(ScriptedBackend({"message": "hi", "date": "", "time": "",
                                             "location": None, "is_reminder": False,
                                             "error_message": None}))

    intent = parser.parse("hi", TZ, now=NOW)

    assert intent.error_message


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(content):
    completions = FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_openai_backend_uses_strict_schema_and_context():
    client, completions = _fake_client(json.dumps({
        "message": "call mom", "date": "2024-01-02", "time": "15:00",
        "location": None, "is_reminder": True, "error_message": None,
    }))
    parser = ReminderParser(OpenAIBackend(client=client, model="test-model"))

    intent = parser.parse("remind me tomorrow at 3pm to call mom", TZ, now=NOW)

    assert (intent.message, intent.date, intent.time) == ("call mom", "2024-01-02", "15:00")
    call = completions.calls[0]
    assert call["model"] == "test-model"
    assert call["response_format"]["json_schema"]["strict"] is True
    user_turn = call["messages"][1]["content"]
    assert "Current date: 2024-01-01" in user_turn
    assert "Current time: 10:00" in user_turn
    assert TZ in user_turn


def test_openai_backend_invalid_json_returns_fallback():
    client, _ = _fake_client("not json")
    parser = ReminderParser(OpenAIBackend(client=client))

    intent = parser.parse("remind me tomorrow", TZ, now=NOW)

    assert intent.is_reminder is False
    assert intent.error_message == FALLBACK_MESSAGE


def test_to_utc_datetime_converts_from_user_timezone():
    assert to_utc_datetime("2024-01-02", "15:00", TZ) == datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("date_str, time_str", [
    ("", "15:00"),
    ("2024-01-02", ""),
    ("2024-02-30", "15:00"),
    ("tomorrow", "15:00"),
])
def test_to_utc_datetime_rejects_incomplete_input(date_str, time_str):
    assert to_utc_datetime(date_str, time_str, TZ) is None
