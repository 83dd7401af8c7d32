import asyncio
from datetime import datetime, UTC
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
import pytest
from captions import CaptionResolver, build_context_window, build_ranking_prompt, strip_quotes
from models import ContextMessage
from conftest import make_candidate

BASE_TS = 1_700_000_000

def message(message_id, text, sender_id=7, offset_seconds=0):
    return SimpleNamespace(
        id=message_id,
        message=text,
        sender_id=sender_id,
        date=datetime.fromtimestamp(BASE_TS + offset_seconds, UTC),
    )

def context(message_id, text, sender_id=7, time_delta=10, position="before"):
    return ContextMessage(message_id=message_id, text=text, sender_id=sender_id,
                          timestamp=BASE_TS - time_delta, position=position, time_delta=time_delta)

# -----------------------------
# Context window
# -----------------------------
def test_window_excludes_candidate_and_empty_messages():
    source = MagicMock()
    source.get_messages_by_ids = AsyncMock(return_value=[
        message(102, "after two", offset_seconds=40),
        message(98, "before two", offset_seconds=-20),
        None,
        message(100, "the video itself"),
        message(101, "   "),
    ])
    candidate = make_candidate(message_id=100, timestamp=BASE_TS)

    window = asyncio.run(build_context_window(source, "entity", candidate, radius=2))

    source.get_messages_by_ids.assert_awaited_once_with("entity", [98, 99, 100, 101, 102])
    assert [m.message_id for m in window] == [98, 102]
    assert [m.position for m in window] == ["before", "after"]
    assert [m.time_delta for m in window] == [20, 40]
    assert window[0].text == "before two"

def test_window_radius_one():
    source = MagicMock()
    source.get_messages_by_ids = AsyncMock(return_value=[])
    asyncio.run(build_context_window(source, None, make_candidate(message_id=10), radius=1))
    source.get_messages_by_ids.assert_awaited_once_with(None, [9, 10, 11])

def test_window_fetch_failure_is_empty():
    source = MagicMock()
    source.get_messages_by_ids = AsyncMock(side_effect=ConnectionError("network down"))
    assert asyncio.run(build_context_window(source, None, make_candidate())) == []

# -----------------------------
# Resolver
# -----------------------------
def test_own_caption_skips_window():
    llm = MagicMock()
    resolver = CaptionResolver(llm)
    window = [context(99, "look at this")]
    assert resolver.resolve(make_candidate(text="hello"), window) == "hello"
    llm.complete.assert_not_called()

def test_ranking_error_falls_back_to_same_sender():
    llm = MagicMock()
    llm.complete.side_effect = Exception("rate limited")
    resolver = CaptionResolver(llm)
    window = [context(99, "look at this", sender_id=7, time_delta=10)]
    assert resolver.resolve(make_candidate(sender_id=7), window) == "look at this"

def test_ranked_answer_strips_quotes_and_matches():
    llm = MagicMock()
    llm.complete.return_value = '"look at this"'
    resolver = CaptionResolver(llm)
    window = [context(98, "unrelated chatter", sender_id=1), context(99, "look at this", sender_id=2)]
    assert resolver.resolve(make_candidate(sender_id=7), window) == "look at this"
    system_prompt, user_prompt = llm.complete.call_args.args
    assert "Message 99 (before video, 10s apart)" in user_prompt

def test_ranked_substring_returns_window_text():
    llm = MagicMock()
    llm.complete.return_value = "look at this"
    resolver = CaptionResolver(llm)
    window = [context(99, "look at this amazing goal")]
    assert resolver.resolve(make_candidate(), window) == "look at this amazing goal"

def test_none_sentinel_returns_empty_without_fallback():
    llm = MagicMock()
    llm.complete.return_value = "NONE"
    resolver = CaptionResolver(llm)
    window = [context(99, "look at this", sender_id=7, time_delta=10)]
    assert resolver.resolve(make_candidate(sender_id=7), window) == ""

def test_unmatched_answer_uses_fallback():
    llm = MagicMock()
    llm.complete.return_value = "something invented"
    resolver = CaptionResolver(llm)
    window = [
        context(98, "from someone else", sender_id=1, time_delta=5),
        context(99, "same sender nearby", sender_id=7, time_delta=30),
    ]
    assert resolver.resolve(make_candidate(sender_id=7), window) == "same sender nearby"

def test_fallback_respects_time_threshold():
    llm = MagicMock()
    llm.complete.side_effect = Exception("boom")
    resolver = CaptionResolver(llm, max_time_delta=300)
    window = [context(99, "too old", sender_id=7, time_delta=300)]
    assert resolver.resolve(make_candidate(sender_id=7), window) == ""

def test_empty_window_returns_empty():
    llm = MagicMock()
    assert CaptionResolver(llm).resolve(make_candidate(), []) == ""
    llm.complete.assert_not_called()

@pytest.mark.parametrize("raw,expected", [
    ('"quoted"', "quoted"),
    ("'single'", "single"),
    ('"unbalanced', '"unbalanced'),
    ("  plain  ", "plain"),
    ('"', '"'),
])
def test_strip_quotes(raw, expected):
    assert strip_quotes(raw) == expected

def test_ranking_prompt_contains_video_date():
    prompt = build_ranking_prompt(make_candidate(message_id=100, timestamp=BASE_TS), [context(99, "hi")])
    assert "Video Message ID: 100" in prompt
    assert "2023-11-14T22:13:20+00:00" in prompt
    assert 'Message 99 (before video, 10s apart): "hi"' in prompt
