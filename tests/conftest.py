import os

# Settings() requires credentials at import time
for key, value in {
    "TELEGRAM_API_ID": "12345",
    "TELEGRAM_API_HASH": "hash",
    "TELEGRAM_GROUP": "test_group",
    "TWITTER_API_KEY": "key",
    "TWITTER_API_SECRET": "secret",
    "TWITTER_ACCESS_TOKEN": "token",
    "TWITTER_ACCESS_TOKEN_SECRET": "token_secret",
    "GROQ_API_KEY": "key1",
    "GEMINI_API_KEY": "key2",
}.items():
    os.environ.setdefault(key, value)

import pytest
from unittest.mock import MagicMock

from models import VideoCandidate
from state import JsonStateStore

def make_candidate(message_id=100, text="", sender_id=7, timestamp=1_700_000_000, **kwargs):
    fields = {
        "peer_id": 555,
        "message_id": message_id,
        "timestamp": timestamp,
        "video_byte_size": 1024,
        "video_duration_seconds": 12,
        "text": text,
        "sender_id": sender_id,
    }
    fields.update(kwargs)
    return VideoCandidate(**fields)

def failed_upload_publisher():
    from types import SimpleNamespace
    from main import XPublisher
    publisher = XPublisher("key", "secret", "token", "token_secret")
    publisher.api = MagicMock()
    publisher.api.media_upload.return_value = SimpleNamespace(
        media_id=77,
        processing_info={"state": "failed", "error": {"code": 1, "name": "InvalidMedia", "message": "Not valid video: Video longer than 2 minutes."}},
    )
    publisher.client = MagicMock()
    return publisher

@pytest.fixture
def state_paths(tmp_path):
    return tmp_path / "processed.json", tmp_path / "failed.json", tmp_path / "offset.json"

@pytest.fixture
def store(state_paths):
    return JsonStateStore(*state_paths)
