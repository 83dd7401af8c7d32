import asyncio
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from main import VideoWorkflow, CaptionRewriter, RewrittenCaption
from captions import CaptionResolver
from failures import FailureReason
from state import fingerprint
from conftest import make_candidate

@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "video_100.mp4"
    path.write_bytes(b"\x00" * 16)
    return path

@pytest.fixture
def source(video_file):
    source = MagicMock()
    source.download_video = AsyncMock(return_value=video_file)
    source.get_messages_by_ids = AsyncMock(return_value=[])
    return source

@pytest.fixture
def rewriter():
    llm = MagicMock()
    llm.call_llm.return_value = RewrittenCaption(caption="Polished caption")
    return CaptionRewriter(llm)

def build(source, store, rewriter, publisher, **kwargs):
    resolver = CaptionResolver(MagicMock())
    return VideoWorkflow(source, store, resolver, rewriter, publisher, **kwargs)

def test_workflow_publishes_and_marks_processed(source, store, rewriter, video_file):
    publisher = MagicMock()
    publisher.publish.return_value = "1789"
    candidate = make_candidate(text="hello")

    result = asyncio.run(build(source, store, rewriter, publisher).process(candidate, entity=None))

    assert result["outcome"] == "published"
    assert result["post_id"] == "1789"
    assert result["original_caption"] == "hello"
    publisher.publish.assert_called_once_with(video_file, "Polished caption")
    assert store.is_processed(fingerprint(candidate))
    assert not video_file.exists()
    source.get_messages_by_ids.assert_not_called()

def test_publish_error_is_classified_and_recorded(source, store, rewriter, video_file):
    publisher = MagicMock()
    publisher.publish.side_effect = Exception("media processing failed: video longer than 2 minutes")
    candidate = make_candidate(text="hello")

    result = asyncio.run(build(source, store, rewriter, publisher).process(candidate, entity=None))

    assert result["outcome"] == "failed"
    assert result["failure_stage"] == "publish"
    assert result["failure_reason"] == FailureReason.DURATION_EXCEEDED.value
    fp = fingerprint(candidate)
    assert store.is_failed(fp)
    assert not store.is_processed(fp)
    assert len(store.failed) == 1
    assert store.failed[0].reason == "duration_exceeded"
    assert not video_file.exists()

def test_download_error_skips_publish(source, store, rewriter):
    source.download_video = AsyncMock(side_effect=Exception("Video too large: 80.00MB (max: 50MB)"))
    publisher = MagicMock()
    candidate = make_candidate(text="hello")

    result = asyncio.run(build(source, store, rewriter, publisher).process(candidate, entity=None))

    assert result["outcome"] == "failed"
    assert result["failure_reason"] == FailureReason.SIZE_EXCEEDED.value
    publisher.publish.assert_not_called()
    assert store.is_failed(fingerprint(candidate))

def test_captionless_video_uses_context_window(source, store, rewriter):
    publisher = MagicMock()
    publisher.publish.return_value = "1"
    workflow = build(source, store, rewriter, publisher)
    candidate = make_candidate(text="")

    result = asyncio.run(workflow.process(candidate, entity="group"))

    source.get_messages_by_ids.assert_awaited_once()
    assert result["original_caption"] == ""
    assert result["outcome"] == "published"

def test_dry_run_never_downloads_or_writes(source, store, rewriter, state_paths):
    publisher = MagicMock()
    candidate = make_candidate(text="hello")

    result = asyncio.run(build(source, store, rewriter, publisher, dry_run=True).process(candidate, entity=None))

    assert result["outcome"] == "dry_run"
    assert result["post_text"] == "Polished caption"
    source.download_video.assert_not_called()
    publisher.publish.assert_not_called()
    assert not any(Path(p).exists() for p in state_paths)

def test_history_and_notification_recorded(source, store, rewriter):
    publisher = MagicMock()
    publisher.publish.return_value = "42"
    data_manager = MagicMock()
    notifier = MagicMock()

    asyncio.run(build(source, store, rewriter, publisher, data_manager=data_manager, notifier=notifier)
                .process(make_candidate(text="hello"), entity=None))

    record = data_manager.save_result.call_args.args[0]
    assert record.status == "published"
    assert record.post_id == "42"
    notifier.send_update.assert_called_once()

def test_rejected_upload_recorded_as_duration_exceeded(source, store, rewriter):
    from conftest import failed_upload_publisher
    publisher = failed_upload_publisher()
    candidate = make_candidate(text="hello")

    result = asyncio.run(build(source, store, rewriter, publisher).process(candidate, entity=None))

    assert result["outcome"] == "failed"
    assert result["failure_reason"] == FailureReason.DURATION_EXCEEDED.value
    assert store.failed[0].reason == "duration_exceeded"
    assert "Video longer than 2 minutes" in store.failed[0].error
    publisher.client.create_tweet.assert_not_called()
