"""Durable dedup sets and scan cursor, stored as JSON files.

Each mutating call rewrites the whole file. The new content is serialized and
written to a sibling temp file first, then moved over the old file, so a crash
loses at most the latest mutation. Concurrent runs against the same files are
not supported.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set

from pydantic import ValidationError

from metrics import CURSOR_OFFSET, STATE_LOAD_ERRORS
from models import CursorState, FailedRecord, VideoCandidate, utc_now_iso

logger = logging.getLogger(__name__)

UNKNOWN_PEER = "unknown"


class StateStoreError(Exception):
    """Raised when state cannot be persisted"""
    def __init__(self, message: str, path: Path):
        super().__init__(message)
        self.path = path


def _number(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def fingerprint(candidate: VideoCandidate) -> str:
    """Stable identifier for a video message.

    Never raises: missing peer ids become "unknown", missing sizes and
    durations become 0. The same substitution is used for lookups and writes.
    """
    peer = getattr(candidate, "peer_id", None) or UNKNOWN_PEER
    message_id = getattr(candidate, "message_id", None)
    timestamp = getattr(candidate, "timestamp", None)
    size = _number(getattr(candidate, "video_byte_size", None) or 0)
    duration = _number(getattr(candidate, "video_duration_seconds", None) or 0)
    return f"{peer}_{message_id}_{timestamp}_{size}_{duration}"


def fingerprint_aliases(candidate: VideoCandidate) -> List[str]:
    """Current fingerprint first, then the zero-duration form.

    Earlier versions of this tool never read the video duration, so every
    fingerprint they stored ends in ``_0``. Lookups check both forms so those
    files keep matching; writes always use ``fingerprint``.
    """
    current = fingerprint(candidate)
    peer = getattr(candidate, "peer_id", None) or UNKNOWN_PEER
    size = _number(getattr(candidate, "video_byte_size", None) or 0)
    message_id = getattr(candidate, "message_id", None)
    timestamp = getattr(candidate, "timestamp", None)
    legacy = f"{peer}_{message_id}_{timestamp}_{size}_0"
    return [current] if legacy == current else [current, legacy]


# -----------------------------
# Load-time normalization
# -----------------------------
def _entries(data: Any) -> List[Any]:
    """Accept both the legacy bare list and the {"videos": [...]} object."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        videos = data.get("videos") or []
        if isinstance(videos, list):
            return videos
    raise ValueError(f"unexpected state shape: {type(data).__name__}")


def migrate_failed_entry(entry: Any) -> FailedRecord:
    """Normalize one stored failure entry into a FailedRecord.

    Entries are either bare fingerprints (legacy) or JSON-encoded
    {videoId, reason, timestamp, error} strings.
    """
    if isinstance(entry, dict):
        return FailedRecord.model_validate(entry)
    text = str(entry)
    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None
    if isinstance(decoded, dict) and "videoId" in decoded:
        try:
            return FailedRecord.model_validate(decoded)
        except ValidationError:
            pass
    return FailedRecord(video_id=text, legacy=True)


def _encode_failed(record: FailedRecord) -> str:
    if record.legacy:
        return record.video_id
    return record.model_dump_json(by_alias=True)


class JsonStateStore:
    """Processed set, failed records and cursor, one JSON file each."""

    def __init__(self, processed_path: Path, failed_path: Path, cursor_path: Path):
        self.processed_path = Path(processed_path)
        self.failed_path = Path(failed_path)
        self.cursor_path = Path(cursor_path)

        self.processed: Set[str] = set(str(v) for v in self._read_entries(self.processed_path, "processed"))
        self.failed: List[FailedRecord] = []
        self._failed_ids: Set[str] = set()
        for entry in self._read_entries(self.failed_path, "failed"):
            try:
                record = migrate_failed_entry(entry)
            except ValidationError:
                logger.warning(f"Dropping unreadable failed record: {entry!r}")
                continue
            self.failed.append(record)
            self._failed_ids.add(record.video_id)

        self.cursor: CursorState = self.load_cursor()
        logger.info(
            f"Loaded state: {len(self.processed)} processed, {len(self._failed_ids)} failed, "
            f"offset {self.cursor.offset}"
        )

    # -----------------------------
    # Reads
    # -----------------------------
    def _read_json(self, path: Path, store: str) -> Optional[Any]:
        if not path.exists():
            logger.info(f"No {store} state at {path}, starting fresh")
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            STATE_LOAD_ERRORS.labels(store=store).inc()
            logger.warning(f"Could not load {store} state from {path}, starting fresh", exc_info=True)
            return None

    def _read_entries(self, path: Path, store: str) -> Iterable[Any]:
        data = self._read_json(path, store)
        if data is None:
            return []
        try:
            return _entries(data)
        except ValueError:
            STATE_LOAD_ERRORS.labels(store=store).inc()
            logger.warning(f"Could not load {store} state from {path}, starting fresh", exc_info=True)
            return []

    def load_cursor(self) -> CursorState:
        data = self._read_json(self.cursor_path, "cursor")
        if data is None:
            cursor = CursorState()
        else:
            try:
                cursor = CursorState.model_validate(data)
            except ValidationError:
                STATE_LOAD_ERRORS.labels(store="cursor").inc()
                logger.warning(f"Invalid cursor in {self.cursor_path}, starting from the beginning", exc_info=True)
                cursor = CursorState()
        CURSOR_OFFSET.set(cursor.offset)
        return cursor

    def is_processed(self, fp: str) -> bool:
        return fp in self.processed

    def is_failed(self, fp: str) -> bool:
        return fp in self._failed_ids

    # -----------------------------
    # Writes
    # -----------------------------
    def _write_json(self, path: Path, payload: dict):
        content = json.dumps(payload, indent=2, ensure_ascii=False)
        tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StateStoreError(f"Could not write {path}: {e}", path) from e

    def mark_processed(self, fp: str):
        self.processed.add(fp)
        self._write_json(self.processed_path, {
            "lastUpdated": utc_now_iso(),
            "totalProcessed": len(self.processed),
            "videos": sorted(self.processed),
        })
        logger.info(f"Saved {len(self.processed)} processed video records")

    def mark_failed(self, fp: str, reason: str, raw_error: Optional[str] = None) -> FailedRecord:
        # Repeated failures for one fingerprint are appended, not merged
        record = FailedRecord(video_id=fp, reason=reason, timestamp=utc_now_iso(), error=raw_error)
        self.failed.append(record)
        self._failed_ids.add(fp)
        self._write_json(self.failed_path, {
            "lastUpdated": utc_now_iso(),
            "totalFailed": len(self.failed),
            "videos": [_encode_failed(r) for r in self.failed],
        })
        logger.info(f"Saved {len(self.failed)} failed video records")
        return record

    def save_cursor(self, offset: int) -> CursorState:
        if offset < self.cursor.offset:
            raise ValueError(f"Cursor cannot move backwards ({self.cursor.offset} -> {offset})")
        cursor = CursorState(offset=offset, last_updated=utc_now_iso(), total_processed=len(self.processed))
        self._write_json(self.cursor_path, cursor.model_dump(by_alias=True))
        self.cursor = cursor
        CURSOR_OFFSET.set(offset)
        logger.info(f"Updated offset to: {offset}")
        return cursor
