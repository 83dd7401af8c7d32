import logging
from typing import Any, Optional

from metrics import SCAN_OUTCOME_COUNT
from models import VideoCandidate
from state import JsonStateStore, fingerprint_aliases

logger = logging.getLogger(__name__)


class BatchScanner:
    """Pages through video messages oldest-first from the persisted cursor.

    One call inspects at most ``batch_size`` videos. If every one of them is
    already processed or failed, the cursor moves forward by ``batch_size`` and
    the call returns None; the next run continues from there.
    """

    def __init__(self, source: Any, store: JsonStateStore, batch_size: int = 50,
                 persist_cursor: bool = True, progress_every: int = 25):
        self.source = source
        self.store = store
        self.batch_size = batch_size
        self.persist_cursor = persist_cursor
        self.progress_every = progress_every

    async def find_oldest_unresolved(self, entity: Any) -> Optional[VideoCandidate]:
        start = self.store.cursor.offset
        logger.info(f"Searching for oldest unprocessed video from offset: {start}")

        checked = 0
        async for candidate in self.source.iter_videos(entity, limit=self.batch_size, offset_id=start):
            checked += 1
            aliases = fingerprint_aliases(candidate)

            if any(self.store.is_processed(fp) for fp in aliases):
                SCAN_OUTCOME_COUNT.labels(outcome="processed").inc()
                logger.debug(f"Skipping already processed video: Message ID {candidate.message_id}")
            elif any(self.store.is_failed(fp) for fp in aliases):
                SCAN_OUTCOME_COUNT.labels(outcome="failed").inc()
                logger.debug(f"Skipping previously failed video: Message ID {candidate.message_id}")
            else:
                SCAN_OUTCOME_COUNT.labels(outcome="selected").inc()
                logger.info(f"Found oldest unprocessed video: Message ID {candidate.message_id} ({checked} checked)")
                return candidate

            if checked % self.progress_every == 0:
                logger.info(f"Checked {checked} videos from offset {start}...")

        new_offset = start + self.batch_size
        logger.info(f"No unprocessed videos in {checked} checked. Moving to next batch (offset: {new_offset})")
        if self.persist_cursor:
            self.store.save_cursor(new_offset)
        else:
            logger.info("Cursor not persisted (dry run)")
        return None
