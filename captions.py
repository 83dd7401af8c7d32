"""Caption discovery for video messages that may have no text of their own."""
import logging
from datetime import datetime, UTC
from typing import Any, Callable, List, Optional, Tuple

from metrics import CAPTION_STRATEGY_COUNT
from models import ContextMessage, VideoCandidate, to_epoch
from prompts import CAPTION_CONTEXT_LINE, CAPTION_RANKING_SYSTEM_PROMPT, CAPTION_RANKING_USER_TEMPLATE

logger = logging.getLogger(__name__)

NONE_SENTINEL = "NONE"
QUOTE_CHARS = ('"', "'")


async def build_context_window(source: Any, entity: Any, candidate: VideoCandidate, radius: int = 2) -> List[ContextMessage]:
    """Neighbouring text messages around the candidate, ordered by message id.

    The candidate itself and empty messages are dropped. A failed fetch yields
    an empty window.
    """
    ids = list(range(candidate.message_id - radius, candidate.message_id + radius + 1))
    try:
        messages = await source.get_messages_by_ids(entity, ids)
    except Exception:
        logger.warning(f"Could not fetch surrounding messages for {candidate.message_id}", exc_info=True)
        return []

    window = []
    for msg in messages or []:
        if msg is None or msg.id == candidate.message_id:
            continue
        text = (getattr(msg, "message", None) or "").strip()
        if not text:
            continue
        timestamp = to_epoch(getattr(msg, "date", None))
        window.append(ContextMessage(
            message_id=msg.id,
            text=text,
            sender_id=getattr(msg, "sender_id", None),
            timestamp=timestamp,
            position="before" if msg.id < candidate.message_id else "after",
            time_delta=abs(candidate.timestamp - timestamp),
        ))
    window.sort(key=lambda m: m.message_id)
    logger.info(f"Found {len(window)} surrounding messages for {candidate.message_id}")
    return window


def strip_quotes(text: str) -> str:
    text = (text or "").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in QUOTE_CHARS:
        return text[1:-1].strip()
    return text


def build_ranking_prompt(candidate: VideoCandidate, window: List[ContextMessage]) -> str:
    context = "\n".join(
        CAPTION_CONTEXT_LINE.format(
            message_id=m.message_id, position=m.position, time_delta=m.time_delta, text=m.text
        )
        for m in window
    )
    return CAPTION_RANKING_USER_TEMPLATE.format(
        message_id=candidate.message_id,
        video_date=datetime.fromtimestamp(candidate.timestamp, UTC).isoformat(),
        context=context,
        none_sentinel=NONE_SENTINEL,
    )


def match_window(answer: str, window: List[ContextMessage]) -> Optional[ContextMessage]:
    for message in window:
        if message.text == answer or answer in message.text or message.text in answer:
            return message
    return None


class CaptionResolver:
    """Picks a caption through an ordered strategy chain.

    Each strategy returns None to defer to the next one, or a string (possibly
    empty) to end the chain. The resolver never invents text: every result is
    the candidate's own text or a window entry's text.
    """

    def __init__(self, llm: Any, max_time_delta: int = 300,
                 temperature: float = 0.3, max_tokens: int = 150):
        self.llm = llm
        self.max_time_delta = max_time_delta
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.strategies: List[Tuple[str, Callable[[VideoCandidate, List[ContextMessage]], Optional[str]]]] = [
            ("direct", self._own_text),
            ("ranked", self._ranked),
            ("heuristic", self._same_sender_nearby),
        ]

    def resolve(self, candidate: VideoCandidate, window: List[ContextMessage]) -> str:
        for name, strategy in self.strategies:
            caption = strategy(candidate, window)
            if caption is not None:
                CAPTION_STRATEGY_COUNT.labels(strategy=name).inc()
                logger.info(f"Caption resolved by {name} strategy: {caption!r}")
                return caption
        CAPTION_STRATEGY_COUNT.labels(strategy="none").inc()
        logger.info("No relevant caption found")
        return ""

    def _own_text(self, candidate: VideoCandidate, window: List[ContextMessage]) -> Optional[str]:
        text = (candidate.text or "").strip()
        return text or None

    def _ranked(self, candidate: VideoCandidate, window: List[ContextMessage]) -> Optional[str]:
        if not window:
            return None
        try:
            raw = self.llm.complete(
                CAPTION_RANKING_SYSTEM_PROMPT,
                build_ranking_prompt(candidate, window),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception:
            logger.warning("AI caption analysis failed, using fallback", exc_info=True)
            return None

        answer = strip_quotes(raw)
        if not answer or answer.upper() == NONE_SENTINEL:
            return ""
        match = match_window(answer, window)
        if match is None:
            logger.warning("AI response didn't match any context message, using fallback")
            return None
        logger.info(f"AI selected message {match.message_id} ({match.position} video)")
        return match.text

    def _same_sender_nearby(self, candidate: VideoCandidate, window: List[ContextMessage]) -> Optional[str]:
        for message in window:
            if message.sender_id == candidate.sender_id and message.time_delta < self.max_time_delta:
                return message.text
        return None
