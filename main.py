import sys
import json
import logging
import asyncio
import time
from datetime import datetime, UTC
from getpass import getpass
from pathlib import Path
from typing import List, Dict, Optional, Any, TypedDict
from logging.handlers import RotatingFileHandler
from telethon import TelegramClient
from telethon.sessions import StringSession
from telethon.tl.types import InputMessagesFilterVideo
import tweepy
from groq import Groq
from discordwebhook import Discord
from google import genai
from pydantic import BaseModel
from langgraph.graph import StateGraph, END
from tenacity import retry, wait_exponential, stop_after_attempt
from pythonjsonlogger import jsonlogger
from sqlmodel import SQLModel, Session, create_engine, Field as SqlField

from settings import settings
from prompts import CAPTION_REWRITE_SYSTEM_PROMPT, CAPTION_REWRITE_OUTPUT_FORMAT
from metrics import NODE_EXECUTION_COUNT, NODE_DURATION, PUBLISH_FAILURE_COUNT
from models import VideoCandidate
from state import JsonStateStore, fingerprint
from scanner import BatchScanner
from captions import CaptionResolver, build_context_window, strip_quotes
from failures import FailureReason, classify, describe

# -----------------------------
# Versioning
# -----------------------------
__version__ = "1.0.0"

# -----------------------------
# Logging Setup
# -----------------------------
def setup_logging():
    log_file = settings.log_file
    max_bytes = 10_000_000  # 10MB
    backup_count = 5

    logger = logging.getLogger()
    logger.setLevel(logging.INFO)

    # Console Handler with human-readable format
    console_handler = logging.StreamHandler(sys.stdout)
    console_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File Handler with JSON format for structured logging
    file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
    log_format = '%(asctime)s %(name)s %(levelname)s %(message)s %(message_id)s %(fingerprint)s'
    json_formatter = jsonlogger.JsonFormatter(log_format)
    file_handler.setFormatter(json_formatter)
    logger.addHandler(file_handler)

    return logger

logger = setup_logging()

class MessageContextAdapter(logging.LoggerAdapter):
    """Adapter to inject message_id and fingerprint into logs"""
    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update({
            "message_id": self.extra.get("message_id", "N/A"),
            "fingerprint": self.extra.get("fingerprint", "N/A")
        })
        kwargs["extra"] = extra
        return msg, kwargs

# -----------------------------
# Exceptions
# -----------------------------
class LLMParseError(Exception):
    """Custom exception when LLM fails to return valid JSON or schema"""
    def __init__(self, message: str, raw_response: str):
        super().__init__(message)
        self.raw_response = raw_response

class VideoTooLargeError(Exception):
    """Raised before downloading a video above the configured size limit"""

class MediaProcessingError(Exception):
    """Raised when X accepts an upload but rejects it during processing"""

# -----------------------------
# Models & Schemas
# -----------------------------

# SQLite Models
class PostRecord(SQLModel, table=True):
    id: Optional[int] = SqlField(default=None, primary_key=True)
    fingerprint: str = SqlField(index=True)
    message_id: int
    original_caption: Optional[str] = None
    post_text: Optional[str] = None
    post_id: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    error: Optional[str] = None
    processed_at: datetime = SqlField(default_factory=lambda: datetime.now(UTC).replace(tzinfo=None))

# LLM Schemas
class RewrittenCaption(BaseModel):
    """Caption rewritten for the target platform"""
    caption: str

class WorkflowState(TypedDict):
    """Complete state tracked through the per-video pipeline"""
    candidate: VideoCandidate
    fingerprint: str
    entity: Any
    original_caption: str
    caption: str
    post_text: str
    video_path: Optional[str]
    post_id: Optional[str]
    outcome: Optional[str]
    failure_stage: Optional[str]
    failure_reason: Optional[str]
    error_text: Optional[str]

# -----------------------------
# Helper Services
# -----------------------------

class LLMService:
    """Wrapper for LLM calls with fallback logic and retries"""
    def __init__(self, groq_api_key: str, gemini_api_key: str):
        self.groq_client = Groq(api_key=groq_api_key)
        self.gemini_client = genai.Client(api_key=gemini_api_key)
        self.groq_model = settings.groq_model
        self.gemini_model = settings.gemini_model

    def complete(self, system_prompt: str, user_message: str, temperature: Optional[float] = None, max_tokens: Optional[int] = None) -> str:
        """Free-text completion, Groq first with Gemini as fallback."""
        try:
            return self._call_groq(system_prompt, user_message, temperature, max_tokens)
        except Exception:
            logger.warning("Groq call failed, falling back to Gemini", exc_info=True)
            return self._call_gemini(system_prompt, user_message, temperature, max_tokens)

    def call_llm(self, system_prompt: str, user_message: str, response_model: Any, temperature: Optional[float] = None, max_tokens: Optional[int] = None) -> Any:
        try:
            text = self._call_groq(system_prompt, user_message, temperature, max_tokens, json_mode=True)
        except Exception:
            logger.warning("Groq call failed, falling back to Gemini", exc_info=True)
            text = self._call_gemini(system_prompt, user_message, temperature, max_tokens, json_mode=True)
        return self._parse_json(text, response_model)

    @retry(wait=wait_exponential(multiplier=1, min=4, max=60), stop=stop_after_attempt(settings.llm_retry_attempts))
    def _call_groq(self, system_prompt: str, user_message: str, temperature: Optional[float], max_tokens: Optional[int], json_mode: bool = False) -> str:
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        chat_completion = self.groq_client.chat.completions.create(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message}
            ],
            model=self.groq_model,
            max_tokens=max_tokens or settings.llm_max_tokens,
            temperature=settings.llm_temperature if temperature is None else temperature,
            timeout=30.0,
            **kwargs
        )
        return chat_completion.choices[0].message.content or ""

    @retry(wait=wait_exponential(multiplier=1, min=4, max=60), stop=stop_after_attempt(settings.llm_retry_attempts))
    def _call_gemini(self, system_prompt: str, user_message: str, temperature: Optional[float], max_tokens: Optional[int], json_mode: bool = False) -> str:
        config = {
            "system_instruction": system_prompt,
            "temperature": settings.llm_temperature if temperature is None else temperature,
            "max_output_tokens": max_tokens or settings.llm_max_tokens,
        }
        if json_mode:
            config["response_mime_type"] = "application/json"
        response = self.gemini_client.models.generate_content(
            model=self.gemini_model,
            contents=[user_message],
            config=config
        )
        return response.text or ""

    def _parse_json(self, text: str, model: Any) -> Any:
        json_str = text.strip()
        if "```json" in json_str:
            json_str = json_str.split("```json")[1].split("```")[0].strip()
        elif "```" in json_str:
            json_str = json_str.split("```")[1].split("```")[0].strip()

        try:
            data = json.loads(json_str)
            # Basic cleanup if model fields are expected to be strings but got lists
            if hasattr(model, 'model_fields'):
                for key, value in data.items():
                    if isinstance(value, list) and key in model.model_fields:
                        data[key] = " ".join([str(v) for v in value])
            return model(**data)
        except json.JSONDecodeError as e:
            raise LLMParseError(f"Invalid JSON from LLM: {str(e)}", text)
        except Exception as e:
            logger.error(f"Failed to parse LLM response as {model.__name__}", exc_info=True)
            raise LLMParseError(f"Schema validation failed: {str(e)}", text)

class CaptionRewriter:
    """Polishes a resolved caption for posting; never fails."""
    def __init__(self, llm: LLMService, system_prompt: Optional[str] = None, default_caption: str = settings.default_caption,
                 temperature: float = settings.rewrite_temperature, max_tokens: int = settings.rewrite_max_tokens):
        self.llm = llm
        self.system_prompt = (system_prompt or CAPTION_REWRITE_SYSTEM_PROMPT) + CAPTION_REWRITE_OUTPUT_FORMAT
        self.default_caption = default_caption
        self.temperature = temperature
        self.max_tokens = max_tokens

    def rewrite(self, caption: str) -> str:
        clean = (caption or "").strip()
        if not clean:
            logger.info("No caption to rewrite, using default")
            return self.default_caption

        try:
            result = self.llm.call_llm(self.system_prompt, f"Rewrite this caption: {clean}", RewrittenCaption,
                                       temperature=self.temperature, max_tokens=self.max_tokens)
            rewritten = strip_quotes(result.caption)
        except Exception:
            logger.warning("Caption rewriting failed, using original caption", exc_info=True)
            return clean
        return rewritten or clean

class DataManager:
    """Post history in SQLite using SQLModel. Not consulted for dedup."""
    def __init__(self, db_path: Path):
        self.engine = create_engine(f"sqlite:///{db_path}")
        SQLModel.metadata.create_all(self.engine)

    def save_result(self, record: PostRecord):
        with Session(self.engine) as session:
            session.add(record)
            session.commit()

class TelegramSource:
    """Telethon-backed message source with a persisted string session."""
    def __init__(self, api_id: int, api_hash: str, session_file: Path):
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_file = Path(session_file)
        self.client: Optional[TelegramClient] = None

    async def connect(self):
        session_string = ""
        if self.session_file.exists():
            session_string = self.session_file.read_text(encoding="utf-8").strip()
            logger.info("Found existing Telegram session")

        self.client = TelegramClient(StringSession(session_string), self.api_id, self.api_hash, connection_retries=5)
        await self.client.start(
            phone=lambda: input("Enter your phone number (with country code): "),
            password=lambda: getpass("Enter your 2FA password: "),
            code_callback=lambda: input("Enter the verification code sent to your phone: "),
        )

        new_session_string = self.client.session.save()
        if new_session_string != session_string:
            self.session_file.write_text(new_session_string, encoding="utf-8")
            logger.info("Telegram session saved")
        logger.info("Telegram client ready")

    async def disconnect(self):
        if self.client is not None:
            await self.client.disconnect()
            logger.info("Disconnected from Telegram")

    async def get_entity(self, name: str) -> Any:
        entity = await self.client.get_entity(name)
        logger.info(f"Searching in: {getattr(entity, 'title', None) or name}")
        return entity

    async def iter_videos(self, entity: Any, limit: int, offset_id: int = 0):
        """Video messages oldest-first with ids above offset_id."""
        async for message in self.client.iter_messages(
            entity,
            limit=limit,
            offset_id=offset_id if offset_id > 0 else 0,
            reverse=True,
            filter=InputMessagesFilterVideo(),
        ):
            yield VideoCandidate.from_message(message)

    async def get_messages_by_ids(self, entity: Any, ids: List[int]) -> List[Any]:
        return await self.client.get_messages(entity, ids=ids)

    async def download_video(self, candidate: VideoCandidate, download_dir: Path, max_size_mb: int) -> Path:
        if candidate.message is None or not getattr(candidate.message, "video", None):
            raise ValueError("No video found in message")

        size_mb = (candidate.video_byte_size or 0) / (1024 * 1024)
        if size_mb > max_size_mb:
            raise VideoTooLargeError(f"Video too large: {size_mb:.2f}MB (max: {max_size_mb}MB)")

        download_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = download_dir / f"video_{candidate.message_id}_{stamp}.mp4"

        last_progress = 0
        def report(downloaded: int, total: int):
            nonlocal last_progress
            if not total:
                return
            progress = round(downloaded / total * 100)
            if progress - last_progress >= 10:
                logger.info(f"Download progress: {progress}%")
                last_progress = progress

        await self.client.download_media(candidate.message, file=str(path), progress_callback=report)
        logger.info(f"Video downloaded: {path.name} ({size_mb:.2f}MB)")
        return path

def compose_post_text(caption: str, limit: int = settings.post_char_limit, fallback: str = settings.fallback_post_text) -> str:
    text = caption or ""
    if len(text) > limit:
        text = text[:limit - 3] + "..."
    if not text.strip():
        text = fallback
    return text

class XPublisher:
    """Uploads a video and posts it to X. Errors propagate for classification."""
    def __init__(self, api_key: str, api_secret: str, access_token: str, access_token_secret: str):
        auth = tweepy.OAuth1UserHandler(api_key, api_secret, access_token, access_token_secret)
        self.api = tweepy.API(auth)
        self.client = tweepy.Client(
            consumer_key=api_key,
            consumer_secret=api_secret,
            access_token=access_token,
            access_token_secret=access_token_secret,
        )

    def publish(self, video_path: Path, text: str) -> str:
        logger.info("Uploading media to X...")
        media = self.api.media_upload(filename=str(video_path), media_category="tweet_video", chunked=True)
        info = getattr(media, "processing_info", None) or {}
        if info.get("state") == "failed":
            message = (info.get("error") or {}).get("message") or "Media processing failed"
            raise MediaProcessingError(message)
        logger.info("Posting tweet...")
        response = self.client.create_tweet(text=text, media_ids=[media.media_id])
        post_id = str(response.data["id"])
        logger.info(f"Successfully posted to X! Tweet ID: {post_id}")
        return post_id

class VideoWorkflow:
    def __init__(self, source: Any, store: JsonStateStore, resolver: CaptionResolver, rewriter: CaptionRewriter,
                 publisher: Any, data_manager: Optional[DataManager] = None, notifier: Optional["DiscordNotifier"] = None,
                 dry_run: bool = False):
        self.source = source
        self.store = store
        self.resolver = resolver
        self.rewriter = rewriter
        self.publisher = publisher
        self.data_manager = data_manager
        self.notifier = notifier
        self.dry_run = dry_run
        self.app = self._build_graph()

    def _log(self, state: WorkflowState) -> MessageContextAdapter:
        return MessageContextAdapter(logger, {"message_id": state["candidate"].message_id, "fingerprint": state["fingerprint"]})

    def _mark_error(self, state: WorkflowState, stage: str, error: Exception):
        reason = classify(error)
        state["failure_stage"] = stage
        state["failure_reason"] = reason.value
        state["error_text"] = str(error)
        self._log(state).error(f"{stage} failed ({describe(reason, error)}): {error}")
        NODE_EXECUTION_COUNT.labels(node_name=stage, status="error").inc()

    async def _resolve_caption(self, state: WorkflowState) -> WorkflowState:
        start_time = time.perf_counter()
        candidate = state["candidate"]
        window = []
        if not candidate.text:
            window = await build_context_window(self.source, state["entity"], candidate, settings.context_radius)
        state["original_caption"] = await asyncio.to_thread(self.resolver.resolve, candidate, window)
        NODE_DURATION.labels(node_name="resolve_caption").observe(time.perf_counter() - start_time)
        self._log(state).info(f"Original caption: {state['original_caption'] or '(no caption)'}")
        return state

    async def _rewrite_caption(self, state: WorkflowState) -> WorkflowState:
        state["caption"] = await asyncio.to_thread(self.rewriter.rewrite, state["original_caption"])
        state["post_text"] = compose_post_text(state["caption"])
        self._log(state).info(f"Final caption: {state['post_text']}")
        return state

    async def _dry_run(self, state: WorkflowState) -> WorkflowState:
        state["outcome"] = "dry_run"
        self._log(state).info("DRY RUN: skipping download and publish")
        return state

    async def _download(self, state: WorkflowState) -> WorkflowState:
        start_time = time.perf_counter()
        try:
            path = await self.source.download_video(state["candidate"], settings.download_dir, settings.max_video_size_mb)
            state["video_path"] = str(path)
            NODE_EXECUTION_COUNT.labels(node_name="download", status="success").inc()
        except Exception as e:
            self._mark_error(state, "download", e)
        NODE_DURATION.labels(node_name="download").observe(time.perf_counter() - start_time)
        return state

    async def _publish(self, state: WorkflowState) -> WorkflowState:
        start_time = time.perf_counter()
        try:
            state["post_id"] = await asyncio.to_thread(self.publisher.publish, Path(state["video_path"]), state["post_text"])
            NODE_EXECUTION_COUNT.labels(node_name="publish", status="success").inc()
        except Exception as e:
            self._mark_error(state, "publish", e)
        NODE_DURATION.labels(node_name="publish").observe(time.perf_counter() - start_time)
        return state

    async def _cleanup(self, state: WorkflowState) -> WorkflowState:
        if state.get("video_path"):
            try:
                Path(state["video_path"]).unlink(missing_ok=True)
                self._log(state).info("Cleaned up downloaded video file")
            except OSError:
                self._log(state).warning("Could not clean up video file", exc_info=True)
        return state

    async def _record_success(self, state: WorkflowState) -> WorkflowState:
        self.store.mark_processed(state["fingerprint"])
        state["outcome"] = "published"
        self._log(state).info("Successfully processed and posted video!")
        self._save_history(state)
        return state

    async def _record_failure(self, state: WorkflowState) -> WorkflowState:
        reason = FailureReason(state["failure_reason"])
        self.store.mark_failed(state["fingerprint"], reason.value, state["error_text"])
        PUBLISH_FAILURE_COUNT.labels(reason=reason.value).inc()
        state["outcome"] = "failed"
        self._log(state).warning(f"Video marked as failed ({describe(reason)}) and will be skipped in future runs")
        self._save_history(state)
        return state

    def _save_history(self, state: WorkflowState):
        if self.data_manager is not None:
            self.data_manager.save_result(PostRecord(
                fingerprint=state["fingerprint"],
                message_id=state["candidate"].message_id,
                original_caption=state.get("original_caption"),
                post_text=state.get("post_text"),
                post_id=state.get("post_id"),
                status=state["outcome"],
                failure_reason=state.get("failure_reason"),
                error=state.get("error_text"),
            ))
        if self.notifier is not None:
            self.notifier.send_update(state)

    def _build_graph(self):
        workflow = StateGraph(WorkflowState)
        workflow.add_node("resolve_caption", self._resolve_caption)
        workflow.add_node("rewrite_caption", self._rewrite_caption)
        workflow.add_node("dry_run", self._dry_run)
        workflow.add_node("download", self._download)
        workflow.add_node("publish", self._publish)
        workflow.add_node("cleanup", self._cleanup)
        workflow.add_node("record_success", self._record_success)
        workflow.add_node("record_failure", self._record_failure)

        workflow.set_entry_point("resolve_caption")
        workflow.add_edge("resolve_caption", "rewrite_caption")

        def check_dry_run(s):
            return "dry_run" if self.dry_run else "continue"

        workflow.add_conditional_edges("rewrite_caption", check_dry_run, {"dry_run": "dry_run", "continue": "download"})
        workflow.add_edge("dry_run", END)

        def check_failed(s):
            return "failed" if s.get("failure_stage") else "continue"

        # Cleanup runs before recording so a state write error never leaves the file behind
        workflow.add_conditional_edges("download", check_failed, {"failed": "cleanup", "continue": "publish"})
        workflow.add_edge("publish", "cleanup")
        workflow.add_conditional_edges("cleanup", check_failed, {"failed": "record_failure", "continue": "record_success"})
        workflow.add_edge("record_success", END)
        workflow.add_edge("record_failure", END)

        return workflow.compile()

    async def process(self, candidate: VideoCandidate, entity: Any) -> dict:
        initial_state = {
            "candidate": candidate,
            "fingerprint": fingerprint(candidate),
            "entity": entity,
            "original_caption": "",
            "caption": "",
            "post_text": "",
            "video_path": None,
            "post_id": None,
            "outcome": None,
            "failure_stage": None,
            "failure_reason": None,
            "error_text": None,
        }
        return await self.app.ainvoke(initial_state)

class DiscordNotifier:
    def __init__(self, webhook_url: str):
        self.discord = Discord(url=webhook_url)

    def send_update(self, result: dict):
        try:
            candidate = result["candidate"]
            if result.get("outcome") == "published":
                msg = f"""🚀 **Video Posted to X**
🆔 **Message:** {candidate.message_id}
🔗 **Tweet:** https://x.com/i/web/status/{result['post_id']}

**Caption:**
{result['post_text']}
"""
            else:
                reason = FailureReason(result["failure_reason"]) if result.get("failure_reason") else FailureReason.UNKNOWN
                msg = f"""🗑️ **Video Skipped Permanently**
🆔 **Message:** {candidate.message_id}
❌ **Reason:** {describe(reason)}
"""
            # Split if too long
            chunk_size = settings.discord_chunk_size
            for i in range(0, len(msg), chunk_size):
                self.discord.post(content=msg[i:i+chunk_size])
        except Exception:
            logger.error("Failed to send Discord notification", exc_info=True)

    def send_summary(self, published: int, failed: int, offset: int):
        """Send execution summary at the end of the run"""
        try:
            msg = f"""📊 **Run Summary**
✅ **Posted:** {published}
❌ **Failed:** {failed}
📍 **Scan offset:** {offset}
"""
            self.discord.post(content=msg)
        except Exception:
            logger.error("Failed to send Discord summary", exc_info=True)

class VideoPoster:
    def __init__(self, dry_run: bool = False, max_videos: Optional[int] = None):
        self.config = settings
        self.dry_run = dry_run
        self.max_videos = settings.max_videos_per_run if max_videos is None else max_videos
        self.store = JsonStateStore(settings.processed_videos_file, settings.failed_videos_file, settings.offset_file)
        self.source = TelegramSource(settings.telegram_api_id, settings.telegram_api_hash, settings.session_file)
        self.llm = LLMService(settings.groq_api_key, settings.gemini_api_key)
        self.resolver = CaptionResolver(self.llm, settings.caption_max_time_delta,
                                        settings.ranking_temperature, settings.ranking_max_tokens)
        self.rewriter = CaptionRewriter(self.llm, settings.caption_rewrite_prompt)
        self.publisher = XPublisher(settings.twitter_api_key, settings.twitter_api_secret,
                                    settings.twitter_access_token, settings.twitter_access_token_secret)
        self.data_manager = DataManager(settings.db_path)
        self.notifier = DiscordNotifier(settings.discord_webhook_url) if settings.discord_webhook_url else None
        self.scanner = BatchScanner(self.source, self.store, settings.batch_size, persist_cursor=not dry_run)
        self.workflow = VideoWorkflow(self.source, self.store, self.resolver, self.rewriter, self.publisher,
                                      self.data_manager, self.notifier, dry_run=dry_run)

    async def run(self) -> Dict[str, int]:
        logger.info(f"Starting Telegram to X Poster v{__version__} ({self.max_videos} video(s) per run)")
        if self.dry_run:
            logger.info("DRY RUN MODE ENABLED - No downloads, posts or state writes.")

        published = 0
        failed = 0
        try:
            await self.source.connect()
            entity = await self.source.get_entity(settings.telegram_group)

            while published + failed < self.max_videos:
                candidate = await self.scanner.find_oldest_unresolved(entity)
                if candidate is None:
                    logger.info("No unprocessed video found this run")
                    break

                logger.info(f"Processing video: Message ID {candidate.message_id}")
                result = await self.workflow.process(candidate, entity)
                if result["outcome"] == "published":
                    published += 1
                elif result["outcome"] == "failed":
                    failed += 1
                else:
                    break
        finally:
            await self.source.disconnect()

        logger.info(f"Run complete. Posted {published}, failed {failed}, offset {self.store.cursor.offset}")
        if self.notifier is not None and not self.dry_run and published + failed > 0:
            self.notifier.send_summary(published, failed, self.store.cursor.offset)
        return {"published": published, "failed": failed}

async def main():
    import argparse
    parser = argparse.ArgumentParser(description="Telegram to X video poster")
    parser.add_argument("--dry-run", action="store_true", help="Resolve the next caption without downloading, posting or saving state")
    parser.add_argument("--max-videos", type=int, default=None, help=f"Videos to handle this run (default: {settings.max_videos_per_run})")
    args = parser.parse_args()

    try:
        poster = VideoPoster(dry_run=args.dry_run, max_videos=args.max_videos)
        await poster.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

def cli():
    asyncio.run(main())

if __name__ == "__main__":
    cli()
