from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    # Telegram
    telegram_api_id: int = Field(..., alias="TELEGRAM_API_ID")
    telegram_api_hash: str = Field(..., alias="TELEGRAM_API_HASH")
    telegram_group: str = Field(..., alias="TELEGRAM_GROUP")

    # X (Twitter)
    twitter_api_key: str = Field(..., alias="TWITTER_API_KEY")
    twitter_api_secret: str = Field(..., alias="TWITTER_API_SECRET")
    twitter_access_token: str = Field(..., alias="TWITTER_ACCESS_TOKEN")
    twitter_access_token_secret: str = Field(..., alias="TWITTER_ACCESS_TOKEN_SECRET")

    # API Keys
    groq_api_key: str = Field(..., alias="GROQ_API_KEY")
    gemini_api_key: str = Field(..., alias="GEMINI_API_KEY")
    discord_webhook_url: Optional[str] = Field(None, alias="DISCORD_WEBHOOK_URL")

    # Model Config
    groq_model: str = "llama-3.3-70b-versatile"
    gemini_model: str = "gemini-2.0-flash"
    caption_rewrite_prompt: Optional[str] = Field(None, alias="CAPTION_REWRITE_PROMPT")

    # Paths
    session_file: Path = Path("telegram_session.txt")
    download_dir: Path = Field(Path("downloads"), alias="DOWNLOAD_DIR")
    processed_videos_file: Path = Path("processed_videos.json")
    failed_videos_file: Path = Path("failed_videos.json")
    offset_file: Path = Path("video_offset.json")
    db_path: Path = Path("posts.db")
    log_file: Path = Path("poster.log")

    # Workflow Magic Numbers
    batch_size: int = 50
    context_radius: int = 2
    caption_max_time_delta: int = 300
    max_video_size_mb: int = Field(50, alias="MAX_VIDEO_SIZE_MB")
    max_videos_per_run: int = 1
    post_char_limit: int = 280
    default_caption: str = "🎥 Interesting video content"
    fallback_post_text: str = "🎥 Video from Telegram"
    discord_chunk_size: int = 1900

    # LLM Settings
    ranking_temperature: float = 0.3
    ranking_max_tokens: int = 150
    rewrite_temperature: float = 0.7
    rewrite_max_tokens: int = 100
    llm_temperature: float = 0.3
    llm_max_tokens: int = 500
    llm_retry_attempts: int = 3

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_file_encoding='utf-8')

settings = Settings()
