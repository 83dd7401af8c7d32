import sys
import json
import asyncio
import logging
from sqlmodel import Session, create_engine, select
from telethon import TelegramClient
from telethon.sessions import StringSession
import tweepy
from groq import Groq
import httpx
from google import genai
from settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("health_check")

def check_telegram():
    async def _check():
        session_string = settings.session_file.read_text(encoding="utf-8").strip() if settings.session_file.exists() else ""
        client = TelegramClient(StringSession(session_string), settings.telegram_api_id, settings.telegram_api_hash)
        await client.connect()
        try:
            if not await client.is_user_authorized():
                raise RuntimeError("session not authorized, run main.py interactively once")
            await client.get_entity(settings.telegram_group)
        finally:
            await client.disconnect()

    try:
        asyncio.run(_check())
        logger.info("✅ Telegram: OK")
        return True
    except Exception as e:
        logger.error(f"❌ Telegram: FAILED - {e}")
        return False

def check_twitter():
    try:
        client = tweepy.Client(
            consumer_key=settings.twitter_api_key,
            consumer_secret=settings.twitter_api_secret,
            access_token=settings.twitter_access_token,
            access_token_secret=settings.twitter_access_token_secret,
        )
        client.get_me()
        logger.info("✅ X API: OK")
        return True
    except Exception as e:
        logger.error(f"❌ X API: FAILED - {e}")
        return False

def check_groq():
    try:
        client = Groq(api_key=settings.groq_api_key)
        client.models.list()
        logger.info("✅ Groq API: OK")
        return True
    except Exception as e:
        logger.error(f"❌ Groq API: FAILED - {e}")
        return False

def check_gemini():
    try:
        client = genai.Client(api_key=settings.gemini_api_key)
        client.models.list(config={'page_size': 1})
        logger.info("✅ Gemini API: OK")
        return True
    except Exception as e:
        logger.error(f"❌ Gemini API: FAILED - {e}")
        return False

def check_discord():
    if not settings.discord_webhook_url:
        logger.info("➖ Discord Webhook: not configured")
        return True
    try:
        response = httpx.get(settings.discord_webhook_url)
        if response.status_code in [200, 204, 405]: # 405 is fine since we are doing a GET on a POST endpoint
            logger.info("✅ Discord Webhook: OK")
            return True
        else:
            logger.error(f"❌ Discord Webhook: FAILED - Status {response.status_code}")
            return False
    except Exception as e:
        logger.error(f"❌ Discord Webhook: FAILED - {e}")
        return False

def check_database():
    try:
        engine = create_engine(f"sqlite:///{settings.db_path}")
        from main import PostRecord
        with Session(engine) as session:
            session.exec(select(PostRecord).limit(1)).all()
        logger.info("✅ Database: OK")
        return True
    except Exception as e:
        logger.error(f"❌ Database: FAILED - {e}")
        return False

def check_state_files():
    ok = True
    for path in (settings.processed_videos_file, settings.failed_videos_file, settings.offset_file):
        if not path.exists():
            logger.info(f"➖ {path}: not created yet")
            continue
        try:
            json.loads(path.read_text(encoding="utf-8"))
            logger.info(f"✅ {path}: OK")
        except (OSError, ValueError) as e:
            logger.error(f"❌ {path}: FAILED - {e}")
            ok = False
    return ok

def main():
    logger.info("Starting health check...")
    results = [
        check_telegram(),
        check_twitter(),
        check_groq(),
        check_gemini(),
        check_discord(),
        check_database(),
        check_state_files()
    ]

    if all(results):
        logger.info("🚀 All systems go!")
        sys.exit(0)
    else:
        logger.error("⚠️ Some checks failed. Please check your configuration.")
        sys.exit(1)

if __name__ == "__main__":
    main()
