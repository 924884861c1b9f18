"""
Environment configuration for the SmartFix backend and field client.
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# External vision-language model (Gemini REST API)
GEMINI_API_KEY: Optional[str] = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_BASE_URL: str = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
GEMINI_TIMEOUT_SECONDS: float = float(os.getenv("GEMINI_TIMEOUT_SECONDS", "30"))

# Session store: "memory" or "mongo"
STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "memory").lower()
MONGODB_URL: str = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB_NAME: str = os.getenv("MONGODB_DB_NAME", "smartfix")

# Captures
UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "uploads/videos")
MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))

# Server-side speech (ElevenLabs)
ELEVENLABS_API_KEY: Optional[str] = os.getenv("ELEVENLABS_API_KEY")
ELEVENLABS_VOICE_ID: str = os.getenv("ELEVENLABS_VOICE_ID", "EXAVITQu4vr4xnSDxMaL")  # Rachel
ELEVENLABS_BASE_URL: str = os.getenv("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1")

CORS_ORIGINS: list[str] = [
    origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
]

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: Optional[str] = None) -> None:
    """Install a root handler once; later calls only adjust the level."""
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level or LOG_LEVEL)


def log_config_summary() -> None:
    if GEMINI_API_KEY:
        logger.info("Gemini API key loaded (model=%s)", GEMINI_MODEL)
    else:
        logger.warning("GEMINI_API_KEY not set; model calls will fail and fall back")
    logger.info("Storage backend: %s", STORAGE_BACKEND)
    logger.info("ElevenLabs configured: %s", bool(ELEVENLABS_API_KEY))
