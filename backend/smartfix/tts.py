"""
ElevenLabs text-to-speech integration.
Converts guidance text to MP3 audio for clients without a local synthesizer.
"""
import logging
from typing import Optional

import httpx

from . import config

logger = logging.getLogger(__name__)


class SpeechServiceError(Exception):
    """Text-to-speech is not configured or the provider failed."""


async def text_to_speech(
    text: str,
    voice_id: Optional[str] = None,
    api_key: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bytes:
    """
    Convert text to speech using the ElevenLabs API.

    Args:
        text: The text to convert to speech
        voice_id: ElevenLabs voice, defaults to ELEVENLABS_VOICE_ID

    Returns:
        MP3 audio bytes

    Raises:
        SpeechServiceError: no API key, empty text, or provider failure
    """
    api_key = api_key or config.ELEVENLABS_API_KEY
    if not api_key:
        raise SpeechServiceError("ElevenLabs API key not configured")
    if not text or not text.strip():
        raise SpeechServiceError("Nothing to speak")

    resolved_voice_id = voice_id or config.ELEVENLABS_VOICE_ID
    url = f"{config.ELEVENLABS_BASE_URL}/text-to-speech/{resolved_voice_id}"

    headers = {
        "xi-api-key": api_key,
        "Content-Type": "application/json",
    }

    payload = {
        "text": text,
        "voice_settings": {
            "stability": 0.5,
            "similarity_boost": 0.75,
        },
        "model_id": "eleven_flash_v2",
    }

    try:
        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            response = await client.post(url, json=payload, headers=headers)
            if response.status_code != 200:
                logger.error("ElevenLabs error %s: %s", response.status_code, response.text[:500])
            response.raise_for_status()
            return response.content
    except httpx.HTTPError as e:
        raise SpeechServiceError(f"ElevenLabs request failed: {e}") from e
