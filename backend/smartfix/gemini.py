"""
Gemini REST client: one text prompt, optionally one inline JPEG, text back.
"""
import logging
import re
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DATA_URI_PREFIX = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


class ModelError(Exception):
    """The external model could not produce an answer (network, auth, quota, timeout)."""


def strip_data_uri(image: str) -> str:
    """Drop a ``data:image/<fmt>;base64,`` prefix, leaving the base64 payload."""
    return DATA_URI_PREFIX.sub("", image.strip(), count=1)


class ModelClient:
    """Interface used by the analysis gateway."""

    async def generate(self, prompt: str, image_base64: Optional[str] = None) -> str:
        raise NotImplementedError


class GeminiClient(ModelClient):
    """Calls ``models/{model}:generateContent`` on the Generative Language API."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _build_payload(self, prompt: str, image_base64: Optional[str]) -> dict:
        parts: list[dict] = [{"text": prompt}]
        if image_base64:
            parts.append({
                "inline_data": {
                    "mime_type": "image/jpeg",
                    "data": strip_data_uri(image_base64),
                }
            })
        return {"contents": [{"role": "user", "parts": parts}]}

    @staticmethod
    def _extract_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise ModelError(f"Gemini returned no candidates (blockReason={feedback.get('blockReason')})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    async def generate(self, prompt: str, image_base64: Optional[str] = None) -> str:
        if not self.api_key:
            raise ModelError("GEMINI_API_KEY is not configured")

        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = self._build_payload(prompt, image_base64)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    params={"key": self.api_key},
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                if response.status_code != 200:
                    logger.error("Gemini error %s: %s", response.status_code, response.text[:500])
                response.raise_for_status()
                return self._extract_text(response.json())
        except httpx.TimeoutException as e:
            raise ModelError(f"Gemini request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise ModelError(f"Gemini HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ModelError(f"Gemini request failed: {e}") from e
        except ValueError as e:
            raise ModelError(f"Gemini returned a non-JSON body: {e}") from e
        except (AttributeError, TypeError, KeyError, IndexError) as e:
            raise ModelError(f"Gemini returned an unexpected body: {e!r}") from e
