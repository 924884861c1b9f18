"""
Async HTTP client for the SmartFix backend, used by the field orchestrator.
"""
import logging
from typing import Any, Optional

import httpx

from .models import RepairSession, RepairStep
from .schemas import ConversationalAnalysis, EquipmentAnalysis

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Backend answered with a non-2xx status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SmartFixApiClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {path} failed: {e}") from e
        if response.is_error:
            try:
                message = response.json().get("error", response.text)
            except ValueError:
                message = response.text
            logger.warning("%s %s -> %s: %s", method, path, response.status_code, message)
            raise ApiError(message, status_code=response.status_code)
        return response

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        return (await self._request(method, path, **kwargs)).json()

    # Sessions and steps

    async def create_session(self, technician_name: str, status: str = "analyzing") -> RepairSession:
        data = await self._json(
            "POST", "/api/repair-sessions",
            json={"technicianName": technician_name, "status": status},
        )
        return RepairSession.model_validate(data)

    async def get_steps(self, session_id: int) -> list[RepairStep]:
        data = await self._json("GET", f"/api/repair-steps/{session_id}")
        return [RepairStep.model_validate(item) for item in data]

    async def complete_step(self, step_id: int) -> list[RepairStep]:
        data = await self._json("POST", f"/api/repair-steps/{step_id}/complete")
        return [RepairStep.model_validate(item) for item in data]

    # Analysis

    async def analyze_image(self, image_data: str, session_id: Optional[int] = None) -> EquipmentAnalysis:
        data = await self._json(
            "POST", "/api/analyze-image",
            json={"imageData": image_data, "sessionId": session_id},
        )
        return EquipmentAnalysis.model_validate(data)

    async def conversational_analysis(
        self, image_data: str, spoken_input: str, session_id: Optional[int] = None
    ) -> ConversationalAnalysis:
        data = await self._json(
            "POST", "/api/conversational-analysis",
            json={"imageData": image_data, "spokenInput": spoken_input, "sessionId": session_id},
        )
        return ConversationalAnalysis.model_validate(data)

    # Speech

    async def synthesize_speech(self, text: str, voice_id: Optional[str] = None) -> bytes:
        response = await self._request("POST", "/api/tts", json={"text": text, "voiceId": voice_id})
        return response.content
