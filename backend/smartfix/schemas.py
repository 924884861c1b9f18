"""
Data contracts for the analysis endpoints and the model answers they parse.
"""
from typing import Any, Optional

from pydantic import Field, field_validator

from .models import CamelModel


def _clamp_unit(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


class RepairStepSuggestion(CamelModel):
    step_number: int = Field(..., ge=1)
    title: str
    description: str = ""
    instructions: str = ""
    estimated_time: str = ""
    required_tools: list[str] = Field(default_factory=list)
    safety_notes: list[str] = Field(default_factory=list)

    @field_validator("instructions", mode="before")
    @classmethod
    def _join_instruction_list(cls, value: Any) -> Any:
        # Models sometimes answer with a list of sub-instructions.
        if isinstance(value, list):
            return " ".join(str(item) for item in value)
        return value

    @field_validator("estimated_time", mode="before")
    @classmethod
    def _time_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return f"{value} minutes"
        return value

    @field_validator("required_tools", "safety_notes", mode="before")
    @classmethod
    def _wrap_single(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class BoundingBox(CamelModel):
    """Fractional image coordinates in [0, 1]."""
    x: float
    y: float
    width: float
    height: float

    @field_validator("x", "y", "width", "height", mode="after")
    @classmethod
    def _normalize(cls, value: float) -> float:
        if 1.0 < value <= 100.0:
            value = value / 100.0  # percentage answers
        return _clamp_unit(value)


class EquipmentAnalysis(CamelModel):
    equipment_id: str = "UNIDENTIFIED"
    equipment_type: str = Field(..., min_length=1)
    equipment_name: str = ""
    model: str = ""
    issue_detected: str = Field(..., min_length=1)
    confidence: float = 0.0
    repair_steps: list[RepairStepSuggestion] = Field(default_factory=list)
    position: Optional[BoundingBox] = None

    @field_validator("confidence", mode="after")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp_unit(value)

    @field_validator("repair_steps", mode="after")
    @classmethod
    def _renumber_steps(cls, steps: list[RepairStepSuggestion]) -> list[RepairStepSuggestion]:
        # Step numbers are unique and contiguous from 1, in the model's order.
        ordered = sorted(steps, key=lambda s: s.step_number)
        return [s.model_copy(update={"step_number": i}) for i, s in enumerate(ordered, start=1)]


class ConversationalAnalysis(CamelModel):
    visual_analysis: EquipmentAnalysis
    conversational_response: str = ""
    voice_guidance: str = ""


class StepCompletionResult(CamelModel):
    completed: bool
    confidence: float
    feedback: str
    next_guidance: Optional[str] = None

    @field_validator("confidence", mode="after")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp_unit(value)


# Requests

class AnalyzeImageRequest(CamelModel):
    image_data: str = Field(..., min_length=1)
    session_id: Optional[int] = None


class ConversationalAnalysisRequest(CamelModel):
    image_data: str = Field(..., min_length=1)
    spoken_input: Optional[str] = None
    session_id: Optional[int] = None


class VoiceGuidanceRequest(CamelModel):
    step_description: str = Field(..., min_length=1)
    session_id: Optional[int] = None


class VoiceGuidanceResponse(CamelModel):
    voice_guidance: str


class StepCompletionRequest(CamelModel):
    image_data: str = Field(..., min_length=1)
    expected_step: str = Field(..., min_length=1)
    session_id: Optional[int] = None


class ErrorDetail(CamelModel):
    error: str
    detail: Optional[str] = None


class TTSRequest(CamelModel):
    text: str = Field(..., min_length=1, max_length=5000)
    voice_id: Optional[str] = None
