"""
Persisted records: repair sessions, steps, captures and AI analysis logs.

Attributes are snake_case in Python; the wire format is camelCase through
generated aliases, so ``RepairSession(technician_name=...)`` and
``RepairSession.model_validate({"technicianName": ...})`` are equivalent.
"""
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SessionStatus = Literal["analyzing", "in_progress", "completed", "paused"]
StepStatus = Literal["pending", "current", "completed"]
AnalysisType = Literal[
    "equipment_detection",
    "conversational_analysis",
    "voice_guidance",
    "step_completion",
]

TERMINAL_SESSION_STATUSES = ("completed", "paused")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _not_null(value: Any) -> Any:
    if value is None:
        raise ValueError("may be omitted but not null")
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Repair sessions

class InsertRepairSession(CamelModel):
    technician_name: str = Field(..., min_length=1)
    equipment_id: Optional[str] = None
    equipment_type: Optional[str] = None
    issue_detected: Optional[str] = None
    current_step: int = 1
    total_steps: int = 0
    status: SessionStatus = "analyzing"
    session_data: Optional[Any] = None
    video_url: Optional[str] = None
    gemini_analysis: Optional[Any] = None


class RepairSession(InsertRepairSession):
    id: int
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None


class RepairSessionUpdate(CamelModel):
    """Partial update; only fields present in the request are applied.

    Fields that are required on the record may be omitted but not sent as null.
    """
    technician_name: Optional[str] = Field(None, min_length=1)
    equipment_id: Optional[str] = None
    equipment_type: Optional[str] = None
    issue_detected: Optional[str] = None
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    status: Optional[SessionStatus] = None
    end_time: Optional[datetime] = None
    session_data: Optional[Any] = None
    video_url: Optional[str] = None
    gemini_analysis: Optional[Any] = None

    @field_validator("technician_name", "current_step", "total_steps", "status", mode="before")
    @classmethod
    def _required_fields_not_null(cls, value: Any) -> Any:
        return _not_null(value)


# Repair steps

class InsertRepairStep(CamelModel):
    session_id: int
    step_number: int = Field(..., ge=1)
    title: str
    description: str
    instructions: str
    status: StepStatus = "pending"
    notes: Optional[str] = None


class RepairStep(InsertRepairStep):
    id: int
    completed_at: Optional[datetime] = None


class RepairStepUpdate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    instructions: Optional[str] = None
    status: Optional[StepStatus] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("title", "description", "instructions", "status", mode="before")
    @classmethod
    def _required_fields_not_null(cls, value: Any) -> Any:
        return _not_null(value)


# Captures

class InsertVideoCapture(CamelModel):
    session_id: int
    file_name: str
    file_path: str
    file_size: Optional[int] = None
    analysis_result: Optional[Any] = None


class VideoCapture(InsertVideoCapture):
    id: int
    captured_at: datetime = Field(default_factory=utcnow)


# Audit trail

class InsertAiAnalysisLog(CamelModel):
    session_id: int
    analysis_type: AnalysisType
    input_data: Optional[Any] = None
    response: Optional[Any] = None
    confidence: Optional[int] = Field(None, ge=0, le=100)


class AiAnalysisLog(InsertAiAnalysisLog):
    id: int
    timestamp: datetime = Field(default_factory=utcnow)
