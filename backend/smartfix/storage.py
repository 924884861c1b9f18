"""
Session store interface and the in-memory implementation.

``MongoStorage`` in ``database.py`` implements the same interface against
MongoDB. Either one is constructed at application start and handed to the
API; nothing here is a module-level singleton.
"""
from abc import ABC, abstractmethod
from typing import Optional

from .models import (
    AiAnalysisLog,
    InsertAiAnalysisLog,
    InsertRepairSession,
    InsertRepairStep,
    InsertVideoCapture,
    RepairSession,
    RepairSessionUpdate,
    RepairStep,
    RepairStepUpdate,
    TERMINAL_SESSION_STATUSES,
    VideoCapture,
    utcnow,
)


def session_changes(updates: RepairSessionUpdate) -> dict:
    """Fields to merge into a session; stamps end_time on terminal status."""
    changes = updates.model_dump(exclude_unset=True)
    if changes.get("status") in TERMINAL_SESSION_STATUSES and changes.get("end_time") is None:
        changes["end_time"] = utcnow()
    return changes


def active_sort_key(session: RepairSession):
    return (session.start_time, session.id)


class Storage(ABC):
    """CRUD over repair sessions and the records they own."""

    # Repair sessions
    @abstractmethod
    async def create_repair_session(self, data: InsertRepairSession) -> RepairSession: ...

    @abstractmethod
    async def get_repair_session(self, session_id: int) -> Optional[RepairSession]: ...

    @abstractmethod
    async def update_repair_session(
        self, session_id: int, updates: RepairSessionUpdate
    ) -> Optional[RepairSession]: ...

    @abstractmethod
    async def get_active_session(self, technician_name: str) -> Optional[RepairSession]:
        """Most recent (by start_time, then id) in-progress session of a technician."""

    @abstractmethod
    async def delete_repair_session(self, session_id: int) -> bool:
        """Delete a session together with its steps, captures and logs."""

    # Repair steps
    @abstractmethod
    async def create_repair_step(self, data: InsertRepairStep) -> RepairStep: ...

    @abstractmethod
    async def get_repair_step(self, step_id: int) -> Optional[RepairStep]: ...

    @abstractmethod
    async def get_repair_steps(self, session_id: int) -> list[RepairStep]: ...

    @abstractmethod
    async def update_repair_step(
        self, step_id: int, updates: RepairStepUpdate
    ) -> Optional[RepairStep]: ...

    @abstractmethod
    async def delete_repair_steps(self, session_id: int) -> int: ...

    # Captures
    @abstractmethod
    async def create_video_capture(self, data: InsertVideoCapture) -> VideoCapture: ...

    @abstractmethod
    async def get_video_captures(self, session_id: int) -> list[VideoCapture]: ...

    # Analysis logs
    @abstractmethod
    async def create_ai_analysis_log(self, data: InsertAiAnalysisLog) -> AiAnalysisLog: ...

    @abstractmethod
    async def get_ai_analysis_logs(self, session_id: int) -> list[AiAnalysisLog]: ...

    async def close(self) -> None:
        """Release backing resources."""


class MemStorage(Storage):
    """Process-memory store; every instance is independent."""

    def __init__(self):
        self.repair_sessions: dict[int, RepairSession] = {}
        self.repair_steps: dict[int, RepairStep] = {}
        self.video_captures: dict[int, VideoCapture] = {}
        self.ai_analysis_logs: dict[int, AiAnalysisLog] = {}
        self._next_ids = {"session": 1, "step": 1, "capture": 1, "log": 1}

    def _allocate(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    async def create_repair_session(self, data: InsertRepairSession) -> RepairSession:
        session = RepairSession(
            id=self._allocate("session"),
            start_time=utcnow(),
            end_time=None,
            **data.model_dump(),
        )
        self.repair_sessions[session.id] = session
        return session

    async def get_repair_session(self, session_id: int) -> Optional[RepairSession]:
        return self.repair_sessions.get(session_id)

    async def update_repair_session(
        self, session_id: int, updates: RepairSessionUpdate
    ) -> Optional[RepairSession]:
        session = self.repair_sessions.get(session_id)
        if session is None:
            return None
        updated = session.model_copy(update=session_changes(updates))
        self.repair_sessions[session_id] = updated
        return updated

    async def get_active_session(self, technician_name: str) -> Optional[RepairSession]:
        candidates = [
            s for s in self.repair_sessions.values()
            if s.technician_name == technician_name and s.status == "in_progress"
        ]
        if not candidates:
            return None
        return max(candidates, key=active_sort_key)

    async def delete_repair_session(self, session_id: int) -> bool:
        if self.repair_sessions.pop(session_id, None) is None:
            return False
        for table in (self.repair_steps, self.video_captures, self.ai_analysis_logs):
            for record_id in [k for k, v in table.items() if v.session_id == session_id]:
                del table[record_id]
        return True

    async def create_repair_step(self, data: InsertRepairStep) -> RepairStep:
        step = RepairStep(id=self._allocate("step"), completed_at=None, **data.model_dump())
        self.repair_steps[step.id] = step
        return step

    async def get_repair_step(self, step_id: int) -> Optional[RepairStep]:
        return self.repair_steps.get(step_id)

    async def get_repair_steps(self, session_id: int) -> list[RepairStep]:
        steps = [s for s in self.repair_steps.values() if s.session_id == session_id]
        return sorted(steps, key=lambda s: (s.step_number, s.id))

    async def update_repair_step(
        self, step_id: int, updates: RepairStepUpdate
    ) -> Optional[RepairStep]:
        step = self.repair_steps.get(step_id)
        if step is None:
            return None
        updated = step.model_copy(update=updates.model_dump(exclude_unset=True))
        self.repair_steps[step_id] = updated
        return updated

    async def delete_repair_steps(self, session_id: int) -> int:
        doomed = [k for k, v in self.repair_steps.items() if v.session_id == session_id]
        for step_id in doomed:
            del self.repair_steps[step_id]
        return len(doomed)

    async def create_video_capture(self, data: InsertVideoCapture) -> VideoCapture:
        capture = VideoCapture(id=self._allocate("capture"), captured_at=utcnow(), **data.model_dump())
        self.video_captures[capture.id] = capture
        return capture

    async def get_video_captures(self, session_id: int) -> list[VideoCapture]:
        captures = [c for c in self.video_captures.values() if c.session_id == session_id]
        return sorted(captures, key=lambda c: (c.captured_at, c.id))

    async def create_ai_analysis_log(self, data: InsertAiAnalysisLog) -> AiAnalysisLog:
        log = AiAnalysisLog(id=self._allocate("log"), timestamp=utcnow(), **data.model_dump())
        self.ai_analysis_logs[log.id] = log
        return log

    async def get_ai_analysis_logs(self, session_id: int) -> list[AiAnalysisLog]:
        logs = [entry for entry in self.ai_analysis_logs.values() if entry.session_id == session_id]
        return sorted(logs, key=lambda entry: (entry.timestamp, entry.id))
