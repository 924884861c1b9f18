"""
Persistence side effects of analyses and the step-completion flow.
"""
import logging
import math
from typing import Any, Optional

from .gateway import log_payload
from .models import (
    AnalysisType,
    InsertAiAnalysisLog,
    InsertRepairStep,
    RepairSessionUpdate,
    RepairStep,
    RepairStepUpdate,
    utcnow,
)
from .schemas import EquipmentAnalysis
from .storage import Storage

logger = logging.getLogger(__name__)


def to_percent(confidence: float) -> int:
    """0.0-1.0 confidence -> 0-100, rounding halves up."""
    return min(max(int(math.floor(confidence * 100 + 0.5)), 0), 100)


async def log_analysis(
    storage: Storage,
    session_id: int,
    analysis_type: AnalysisType,
    input_data: dict,
    response: Any,
    confidence: int,
):
    return await storage.create_ai_analysis_log(InsertAiAnalysisLog(
        session_id=session_id,
        analysis_type=analysis_type,
        input_data=input_data,
        response=log_payload(response),
        confidence=confidence,
    ))


async def record_equipment_analysis(
    storage: Storage,
    session_id: int,
    analysis: EquipmentAnalysis,
    analysis_type: AnalysisType,
    input_data: dict,
    logged_response: Optional[Any] = None,
) -> list[RepairStep]:
    """Log an analysis, move the session to in_progress and replace its steps.

    The writes are independent; a failure part-way leaves earlier writes in place.
    """
    await log_analysis(
        storage,
        session_id,
        analysis_type,
        input_data,
        logged_response if logged_response is not None else analysis,
        to_percent(analysis.confidence),
    )

    updated = await storage.update_repair_session(session_id, RepairSessionUpdate(
        equipment_id=analysis.equipment_id,
        equipment_type=analysis.equipment_type,
        issue_detected=analysis.issue_detected,
        total_steps=len(analysis.repair_steps),
        current_step=1,
        status="in_progress",
        gemini_analysis=log_payload(analysis),
    ))
    if updated is None:
        logger.warning("Analysis for unknown session %s: logged, session not updated", session_id)
        return []

    removed = await storage.delete_repair_steps(session_id)
    if removed:
        logger.info("Replaced %d existing step(s) for session %s", removed, session_id)

    steps = []
    for suggestion in analysis.repair_steps:
        steps.append(await storage.create_repair_step(InsertRepairStep(
            session_id=session_id,
            step_number=suggestion.step_number,
            title=suggestion.title,
            description=suggestion.description,
            instructions=suggestion.instructions,
            status="current" if suggestion.step_number == 1 else "pending",
        )))
    return steps


async def complete_repair_step(storage: Storage, step_id: int) -> Optional[list[RepairStep]]:
    """Complete a step, promote the next one and advance the owning session.

    Returns the session's steps afterwards, or None when the step is unknown.
    """
    step = await storage.get_repair_step(step_id)
    if step is None:
        return None

    await storage.update_repair_step(step_id, RepairStepUpdate(status="completed", completed_at=utcnow()))

    steps = await storage.get_repair_steps(step.session_id)
    following = next((s for s in steps if s.step_number == step.step_number + 1), None)

    # Only the promoted step may remain current.
    keep = following.id if following is not None else None
    for other in steps:
        if other.status == "current" and other.id not in (step_id, keep):
            await storage.update_repair_step(other.id, RepairStepUpdate(status="pending"))

    if following is not None:
        await storage.update_repair_step(following.id, RepairStepUpdate(status="current"))
        await storage.update_repair_session(
            step.session_id, RepairSessionUpdate(current_step=following.step_number)
        )
    else:
        await storage.update_repair_session(
            step.session_id,
            RepairSessionUpdate(current_step=step.step_number + 1, status="completed"),
        )
        logger.info("Session %s completed at step %s", step.session_id, step.step_number)

    return await storage.get_repair_steps(step.session_id)
