"""
Analysis gateway: turns a captured frame (and optional spoken input) into
structured repair guidance using the external vision-language model.

Conversational analysis and voice guidance fail open (a safe default is
returned whatever the model does). Single-shot equipment analysis and
step-completion analysis fail closed and raise ``AnalysisError``.
"""
import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from .gemini import ModelClient, ModelError
from .schemas import (
    BoundingBox,
    ConversationalAnalysis,
    EquipmentAnalysis,
    RepairStepSuggestion,
    StepCompletionResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SPOKEN_INPUT = "What do you see in this equipment?"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

_EQUIPMENT_SHAPE = """{
    "equipmentId": "short_identifier_or_serial_if_visible",
    "equipmentType": "equipment_category",
    "equipmentName": "specific_equipment_name",
    "model": "model_number_if_visible",
    "issueDetected": "describe_what_needs_attention",
    "confidence": 0.85,
    "repairSteps": [
      {
        "stepNumber": 1,
        "title": "step_title",
        "description": "brief_description",
        "instructions": "detailed_instructions",
        "estimatedTime": "5 minutes",
        "requiredTools": ["tool1", "tool2"],
        "safetyNotes": ["safety1", "safety2"]
      }
    ],
    "position": {"x": 0.3, "y": 0.3, "width": 0.4, "height": 0.4}
  }"""

CONVERSATIONAL_PROMPT = """You are SmartFix AI, an expert field technician assistant. Analyze the image and respond to: "{spoken_text}"

Always respond with valid JSON in this exact format:
{{
  "visualAnalysis": {shape},
  "conversationalResponse": "Friendly response to their question",
  "voiceGuidance": "Clear spoken instructions"
}}

"confidence" is between 0.0 and 1.0. "position" is the equipment bounding box as fractions of the image width and height. No markdown, no code fence."""

EQUIPMENT_PROMPT = """You are an expert field technician AI assistant. Analyze this equipment image and provide detailed repair guidance.

Identify:
1. Equipment type and model
2. Any visible issues or anomalies
3. Specific repair steps needed
4. Required tools and safety precautions

Respond in JSON format with this structure:
{shape}

Be specific and technical but clear. Focus on actionable repair guidance."""

VOICE_GUIDANCE_PROMPT = """You are an AI field technician assistant speaking to a technician through smart glasses or phone.

Convert this repair step into clear, conversational voice guidance:
"{step_description}"

Guidelines:
- Use conversational, supportive tone
- Include safety reminders when relevant
- Be specific about actions
- Keep it under 2 sentences
- Sound like an experienced colleague helping out

Respond with just the voice guidance text, no extra formatting."""

STEP_COMPLETION_PROMPT = """Analyze this image to determine if the repair step has been completed correctly.

Expected step: "{expected_step}"

Respond in JSON format:
{{
  "completed": true,
  "confidence": 0.0,
  "feedback": "specific_feedback_about_what_you_see",
  "nextGuidance": "optional_additional_guidance"
}}"""


class AnalysisError(Exception):
    """A fail-closed analysis could not produce a trustworthy answer."""


def extract_json_object(text: str) -> Optional[dict]:
    """Parse the span from the first '{' to the last '}' of a model answer.

    Returns None when there is no such span, it does not parse, or it is not
    a JSON object.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _fallback_equipment(confidence: float, equipment_type: str, equipment_name: str,
                        issue: str, step: RepairStepSuggestion) -> EquipmentAnalysis:
    return EquipmentAnalysis(
        equipment_id="UNIDENTIFIED",
        equipment_type=equipment_type,
        equipment_name=equipment_name,
        model="Unknown Model",
        issue_detected=issue,
        confidence=confidence,
        repair_steps=[step],
        position=BoundingBox(x=0.3, y=0.3, width=0.4, height=0.4),
    )


def unparsed_fallback(spoken_text: str, raw_text: str) -> ConversationalAnalysis:
    """The model answered, but not with usable JSON."""
    visual = _fallback_equipment(
        confidence=0.7,
        equipment_type="General Equipment",
        equipment_name="Equipment in View",
        issue="Visual inspection needed",
        step=RepairStepSuggestion(
            step_number=1,
            title="Initial Assessment",
            description="Examine the equipment carefully",
            instructions="Look for visible damage, loose connections, or wear patterns",
            estimated_time="5 minutes",
            required_tools=["Visual inspection"],
            safety_notes=["Ensure power is off before touching"],
        ),
    )
    answer = raw_text.strip()
    response = f'You asked: "{spoken_text}". '
    response += answer if answer else "I can see some equipment in the image. What specific issue are you experiencing?"
    return ConversationalAnalysis(
        visual_analysis=visual,
        conversational_response=response,
        voice_guidance="I'm analyzing what I can see. Please describe the specific problem you're having with this equipment.",
    )


def failure_fallback(spoken_text: str) -> ConversationalAnalysis:
    """The model could not be reached or failed."""
    visual = _fallback_equipment(
        confidence=0.6,
        equipment_type="Equipment",
        equipment_name="Device in Field",
        issue="Requires inspection",
        step=RepairStepSuggestion(
            step_number=1,
            title="Visual Inspection",
            description="Inspect the equipment for obvious issues",
            instructions="Check for loose connections, damage, or unusual sounds",
            estimated_time="3-5 minutes",
            required_tools=["Flashlight", "Safety equipment"],
            safety_notes=["Turn off power", "Wear safety gear"],
        ),
    )
    return ConversationalAnalysis(
        visual_analysis=visual,
        conversational_response=(
            f"I'm having trouble analyzing the image right now, but I heard you say "
            f'"{spoken_text}". Can you describe what you\'re seeing?'
        ),
        voice_guidance="I'm ready to help you troubleshoot. Please describe the equipment and any issues you're experiencing.",
    )


class AnalysisGateway:
    """Prompt construction and answer parsing for every analysis operation."""

    def __init__(self, client: ModelClient):
        self.client = client

    async def conversational_analysis(self, image: str, spoken_text: Optional[str] = None) -> ConversationalAnalysis:
        spoken_text = (spoken_text or "").strip() or DEFAULT_SPOKEN_INPUT
        logger.info('Conversational analysis: input="%s", image=%d chars', spoken_text, len(image))

        prompt = CONVERSATIONAL_PROMPT.format(spoken_text=spoken_text, shape=_EQUIPMENT_SHAPE)
        try:
            text = await self.client.generate(prompt, image)
        except ModelError as e:
            logger.warning("Conversational analysis falling back after model error: %s", e)
            return failure_fallback(spoken_text)
        except Exception:
            logger.exception("Unexpected error during conversational analysis")
            return failure_fallback(spoken_text)

        logger.debug("Raw model answer: %s", text[:200])
        parsed = extract_json_object(text)
        if parsed is None:
            logger.warning("No JSON object in model answer; using structured fallback")
            return unparsed_fallback(spoken_text, text)
        try:
            return ConversationalAnalysis.model_validate(parsed)
        except ValidationError as e:
            logger.warning("Model answer did not match the analysis schema: %s", e.error_count())
            return unparsed_fallback(spoken_text, "")

    async def analyze_equipment_image(self, image: str) -> EquipmentAnalysis:
        prompt = EQUIPMENT_PROMPT.format(shape=_EQUIPMENT_SHAPE)
        try:
            text = await self.client.generate(prompt, image)
        except ModelError as e:
            raise AnalysisError(f"Failed to analyze equipment: {e}") from e

        parsed = extract_json_object(text)
        if parsed is None:
            raise AnalysisError("Failed to analyze equipment: no valid JSON found in model response")
        if not parsed.get("equipmentType") or not parsed.get("issueDetected"):
            raise AnalysisError("Failed to analyze equipment: incomplete analysis from model")
        try:
            return EquipmentAnalysis.model_validate(parsed)
        except ValidationError as e:
            raise AnalysisError(f"Failed to analyze equipment: {e.error_count()} invalid field(s)") from e

    async def generate_voice_guidance(self, step_description: str) -> str:
        prompt = VOICE_GUIDANCE_PROMPT.format(step_description=step_description)
        try:
            text = (await self.client.generate(prompt)).strip()
        except ModelError as e:
            logger.warning("Voice guidance falling back to step text: %s", e)
            return step_description
        return text or step_description

    async def analyze_step_completion(self, image: str, expected_step: str) -> StepCompletionResult:
        prompt = STEP_COMPLETION_PROMPT.format(expected_step=expected_step)
        try:
            text = await self.client.generate(prompt, image)
        except ModelError as e:
            raise AnalysisError(f"Failed to analyze step completion: {e}") from e

        parsed = extract_json_object(text)
        if parsed is None:
            raise AnalysisError("Failed to analyze step completion: no valid JSON found in model response")
        try:
            return StepCompletionResult.model_validate(parsed)
        except ValidationError as e:
            raise AnalysisError(f"Failed to analyze step completion: {e.error_count()} invalid field(s)") from e


def log_payload(analysis: Any) -> Any:
    """JSON-ready form of an analysis result for the audit log."""
    if hasattr(analysis, "model_dump"):
        return analysis.model_dump(mode="json", by_alias=True)
    return analysis
