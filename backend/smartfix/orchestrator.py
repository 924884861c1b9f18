"""
Field-client session orchestrator.

Holds the dashboard view state and decides when captured frames and speech
go to the backend. At most one analysis is in flight; frames captured while
one is outstanding only replace the last captured image.
"""
import asyncio
import contextlib
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Literal, Optional

from .api_client import ApiError, SmartFixApiClient
from .capture import FrameSource, MediaDeviceError
from .schemas import (
    BoundingBox,
    ConversationalAnalysis,
    EquipmentAnalysis,
    RepairStepSuggestion,
)
from .speech import SpeechRecognizer, SpeechSynthesizer

logger = logging.getLogger(__name__)

MIN_UTTERANCE_CHARS = 10
DEFAULT_POSITION = BoundingBox(x=0.33, y=0.33, width=0.48, height=0.32)

CONVERSATION_ON_MESSAGE = "Conversation mode active. I'm listening and watching. What can I help you with?"
CONVERSATION_OFF_MESSAGE = "Conversation mode disabled. Use camera button for manual analysis."
ALL_STEPS_DONE_MESSAGE = "All repair steps complete. Great work."

DEMO_RESPONSES = (
    'I heard you say "{spoken}". I can see equipment in the camera view. Let me analyze what needs attention.',
    'Based on what you said "{spoken}", I\'m examining the equipment. I can identify potential maintenance points.',
    'You mentioned "{spoken}". I\'m analyzing the visual data and can provide specific guidance for this equipment.',
    'I understand "{spoken}". Looking at the equipment, I can help you with troubleshooting steps.',
)


@dataclass
class DetectedEquipment:
    id: str
    name: str
    model: str
    issue: str
    confidence: float
    position: BoundingBox


@dataclass
class StepView:
    id: int  # step number
    title: str
    description: str
    instructions: str
    status: Literal["pending", "current", "completed"] = "pending"
    record_id: Optional[int] = None


@dataclass
class Notice:
    title: str
    description: str
    variant: Literal["default", "destructive"] = "destructive"


@dataclass
class DashboardState:
    session_id: Optional[int] = None
    detected_equipment: Optional[DetectedEquipment] = None
    repair_steps: list[StepView] = field(default_factory=list)
    current_step: int = 1
    ai_message: str = ""
    is_analyzing: bool = False
    conversation_active: bool = False
    transcript: str = ""
    last_captured_image: Optional[str] = None
    device_error: Optional[str] = None
    notices: list[Notice] = field(default_factory=list)

    def current(self) -> Optional[StepView]:
        return next((s for s in self.repair_steps if s.status == "current"), None)

    def step(self, step_number: int) -> Optional[StepView]:
        return next((s for s in self.repair_steps if s.id == step_number), None)


def demo_analysis(spoken_text: str) -> ConversationalAnalysis:
    """Canned conversational answer used when the backend is bypassed."""
    return ConversationalAnalysis(
        visual_analysis=EquipmentAnalysis(
            equipment_id=f"DEMO_{int(time.time() * 1000)}",
            equipment_type="Industrial Equipment",
            equipment_name="Industrial Equipment",
            model="Smart Device",
            issue_detected="Requires inspection based on your input",
            confidence=0.85,
            repair_steps=[RepairStepSuggestion(
                step_number=1,
                title="Initial Assessment",
                description="Examine the equipment based on your voice input",
                instructions=f'Responding to: "{spoken_text}" - Check the equipment for any visible issues',
            )],
            position=BoundingBox(x=0.3, y=0.3, width=0.4, height=0.4),
        ),
        conversational_response=random.choice(DEMO_RESPONSES).format(spoken=spoken_text),
        voice_guidance="",
    )


class SessionOrchestrator:
    def __init__(
        self,
        api: SmartFixApiClient,
        camera: FrameSource,
        recognizer: SpeechRecognizer,
        synthesizer: SpeechSynthesizer,
        technician_name: str = "Field Technician",
        demo_mode: bool = False,
        debounce_seconds: float = 2.0,
        auto_capture_interval: float = 10.0,
        demo_latency_seconds: float = 1.5,
    ):
        self.api = api
        self.camera = camera
        self.recognizer = recognizer
        self.synthesizer = synthesizer
        self.technician_name = technician_name
        self.demo_mode = demo_mode
        self.debounce_seconds = debounce_seconds
        self.auto_capture_interval = auto_capture_interval
        self.demo_latency_seconds = demo_latency_seconds

        self.state = DashboardState()
        self._debounce_task: Optional[asyncio.Task] = None
        self._debounce_armed = False
        self._auto_capture_task: Optional[asyncio.Task] = None

        recognizer.on_result(self.on_transcript)
        recognizer.on_error(self._on_recognition_error)
        recognizer.on_end(self._on_recognition_end)

    async def __aenter__(self) -> "SessionOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # Lifecycle

    async def start(self) -> Optional[int]:
        try:
            session = await self.api.create_session(self.technician_name, status="analyzing")
        except ApiError as e:
            logger.error("Could not create repair session: %s", e)
            self._notify("Session Error", "Failed to create repair session")
            return None
        self.state.session_id = session.id
        logger.info("Repair session %s started for %s", session.id, self.technician_name)
        return session.id

    def start_auto_capture(self) -> None:
        if self._auto_capture_task is None or self._auto_capture_task.done():
            self._auto_capture_task = asyncio.create_task(self._auto_capture_loop())

    async def _auto_capture_loop(self) -> None:
        while True:
            await asyncio.sleep(self.auto_capture_interval)
            await self.capture_frame()

    async def settle(self) -> None:
        """Wait for a pending debounced analysis to finish."""
        if self._debounce_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._debounce_task

    async def close(self) -> None:
        """Stop timers and release the camera and speech devices."""
        for task in (self._auto_capture_task, self._debounce_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self.recognizer.stop()
        self.synthesizer.cancel()
        self.camera.release()

    # Capture and analysis

    async def capture_frame(self) -> bool:
        """Grab a frame and analyze it if the current mode calls for it.

        Returns True when an analysis ran and updated the view state.
        """
        try:
            image = await self.camera.capture()
        except MediaDeviceError as e:
            self.state.device_error = e.code
            self._notify("Camera Error", f"{e}. Check camera permissions and try again.")
            return False
        self.state.device_error = None
        self.state.last_captured_image = image

        if self.state.conversation_active:
            spoken = self.state.transcript.strip()
            if not spoken:
                return False
            return await self._converse(image, spoken)

        if self.state.session_id is None:
            self._notify("Session Not Ready", "Please wait for session initialization")
            return False
        return await self._analyze_single_shot(image)

    def _begin_analysis(self) -> bool:
        if self.state.is_analyzing:
            logger.debug("Analysis already in flight; skipping")
            return False
        self.state.is_analyzing = True
        return True

    async def _analyze_single_shot(self, image: str) -> bool:
        if not self._begin_analysis():
            return False
        try:
            analysis = await self.api.analyze_image(image, self.state.session_id)
        except ApiError as e:
            logger.warning("Image analysis failed: %s", e)
            self._notify("Analysis Error", "Failed to analyze equipment. Please try again.")
            return False
        finally:
            self.state.is_analyzing = False

        self._apply_analysis(analysis)
        await self._attach_step_records()
        await self._announce(f"{analysis.equipment_name} {analysis.model} identified. {analysis.issue_detected}")
        return True

    async def _converse(self, image: str, spoken_text: str) -> bool:
        if self.state.session_id is None:
            return False
        if not self._begin_analysis():
            return False
        self.state.transcript = ""
        try:
            if self.demo_mode:
                await asyncio.sleep(self.demo_latency_seconds)
                result = demo_analysis(spoken_text)
            else:
                result = await self.api.conversational_analysis(image, spoken_text, self.state.session_id)
        except ApiError as e:
            logger.warning("Conversational analysis failed: %s", e)
            self._notify("Analysis Error", "Failed to communicate with AI assistant")
            return False
        finally:
            self.state.is_analyzing = False

        self._apply_analysis(result.visual_analysis)
        if not self.demo_mode:
            await self._attach_step_records()
        await self._announce(result.voice_guidance or result.conversational_response)
        return True

    def _apply_analysis(self, analysis: EquipmentAnalysis) -> None:
        self.state.detected_equipment = DetectedEquipment(
            id=analysis.equipment_id,
            name=analysis.equipment_name,
            model=analysis.model,
            issue=analysis.issue_detected,
            confidence=analysis.confidence,
            position=analysis.position or DEFAULT_POSITION,
        )
        self.state.repair_steps = [
            StepView(
                id=step.step_number,
                title=step.title,
                description=step.description,
                instructions=step.instructions,
                status="current" if step.step_number == 1 else "pending",
            )
            for step in analysis.repair_steps
        ]
        self.state.current_step = 1

    async def _attach_step_records(self) -> None:
        """Link view steps to the backend step rows created by the analysis."""
        if self.state.session_id is None:
            return
        try:
            records = await self.api.get_steps(self.state.session_id)
        except ApiError as e:
            logger.warning("Could not load steps for session %s: %s", self.state.session_id, e)
            return
        ids = {record.step_number: record.id for record in records}
        for step in self.state.repair_steps:
            step.record_id = ids.get(step.id)

    # Conversation mode

    async def toggle_conversation_mode(self) -> bool:
        """Returns whether conversation mode is on afterwards."""
        if self.state.conversation_active:
            self.state.conversation_active = False
            self.recognizer.stop()
            self._cancel_debounce()
            self.state.ai_message = CONVERSATION_OFF_MESSAGE
            return False

        if not self.recognizer.supported:
            self._notify("Speech Recognition Not Available", "This device doesn't support speech recognition")
            return False

        self.state.conversation_active = True
        self.state.transcript = ""
        self.recognizer.start()
        await self._announce(CONVERSATION_ON_MESSAGE)
        return True

    def on_transcript(self, text: str) -> None:
        """Recognizer result handler; (re)arms the debounce timer."""
        self.state.transcript = text
        if not (self.state.conversation_active and text.strip() and self.state.last_captured_image):
            return
        self._cancel_debounce()
        self._debounce_armed = True
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced_analysis())

    def _cancel_debounce(self) -> None:
        # Only a timer that is still waiting is cancelled; a running analysis completes.
        if self._debounce_armed and self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_armed = False

    async def _debounced_analysis(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._debounce_armed = False
        spoken = self.state.transcript.strip()
        image = self.state.last_captured_image
        if not self.state.conversation_active or image is None:
            return
        if len(spoken) < MIN_UTTERANCE_CHARS:
            return
        await self._converse(image, spoken)

    def _on_recognition_error(self, code: str) -> None:
        self._notify("Speech Recognition Error", f"Microphone error: {code}")

    def _on_recognition_end(self) -> None:
        logger.debug("Speech recognition ended")

    # Steps and voice commands

    async def complete_step(self, step_number: int) -> bool:
        step = self.state.step(step_number)
        if step is None:
            return False

        following = self.state.step(step_number + 1)
        for other in self.state.repair_steps:
            if other.status == "current" and other is not following:
                other.status = "pending"
        step.status = "completed"
        if following is not None:
            following.status = "current"
        self.state.current_step = step_number + 1

        if step.record_id is not None:
            try:
                await self.api.complete_step(step.record_id)
            except ApiError as e:
                logger.warning("Could not persist completion of step %s: %s", step_number, e)
                self._notify("Sync Error", "Step completion was not saved")

        if following is not None:
            await self._announce(f"Step {step_number} complete. {following.description}")
        else:
            await self._announce(ALL_STEPS_DONE_MESSAGE)
        return True

    async def handle_voice_command(self, command: str) -> bool:
        """Supports "repeat", "help" and "next". Returns False for anything else."""
        command = command.strip().lower()
        if command == "repeat":
            if self.state.ai_message:
                await self._speak(self.state.ai_message)
            return True
        if command == "help":
            current = self.state.current()
            if current is not None:
                await self._speak(f"Here are additional details for {current.title}: {current.instructions}")
            return True
        if command == "next":
            current = self.state.current()
            if current is None:
                return True
            return await self.complete_step(current.id)
        return False

    # Output

    def _notify(self, title: str, description: str) -> None:
        self.state.notices.append(Notice(title=title, description=description))

    async def _announce(self, message: str) -> None:
        self.state.ai_message = message
        await self._speak(message)

    async def _speak(self, text: str) -> None:
        if self.synthesizer.supported:
            await self.synthesizer.speak(text)
