"""
Speech I/O capabilities for the field client.

Recognition: start/stop plus result, error and end callbacks.
Synthesis: speak/cancel. Each has an ``Unsupported*`` variant with
``supported = False`` for platforms without the device; callers check the
flag instead of catching errors.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .api_client import ApiError, SmartFixApiClient

logger = logging.getLogger(__name__)

ResultHandler = Callable[[str], None]
ErrorHandler = Callable[[str], None]
EndHandler = Callable[[], None]


class SpeechRecognizer:
    supported = True

    def __init__(self):
        self.listening = False
        self._result_handler: Optional[ResultHandler] = None
        self._error_handler: Optional[ErrorHandler] = None
        self._end_handler: Optional[EndHandler] = None

    def on_result(self, handler: ResultHandler) -> None:
        self._result_handler = handler

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handler = handler

    def on_end(self, handler: EndHandler) -> None:
        self._end_handler = handler

    def start(self) -> bool:
        self.listening = True
        return True

    def stop(self) -> None:
        if not self.listening:
            return
        self.listening = False
        if self._end_handler:
            self._end_handler()


class UnsupportedRecognizer(SpeechRecognizer):
    supported = False

    def start(self) -> bool:
        logger.info("Speech recognition not supported on this platform")
        return False


class PushRecognizer(SpeechRecognizer):
    """Recognizer fed by an external engine that pushes final transcripts."""

    def emit_result(self, text: str) -> None:
        if self.listening and self._result_handler:
            self._result_handler(text)

    def emit_error(self, code: str) -> None:
        logger.warning("Speech recognition error: %s", code)
        if self._error_handler:
            self._error_handler(code)
        self.stop()


class SpeechSynthesizer:
    supported = True

    def __init__(self):
        self.speaking = False

    async def speak(self, text: str) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        self.speaking = False


class UnsupportedSynthesizer(SpeechSynthesizer):
    supported = False

    async def speak(self, text: str) -> None:
        logger.debug("Speech synthesis not supported; dropping %d chars", len(text))


class RemoteSynthesizer(SpeechSynthesizer):
    """Fetches MP3 audio from the backend /api/tts and hands it to a player."""

    def __init__(self, api: SmartFixApiClient, play: Callable[[bytes], Awaitable[None]]):
        super().__init__()
        self.api = api
        self.play = play
        self._task: Optional[asyncio.Task] = None

    async def _say(self, text: str) -> None:
        self.speaking = True
        try:
            audio = await self.api.synthesize_speech(text)
            await self.play(audio)
        except ApiError as e:
            logger.warning("Speech synthesis failed: %s", e)
        finally:
            self.speaking = False

    async def speak(self, text: str) -> None:
        self.cancel()
        task = asyncio.create_task(self._say(text))
        self._task = task
        try:
            # cancel() ends the utterance without raising here
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not task.cancelled():
            task.result()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        super().cancel()


def select_recognizer(engine_available: bool) -> SpeechRecognizer:
    return PushRecognizer() if engine_available else UnsupportedRecognizer()


def select_synthesizer(
    api: Optional[SmartFixApiClient] = None,
    play: Optional[Callable[[bytes], Awaitable[None]]] = None,
) -> SpeechSynthesizer:
    if api is not None and play is not None:
        return RemoteSynthesizer(api, play)
    return UnsupportedSynthesizer()
