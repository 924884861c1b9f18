"""
FastAPI backend: repair sessions, steps, captures, analysis logs and the
AI analysis endpoints.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import aiofiles
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .database import MongoStorage
from .gateway import DEFAULT_SPOKEN_INPUT, AnalysisError, AnalysisGateway
from .gemini import GeminiClient
from .models import (
    AiAnalysisLog,
    InsertRepairSession,
    InsertRepairStep,
    InsertVideoCapture,
    RepairSession,
    RepairSessionUpdate,
    RepairStep,
    RepairStepUpdate,
    VideoCapture,
)
from .schemas import (
    AnalyzeImageRequest,
    ConversationalAnalysis,
    ConversationalAnalysisRequest,
    EquipmentAnalysis,
    ErrorDetail,
    StepCompletionRequest,
    StepCompletionResult,
    TTSRequest,
    VoiceGuidanceRequest,
    VoiceGuidanceResponse,
)
from .services import complete_repair_step, log_analysis, record_equipment_analysis, to_percent
from .storage import MemStorage, Storage
from .tts import SpeechServiceError, text_to_speech

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024
ERRORS = {400: {"model": ErrorDetail}, 404: {"model": ErrorDetail}, 500: {"model": ErrorDetail}}


def build_storage() -> Storage:
    if config.STORAGE_BACKEND == "mongo":
        return MongoStorage.from_url(config.MONGODB_URL, config.MONGODB_DB_NAME)
    if config.STORAGE_BACKEND != "memory":
        logger.warning("Unknown STORAGE_BACKEND=%r, using memory", config.STORAGE_BACKEND)
    return MemStorage()


def build_gateway() -> AnalysisGateway:
    return AnalysisGateway(GeminiClient(
        api_key=config.GEMINI_API_KEY,
        model=config.GEMINI_MODEL,
        base_url=config.GEMINI_BASE_URL,
        timeout=config.GEMINI_TIMEOUT_SECONDS,
    ))


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_gateway(request: Request) -> AnalysisGateway:
    return request.app.state.gateway


def get_upload_dir(request: Request) -> Path:
    return request.app.state.upload_dir


def _describe_validation(exc: RequestValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else err.get("msg", ""))
    return "Invalid request: " + "; ".join(problems)


def create_app(
    storage: Optional[Storage] = None,
    gateway: Optional[AnalysisGateway] = None,
    upload_dir: Optional[str] = None,
    max_upload_bytes: Optional[int] = None,
) -> FastAPI:
    """Build the API. Injected collaborators are used as-is and not closed on shutdown."""
    config.configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.storage is None
        if owned:
            config.log_config_summary()
            app.state.storage = build_storage()
        yield
        if owned:
            await app.state.storage.close()
            app.state.storage = None

    app = FastAPI(title="SmartFix Field Assistant API", lifespan=lifespan)
    app.state.storage = storage
    app.state.gateway = gateway or build_gateway()
    app.state.upload_dir = Path(upload_dir or config.UPLOAD_DIR)
    app.state.upload_dir.mkdir(parents=True, exist_ok=True)
    app.state.max_upload_bytes = max_upload_bytes or config.MAX_UPLOAD_BYTES

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _describe_validation(exc)})

    @app.exception_handler(AnalysisError)
    async def analysis_error(_request: Request, exc: AnalysisError):
        logger.error("Fail-closed analysis error: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "service": "smartfix"}

    # Repair sessions

    @app.post("/api/repair-sessions", response_model=RepairSession, responses=ERRORS)
    async def create_repair_session(body: InsertRepairSession, storage: Storage = Depends(get_storage)):
        return await storage.create_repair_session(body)

    @app.get("/api/repair-sessions/active/{technician_name}", response_model=RepairSession, responses=ERRORS)
    async def get_active_session(technician_name: str, storage: Storage = Depends(get_storage)):
        session = await storage.get_active_session(technician_name)
        if session is None:
            raise HTTPException(status_code=404, detail="No active session found")
        return session

    @app.get("/api/repair-sessions/{session_id}", response_model=RepairSession, responses=ERRORS)
    async def get_repair_session(session_id: int, storage: Storage = Depends(get_storage)):
        session = await storage.get_repair_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    @app.patch("/api/repair-sessions/{session_id}", response_model=RepairSession, responses=ERRORS)
    async def update_repair_session(
        session_id: int, body: RepairSessionUpdate, storage: Storage = Depends(get_storage)
    ):
        session = await storage.update_repair_session(session_id, body)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    @app.delete("/api/repair-sessions/{session_id}", responses=ERRORS)
    async def delete_repair_session(
        session_id: int,
        storage: Storage = Depends(get_storage),
        uploads: Path = Depends(get_upload_dir),
    ):
        captures = await storage.get_video_captures(session_id)
        if not await storage.delete_repair_session(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        root = uploads.resolve()
        for capture in captures:
            stored = Path(capture.file_path).resolve()
            if stored.parent == root:
                stored.unlink(missing_ok=True)
        return {"status": "deleted", "id": session_id}

    # Repair steps

    @app.post("/api/repair-steps", response_model=RepairStep, responses=ERRORS)
    async def create_repair_step(body: InsertRepairStep, storage: Storage = Depends(get_storage)):
        return await storage.create_repair_step(body)

    @app.get("/api/repair-steps/{session_id}", response_model=List[RepairStep])
    async def get_repair_steps(session_id: int, storage: Storage = Depends(get_storage)):
        return await storage.get_repair_steps(session_id)

    @app.patch("/api/repair-steps/{step_id}", response_model=RepairStep, responses=ERRORS)
    async def update_repair_step(step_id: int, body: RepairStepUpdate, storage: Storage = Depends(get_storage)):
        step = await storage.update_repair_step(step_id, body)
        if step is None:
            raise HTTPException(status_code=404, detail="Step not found")
        return step

    @app.post("/api/repair-steps/{step_id}/complete", response_model=List[RepairStep], responses=ERRORS)
    async def complete_step(step_id: int, storage: Storage = Depends(get_storage)):
        steps = await complete_repair_step(storage, step_id)
        if steps is None:
            raise HTTPException(status_code=404, detail="Step not found")
        return steps

    # AI analysis

    @app.post("/api/analyze-image", response_model=EquipmentAnalysis, responses=ERRORS)
    async def analyze_image(
        body: AnalyzeImageRequest,
        storage: Storage = Depends(get_storage),
        gateway: AnalysisGateway = Depends(get_gateway),
    ):
        """Single-shot equipment analysis. Fails closed with 500."""
        analysis = await gateway.analyze_equipment_image(body.image_data)
        if body.session_id is not None:
            await record_equipment_analysis(
                storage,
                body.session_id,
                analysis,
                "equipment_detection",
                {"imageSize": len(body.image_data)},
            )
        return analysis

    @app.post("/api/conversational-analysis", response_model=ConversationalAnalysis, responses=ERRORS)
    async def conversational_analysis(
        body: ConversationalAnalysisRequest,
        storage: Storage = Depends(get_storage),
        gateway: AnalysisGateway = Depends(get_gateway),
    ):
        """Image + spoken question. Model trouble yields a fallback answer, never an error."""
        spoken_text = (body.spoken_input or "").strip() or DEFAULT_SPOKEN_INPUT
        analysis = await gateway.conversational_analysis(body.image_data, spoken_text)
        if body.session_id is not None:
            await record_equipment_analysis(
                storage,
                body.session_id,
                analysis.visual_analysis,
                "conversational_analysis",
                {"spokenInput": spoken_text, "imageSize": len(body.image_data)},
                logged_response=analysis,
            )
        return analysis

    @app.post("/api/voice-guidance", response_model=VoiceGuidanceResponse, responses=ERRORS)
    async def voice_guidance(
        body: VoiceGuidanceRequest,
        storage: Storage = Depends(get_storage),
        gateway: AnalysisGateway = Depends(get_gateway),
    ):
        guidance = await gateway.generate_voice_guidance(body.step_description)
        if body.session_id is not None:
            await log_analysis(
                storage,
                body.session_id,
                "voice_guidance",
                {"stepDescription": body.step_description},
                {"voiceGuidance": guidance},
                95,
            )
        return VoiceGuidanceResponse(voice_guidance=guidance)

    @app.post("/api/analyze-step-completion", response_model=StepCompletionResult, responses=ERRORS)
    async def analyze_step_completion(
        body: StepCompletionRequest,
        storage: Storage = Depends(get_storage),
        gateway: AnalysisGateway = Depends(get_gateway),
    ):
        """Did the frame show the expected step done? Fails closed with 500."""
        result = await gateway.analyze_step_completion(body.image_data, body.expected_step)
        if body.session_id is not None:
            await log_analysis(
                storage,
                body.session_id,
                "step_completion",
                {"expectedStep": body.expected_step, "imageSize": len(body.image_data)},
                result,
                to_percent(result.confidence),
            )
        return result

    # Captures

    @app.post(
        "/api/upload-video",
        response_model=VideoCapture,
        responses={**ERRORS, 413: {"model": ErrorDetail}},
    )
    async def upload_video(
        request: Request,
        video: Optional[UploadFile] = File(None),
        session_id: Optional[str] = Form(None, alias="sessionId"),
        storage: Storage = Depends(get_storage),
    ):
        if video is None:
            raise HTTPException(status_code=400, detail="No video file provided")
        content_type = (video.content_type or "").lower()
        if not (content_type.startswith("image/") or content_type.startswith("video/")):
            raise HTTPException(status_code=400, detail="Only image and video files are allowed")
        if not session_id:
            raise HTTPException(status_code=400, detail="Session ID is required")
        try:
            owner = int(session_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Session ID must be an integer")

        suffix = Path(video.filename or "").suffix.lower()
        if not suffix[1:].isalnum():
            suffix = ""
        target = request.app.state.upload_dir / f"{uuid4().hex}{suffix}"
        limit = request.app.state.max_upload_bytes

        size = 0
        async with aiofiles.open(target, "wb") as out:
            while chunk := await video.read(UPLOAD_CHUNK_BYTES):
                size += len(chunk)
                if size > limit:
                    break
                await out.write(chunk)
        if size > limit:
            target.unlink(missing_ok=True)
            raise HTTPException(status_code=413, detail=f"File exceeds {limit} bytes")

        capture = await storage.create_video_capture(InsertVideoCapture(
            session_id=owner,
            file_name=video.filename or target.name,
            file_path=str(target),
            file_size=size,
        ))
        logger.info("Stored capture %s (%d bytes) for session %s", target.name, size, owner)
        return capture

    @app.get("/api/video-captures/{session_id}", response_model=List[VideoCapture])
    async def get_video_captures(session_id: int, storage: Storage = Depends(get_storage)):
        return await storage.get_video_captures(session_id)

    @app.get("/api/analysis-logs/{session_id}", response_model=List[AiAnalysisLog])
    async def get_analysis_logs(session_id: int, storage: Storage = Depends(get_storage)):
        return await storage.get_ai_analysis_logs(session_id)

    @app.get("/api/uploads/{filename}", responses={404: {"model": ErrorDetail}})
    async def get_upload(filename: str, uploads: Path = Depends(get_upload_dir)):
        path = uploads / filename
        if Path(filename).name != filename or not path.is_file():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(path)

    # Speech

    @app.post("/api/tts", responses={400: {"model": ErrorDetail}, 502: {"model": ErrorDetail}})
    async def generate_audio(body: TTSRequest):
        """Generate guidance audio using ElevenLabs."""
        try:
            audio_bytes = await text_to_speech(body.text, body.voice_id)
        except SpeechServiceError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return StreamingResponse(
            iter([audio_bytes]),
            media_type="audio/mpeg",
            headers={"Content-Disposition": "attachment; filename=guidance.mp3"},
        )

    return app


app = create_app()
