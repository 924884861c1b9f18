"""
MongoDB connection and the Mongo-backed session store
"""
import logging
from datetime import timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

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
    VideoCapture,
    utcnow,
)
from .storage import Storage, session_changes

logger = logging.getLogger(__name__)

SESSIONS = "repair_sessions"
STEPS = "repair_steps"
CAPTURES = "video_captures"
LOGS = "ai_analysis_logs"
COUNTERS = "counters"

_DATETIME_FIELDS = ("start_time", "end_time", "completed_at", "captured_at", "timestamp")


def connect_to_mongo(mongo_url: str) -> AsyncIOMotorClient:
    """Connect to MongoDB"""
    client = AsyncIOMotorClient(mongo_url)
    logger.info("Connected to MongoDB at %s", mongo_url)
    return client


def _from_document(doc: dict) -> dict:
    """Mongo document -> record fields (int _id becomes id, datetimes UTC)."""
    data = dict(doc)
    data["id"] = data.pop("_id")
    for name in _DATETIME_FIELDS:
        value = data.get(name)
        if value is not None and getattr(value, "tzinfo", None) is None:
            data[name] = value.replace(tzinfo=timezone.utc)
    return data


def _to_document(record) -> dict:
    doc = record.model_dump()
    doc["_id"] = doc.pop("id")
    return doc


class MongoStorage(Storage):
    """Store backed by one Mongo database, one collection per record type."""

    def __init__(self, database: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None):
        self.db = database
        self.client = client

    @classmethod
    def from_url(cls, mongo_url: str, db_name: str) -> "MongoStorage":
        client = connect_to_mongo(mongo_url)
        return cls(client[db_name], client)

    async def close(self) -> None:
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            logger.info("Closed MongoDB connection")

    async def _next_id(self, name: str) -> int:
        counter = await self.db[COUNTERS].find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["seq"]

    async def _find_many(self, collection: str, session_id: int, sort: list) -> list[dict]:
        cursor = self.db[collection].find({"session_id": session_id}).sort(sort)
        return [_from_document(doc) async for doc in cursor]

    # Repair sessions

    async def create_repair_session(self, data: InsertRepairSession) -> RepairSession:
        session = RepairSession(
            id=await self._next_id(SESSIONS),
            start_time=utcnow(),
            end_time=None,
            **data.model_dump(),
        )
        await self.db[SESSIONS].insert_one(_to_document(session))
        return session

    async def get_repair_session(self, session_id: int) -> Optional[RepairSession]:
        doc = await self.db[SESSIONS].find_one({"_id": session_id})
        return RepairSession(**_from_document(doc)) if doc else None

    async def update_repair_session(
        self, session_id: int, updates: RepairSessionUpdate
    ) -> Optional[RepairSession]:
        changes = session_changes(updates)
        if not changes:
            return await self.get_repair_session(session_id)
        doc = await self.db[SESSIONS].find_one_and_update(
            {"_id": session_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return RepairSession(**_from_document(doc)) if doc else None

    async def get_active_session(self, technician_name: str) -> Optional[RepairSession]:
        cursor = (
            self.db[SESSIONS]
            .find({"technician_name": technician_name, "status": "in_progress"})
            .sort([("start_time", DESCENDING), ("_id", DESCENDING)])
            .limit(1)
        )
        async for doc in cursor:
            return RepairSession(**_from_document(doc))
        return None

    async def delete_repair_session(self, session_id: int) -> bool:
        result = await self.db[SESSIONS].delete_one({"_id": session_id})
        if result.deleted_count == 0:
            return False
        for collection in (STEPS, CAPTURES, LOGS):
            await self.db[collection].delete_many({"session_id": session_id})
        return True

    # Repair steps

    async def create_repair_step(self, data: InsertRepairStep) -> RepairStep:
        step = RepairStep(id=await self._next_id(STEPS), completed_at=None, **data.model_dump())
        await self.db[STEPS].insert_one(_to_document(step))
        return step

    async def get_repair_step(self, step_id: int) -> Optional[RepairStep]:
        doc = await self.db[STEPS].find_one({"_id": step_id})
        return RepairStep(**_from_document(doc)) if doc else None

    async def get_repair_steps(self, session_id: int) -> list[RepairStep]:
        docs = await self._find_many(STEPS, session_id, [("step_number", ASCENDING), ("_id", ASCENDING)])
        return [RepairStep(**doc) for doc in docs]

    async def update_repair_step(
        self, step_id: int, updates: RepairStepUpdate
    ) -> Optional[RepairStep]:
        changes = updates.model_dump(exclude_unset=True)
        if not changes:
            return await self.get_repair_step(step_id)
        doc = await self.db[STEPS].find_one_and_update(
            {"_id": step_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return RepairStep(**_from_document(doc)) if doc else None

    async def delete_repair_steps(self, session_id: int) -> int:
        result = await self.db[STEPS].delete_many({"session_id": session_id})
        return result.deleted_count

    # Captures

    async def create_video_capture(self, data: InsertVideoCapture) -> VideoCapture:
        capture = VideoCapture(id=await self._next_id(CAPTURES), captured_at=utcnow(), **data.model_dump())
        await self.db[CAPTURES].insert_one(_to_document(capture))
        return capture

    async def get_video_captures(self, session_id: int) -> list[VideoCapture]:
        docs = await self._find_many(CAPTURES, session_id, [("captured_at", ASCENDING), ("_id", ASCENDING)])
        return [VideoCapture(**doc) for doc in docs]

    # Analysis logs

    async def create_ai_analysis_log(self, data: InsertAiAnalysisLog) -> AiAnalysisLog:
        log = AiAnalysisLog(id=await self._next_id(LOGS), timestamp=utcnow(), **data.model_dump())
        await self.db[LOGS].insert_one(_to_document(log))
        return log

    async def get_ai_analysis_logs(self, session_id: int) -> list[AiAnalysisLog]:
        docs = await self._find_many(LOGS, session_id, [("timestamp", ASCENDING), ("_id", ASCENDING)])
        return [AiAnalysisLog(**doc) for doc in docs]
