import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from trip_assistant.agent import TripAssistant, build_assistant
from trip_assistant.middleware.event_collector import get_events, reset_events

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_BODY = {"error": "Something went wrong. Please try again later."}


class MessageRequest(BaseModel):
    participant_id: str = Field(..., min_length=1)
    text: str
    timestamp: Optional[datetime] = None


class ClassifyRequest(BaseModel):
    text: str
    context: Dict[str, Any] = Field(default_factory=dict)


class BehaviorRequest(BaseModel):
    interaction_type: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    force_recompute: bool = False


def create_app(assistant: Optional[TripAssistant] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "assistant", None) is None:
            app.state.assistant = build_assistant()
        app.state.assistant.cache.start_sweeper()
        logger.info("Trip Assistant service started")
        yield
        logger.info("Trip Assistant service shutting down")
        await app.state.assistant.aclose()

    app = FastAPI(title="Trip Assistant", lifespan=lifespan)
    app.state.assistant = assistant

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        start = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000
        logger.info("%s %s completed %d in %.2fms", request.method, request.url.path, response.status_code, duration_ms)
        return response

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/messages")
    async def messages(req: MessageRequest, request: Request):
        assistant: TripAssistant = request.app.state.assistant
        logger.info("Handling message for participant_id=%s", req.participant_id)
        reset_events()
        try:
            reply = await assistant.handle_message(req.participant_id, req.text, req.timestamp)
        except Exception:
            logger.exception("Message handling failed for participant_id=%s", req.participant_id)
            return JSONResponse(status_code=500, content=ERROR_BODY)

        return {
            "id": f"msg-{uuid.uuid4().hex[:12]}",
            "created": int(time.time()),
            "participant_id": req.participant_id,
            "session_id": reply.session_id,
            "text": reply.text,
            "suggested_actions": reply.suggested_actions,
            "state": reply.state.value,
            "degraded": reply.degraded,
            "debug": {
                "provenance": reply.provenance,
                "skills": [outcome.model_dump() for outcome in reply.skill_results],
                "loop_detected": reply.loop_detected,
            },
            "middleware_events": get_events(),
        }

    @app.post("/classify")
    async def classify(req: ClassifyRequest, request: Request):
        reset_events()
        result = request.app.state.assistant.classify_intent(req.text, req.context)
        return result.model_dump(mode="json")

    @app.get("/profiles/{user_id}")
    async def get_profile(user_id: str, request: Request):
        profile = await request.app.state.assistant.get_profile(user_id)
        return profile.model_dump(mode="json")

    @app.post("/profiles/{user_id}/behavior")
    async def record_behavior(user_id: str, req: BehaviorRequest, request: Request):
        assistant: TripAssistant = request.app.state.assistant
        reset_events()
        try:
            event = await assistant.record_behavior(user_id, req.model_dump())
            profile = await assistant.get_profile(user_id)
        except Exception:
            logger.exception("Recording behavior failed for user_id=%s", user_id)
            return JSONResponse(status_code=500, content=ERROR_BODY)
        return {
            "event": event.model_dump(mode="json"),
            "profile": profile.model_dump(mode="json"),
            "middleware_events": get_events(),
        }

    @app.get("/cache/stats")
    async def cache_stats(request: Request):
        return request.app.state.assistant.cache.stats()

    return app


app = create_app()
