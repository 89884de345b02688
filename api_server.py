"""
FastAPI Backend Server

Exposes the tutoring pipeline as REST and Server-Sent Events endpoints
for the learner UI to consume.
"""

import asyncio
import json
import os
import sys
from typing import Any, AsyncGenerator, Dict, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from tutor import __version__
from tutor.config import settings
from tutor.logger import get_logger
from tutor.messages import msg
from tutor.pipeline.events import ErrorEvent, OutboundEvent
from tutor.pipeline.orchestrator import TurnRequest, TutorPipeline

logger = get_logger(__name__)


# Pydantic models for API
class TurnBody(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    text: str = Field(min_length=1, max_length=4000)
    context: Dict[str, Any] = Field(default_factory=dict)


# Global pipeline instance
pipeline: Optional[TutorPipeline] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup resources."""
    global pipeline

    pipeline = await TutorPipeline.create()
    await pipeline.start()
    logger.info("Tutor pipeline ready")

    yield

    await pipeline.stop()
    pipeline = None


app = FastAPI(
    title="Tutor Pipeline API",
    description="Streaming tutoring responses with speech",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware - uses configurable origins from settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline() -> TutorPipeline:
    """Get the pipeline instance."""
    if pipeline is None:
        raise HTTPException(status_code=503, detail=msg("error.pipeline_not_ready"))
    return pipeline


def format_sse(event: OutboundEvent) -> str:
    """Encode one outbound event as a Server-Sent Events frame."""
    return f"event: {event.kind}\ndata: {json.dumps(event.to_dict())}\n\n"


def _turn_request(body: TurnBody) -> TurnRequest:
    return TurnRequest(session_id=body.session_id, text=body.text, context=body.context)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    if pipeline is None:
        return {"status": "starting"}
    return {"status": "healthy", **pipeline.stats}


@app.post("/api/turn/stream")
async def stream_turn(body: TurnBody):
    """Run one turn and stream its text, audio and complete events."""
    pipe = get_pipeline()
    turn = _turn_request(body)

    async def generate() -> AsyncGenerator[str, None]:
        task = asyncio.create_task(pipe.process_turn(turn))
        try:
            result = await task
            for event in result.events:
                yield format_sse(event)
        except Exception as e:
            logger.error(f"Turn error for session {turn.session_id}: {e}")
            yield format_sse(ErrorEvent(
                session_id=turn.session_id,
                message=msg("delivery.generation_failed"),
            ))
        finally:
            # client went away: abandon the turn
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/api/turn")
async def turn(body: TurnBody):
    """Run one turn and return the whole delivery result."""
    pipe = get_pipeline()
    try:
        result = await pipe.process_turn(_turn_request(body))
    except Exception as e:
        logger.error(f"Turn error for session {body.session_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return result.to_dict()


@app.post("/api/cache/invalidate")
async def invalidate_cache():
    """Drop the cached responder registry."""
    pipe = get_pipeline()
    await pipe.invalidate_cache()
    return {"success": True, "message": msg("cache.invalidated")}


@app.delete("/api/sessions/{session_id}")
async def end_session(session_id: str):
    """Destroy a session's live state."""
    pipe = get_pipeline()
    if not await pipe.end_session(session_id):
        raise HTTPException(status_code=404, detail=msg("error.session_not_found"))
    return {"success": True, "message": msg("session.ended")}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api_server:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.is_development,
    )
