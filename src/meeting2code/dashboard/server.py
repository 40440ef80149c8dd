"""HTTP server for the meeting2code dashboard.

Every stage route streams Server-Sent Events. Input errors (empty
selections) are answered with HTTP 400 and a busy pipeline with HTTP 409,
both before any streaming starts.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..config import Config
from ..errors import NoDataFound, PipelineBusy, WorkspaceError
from ..pipeline import Pipeline
from .events import StageStream

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class AnalyzeGapsRequest(BaseModel):
    selectedIndices: list[int] = Field(default_factory=list)


class CreateIssuesRequest(BaseModel):
    selectedIds: list[int] = Field(default_factory=list)


class AssignRequest(BaseModel):
    issueNumbers: list[int] = Field(default_factory=list)


class DispatchRequest(BaseModel):
    gapIds: list[int] = Field(default_factory=list)


class ValidateRequest(BaseModel):
    url: str = ""
    requirements: Optional[list[str]] = None


def _stream_response(stream: StageStream) -> StreamingResponse:
    return StreamingResponse(stream.sse(), media_type="text/event-stream", headers=SSE_HEADERS)


def _rejection(error: Exception) -> JSONResponse:
    status = 409 if isinstance(error, PipelineBusy) else 400
    return JSONResponse({"success": False, "error": str(error)}, status_code=status)


def create_app(config: Optional[Config] = None, pipeline: Optional[Pipeline] = None) -> FastAPI:
    """Build the FastAPI app around one pipeline.

    Args:
        config: Configuration; loaded from the environment when omitted.
        pipeline: Pipeline to drive; built from ``config`` when omitted.
    """
    config = config or (pipeline.config if pipeline else Config.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.reset_on_start:
            try:
                deleted = await app.state.pipeline.reset_repo()
                logger.info(f"Reset target repo on start ({len(deleted)} branch(es) deleted)")
            except WorkspaceError as e:
                logger.warning(f"Could not reset target repo on start: {e}")
        logger.info("Dashboard server started")
        yield
        logger.info("Dashboard server stopped")

    app = FastAPI(title="meeting2code", lifespan=lifespan)
    app.state.pipeline = pipeline or Pipeline(config)

    async def launch(start) -> StreamingResponse | JSONResponse:
        try:
            stream = await start()
        except (NoDataFound, PipelineBusy) as e:
            return _rejection(e)
        return _stream_response(stream)

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "busy": app.state.pipeline.busy}

    @app.get("/api/state")
    async def get_state() -> dict:
        """Current pipeline state."""
        return app.state.pipeline.state.to_dict()

    @app.get("/api/analyze")
    async def analyze(meeting: Optional[str] = None):
        """Extract requirements from the meeting and analyze all of them."""
        return await launch(lambda: app.state.pipeline.extract(meeting_title=meeting, analyze=True))

    @app.post("/api/analyze-gaps")
    async def analyze_gaps(request: AnalyzeGapsRequest):
        return await launch(lambda: app.state.pipeline.analyze(request.selectedIndices))

    @app.post("/api/create-issues")
    async def create_issues(request: CreateIssuesRequest):
        return await launch(lambda: app.state.pipeline.create_issues(request.selectedIds))

    @app.post("/api/assign-coding-agent")
    async def assign_coding_agent(request: AssignRequest):
        return await launch(lambda: app.state.pipeline.assign_coding_agent(request.issueNumbers))

    @app.post("/api/execute-local-agent")
    async def execute_local_agent(request: DispatchRequest):
        return await launch(lambda: app.state.pipeline.dispatch(request.gapIds))

    @app.post("/api/deploy")
    async def deploy():
        return await launch(app.state.pipeline.deploy)

    @app.post("/api/validate")
    async def validate(request: ValidateRequest):
        return await launch(lambda: app.state.pipeline.validate(request.url, request.requirements))

    return app


def run_server(config: Config) -> None:
    """Run the dashboard server."""
    import uvicorn

    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")

