from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from contract_builder.errors import SessionConflict
from contract_builder.models.session import BuildRequest
from contract_builder.orchestrator.service import BuildOrchestrator


class SubmitBody(BaseModel):
    token: str = Field(min_length=1)
    source_url: str = Field(min_length=1)
    rustc_version: Optional[str] = None
    tool_version: Optional[str] = None
    project_directory: str = ""


def create_app(orchestrator: BuildOrchestrator) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await orchestrator.start()
        try:
            yield
        finally:
            await orchestrator.stop()

    app = FastAPI(title="contract-builder", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.get("/health")
    def health_check() -> dict:
        return orchestrator.health()

    @app.post("/sessions", status_code=202)
    async def submit_session(body: SubmitBody) -> dict:
        config = orchestrator.config
        try:
            build_request = BuildRequest(
                token=body.token,
                source_url=body.source_url,
                rustc_version=body.rustc_version or config.default_rustc_version,
                tool_version=body.tool_version or config.default_tool_version,
                project_directory=body.project_directory,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        try:
            handle = orchestrator.submit(build_request)
        except SessionConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return handle.session.view()

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> dict:
        try:
            return orchestrator.get(session_id).view()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="unknown session") from exc

    @app.get("/sessions/{session_id}/logs", response_class=PlainTextResponse)
    async def get_session_logs(session_id: str) -> str:
        try:
            return orchestrator.read_log(session_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="unknown session") from exc

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str) -> dict:
        try:
            return orchestrator.cancel(session_id).view()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="unknown session") from exc
        except SessionConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    return app
