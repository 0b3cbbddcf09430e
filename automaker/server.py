from __future__ import annotations

import argparse
import logging

from fastapi import FastAPI, HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse

from automaker.auto_mode import AutoModeService
from automaker.config import ServerConfig, load_config
from automaker.context_store import FileContextStore
from automaker.engine import ClaudeCodeEngine
from automaker.errors import (
    AlreadyActiveError,
    AlreadyRunningError,
    AnalysisRunningError,
    FeatureNotFoundError,
    InvalidFeatureStateError,
)
from automaker.events import EventBroadcaster
from automaker.feature_store import JsonFeatureStore
from automaker.logging_config import setup_logging
from automaker.models import (
    AnalysisResult,
    FeatureRequest,
    FileDiffRequest,
    FollowUpRequest,
    MergeRequest,
    OperationResult,
    ProjectRequest,
    StartRequest,
    StopFeatureRequest,
)
from automaker.worktree import GitWorktreeManager

logger = logging.getLogger(__name__)

WORKTREE_NOT_FOUND = "Worktree not found"


def create_app(
    service: AutoModeService,
    broadcaster: EventBroadcaster | None = None,
    server_config: ServerConfig | None = None,
) -> FastAPI:
    broadcaster = broadcaster or EventBroadcaster()
    server_config = server_config or ServerConfig()
    sink = broadcaster.publish
    app = FastAPI(title="Automaker", version="0.1.0")
    app.state.service = service
    app.state.broadcaster = broadcaster

    @app.on_event("shutdown")
    async def shutdown():
        """Give running features a grace period, then stop their agents."""
        await service.shutdown(timeout=server_config.shutdown_grace_seconds)

    @app.exception_handler(AlreadyActiveError)
    @app.exception_handler(AlreadyRunningError)
    @app.exception_handler(AnalysisRunningError)
    @app.exception_handler(InvalidFeatureStateError)
    async def conflict(request: Request, exc: Exception):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(FeatureNotFoundError)
    async def not_found(request: Request, exc: FeatureNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    async def _start_in_background(body: FeatureRequest, action: str, run) -> OperationResult:
        """Register the feature, check it exists, then run it detached from the request.

        The execution is held from the first line on, so a concurrent request
        for the same feature gets a 409 instead of a run that fails later.
        """
        execution = service.registry.try_acquire(body.feature_id, body.project_path, sink)
        try:
            if await service.feature_store.get_feature(body.project_path, body.feature_id) is None:
                raise FeatureNotFoundError(body.feature_id)
        except BaseException:
            service.registry.release(body.feature_id, execution)
            raise
        service.spawn(run(execution), name=f"{action}:{body.feature_id}")
        logger.info(f"{action} requested for {body.feature_id} in {body.project_path}")
        return OperationResult(success=True)

    # -- Auto mode --

    @app.post("/api/auto-mode/start")
    async def start(body: StartRequest) -> OperationResult:
        return await service.start(
            body.project_path,
            sink=sink,
            max_concurrency=body.max_concurrency,
            use_worktrees=body.use_worktrees,
        )

    @app.post("/api/auto-mode/stop")
    async def stop(body: ProjectRequest) -> OperationResult:
        return service.stop(body.project_path)

    @app.get("/api/auto-mode/status")
    async def status(project_path: str | None = None):
        return service.get_status(project_path)

    @app.get("/api/auto-mode/all-statuses")
    async def all_statuses():
        return service.get_all_project_statuses()

    @app.post("/api/auto-mode/run-feature")
    async def run_feature(body: FeatureRequest) -> OperationResult:
        return await _start_in_background(
            body, "run",
            lambda execution: service.run_feature(
                body.project_path, body.feature_id, sink, body.use_worktrees, execution=execution
            ),
        )

    @app.post("/api/auto-mode/verify-feature")
    async def verify_feature(body: FeatureRequest) -> OperationResult:
        return await _start_in_background(
            body, "verify",
            lambda execution: service.verify_feature(
                body.project_path, body.feature_id, sink, body.use_worktrees, execution=execution
            ),
        )

    @app.post("/api/auto-mode/resume-feature")
    async def resume_feature(body: FeatureRequest) -> OperationResult:
        return await _start_in_background(
            body, "resume",
            lambda execution: service.resume_feature(
                body.project_path, body.feature_id, sink, body.use_worktrees, execution=execution
            ),
        )

    @app.post("/api/auto-mode/commit-feature")
    async def commit_feature(body: FeatureRequest) -> OperationResult:
        return await _start_in_background(
            body, "commit",
            lambda execution: service.commit_feature(
                body.project_path, body.feature_id, sink, body.use_worktrees, execution=execution
            ),
        )

    @app.post("/api/auto-mode/analyze-project")
    async def analyze_project(body: ProjectRequest) -> AnalysisResult:
        execution = service.acquire_analysis(body.project_path, sink)
        service.spawn(
            service.analyze_project(body.project_path, sink, execution=execution),
            name=f"analyze:{execution.feature_id}",
        )
        logger.info(f"Project analysis requested for {body.project_path}")
        return AnalysisResult(success=True, analysis_id=execution.feature_id)

    @app.post("/api/auto-mode/follow-up-feature")
    async def follow_up_feature(body: FollowUpRequest) -> OperationResult:
        await service.follow_up_feature(
            body.project_path,
            body.feature_id,
            body.prompt,
            image_paths=body.image_paths,
            sink=sink,
            use_worktrees=body.use_worktrees,
        )
        return OperationResult(success=True)

    @app.post("/api/auto-mode/revert-feature")
    async def revert_feature(body: FeatureRequest) -> OperationResult:
        return await service.revert_feature(body.project_path, body.feature_id, sink)

    @app.post("/api/auto-mode/merge-feature")
    async def merge_feature(body: MergeRequest) -> OperationResult:
        return await service.merge_feature(body.project_path, body.feature_id, sink, squash=body.squash)

    @app.post("/api/auto-mode/stop-feature")
    async def stop_feature(body: StopFeatureRequest) -> OperationResult:
        return service.stop_feature(body.feature_id)

    # -- Worktrees --

    @app.post("/api/worktree/info")
    async def worktree_info(body: FeatureRequest):
        info = await service.get_worktree_info(body.project_path, body.feature_id)
        if info is None:
            raise HTTPException(status_code=404, detail=WORKTREE_NOT_FOUND)
        return info

    @app.post("/api/worktree/status")
    async def worktree_status(body: FeatureRequest):
        result = await service.get_worktree_status(body.project_path, body.feature_id)
        if result is None:
            raise HTTPException(status_code=404, detail=WORKTREE_NOT_FOUND)
        return result

    @app.post("/api/worktree/list")
    async def worktree_list(body: ProjectRequest):
        return await service.list_worktrees(body.project_path)

    @app.post("/api/worktree/diffs")
    async def worktree_diffs(body: FeatureRequest):
        diffs = await service.get_file_diffs(body.project_path, body.feature_id)
        if diffs is None:
            raise HTTPException(status_code=404, detail=WORKTREE_NOT_FOUND)
        return diffs

    @app.post("/api/worktree/file-diff")
    async def worktree_file_diff(body: FileDiffRequest):
        diff = await service.get_file_diff(body.project_path, body.feature_id, body.file_path)
        if diff is None:
            raise HTTPException(status_code=404, detail=WORKTREE_NOT_FOUND)
        return diff

    # -- Events --

    @app.get("/api/events")
    async def events(project_path: str | None = None):
        """Stream lifecycle events as server-sent events."""
        return StreamingResponse(
            broadcaster.stream(project_path),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


def build_service(config_path: str | None = None) -> AutoModeService:
    config = load_config(config_path)
    context_store = FileContextStore()
    return AutoModeService(
        feature_store=JsonFeatureStore(),
        worktree_manager=GitWorktreeManager(),
        engine=ClaudeCodeEngine(context_store, config.claude_code),
        context_store=context_store,
        config=config.auto_mode,
    )


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Automaker Auto Mode server")
    parser.add_argument("--host", default=None, help="Bind host (default: from config, 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: from config, 3008)")
    parser.add_argument("--config", default=None, help="Config file (default: AUTOMAKER_CONFIG or ~/.automaker/config.yaml)")
    parser.add_argument("--log-level", default=None, help="Log level (default: from config, INFO)")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(level=args.log_level or config.log_level)

    service = build_service(args.config)
    app = create_app(service, server_config=config.server)
    logger.info(f"Automaker starting (max_concurrency={config.auto_mode.max_concurrency}, "
                f"use_worktrees={config.auto_mode.use_worktrees})")

    import uvicorn

    uvicorn.run(app, host=args.host or config.server.host, port=args.port or config.server.port)


if __name__ == "__main__":
    main()
