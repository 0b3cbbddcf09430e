"""
Auto Mode: autonomous feature execution across projects.

Each project gets its own polling loop that pulls ``backlog`` features up to
a per-project concurrency cap and runs each one in the background. Every
run, whether started by the loop or by an explicit call, follows the same
sequence: acquire the feature in the execution registry, resolve its work
path (a git worktree when enabled), mark it running, call the engine,
interpret the result, and release the registry entry on every exit path.

Stopping a project loop only stops new pickups; features already running
finish on their own. ``stop_feature`` is the way to cancel one of them.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from automaker.config import AutoModeConfig
from automaker.context_store import ContextStore
from automaker.engine import ExecutionEngine
from automaker.errors import (
    AlreadyActiveError,
    AlreadyRunningError,
    AnalysisRunningError,
    EngineError,
    FeatureNotFoundError,
    FeatureStoppedError,
    InvalidFeatureStateError,
)
from automaker.events import emit
from automaker.feature_store import FeatureStore
from automaker.logging_config import feature_log
from automaker.models import (
    AnalysisResult,
    AutoModeStatus,
    EngineResult,
    EventSink,
    EventType,
    Feature,
    FeatureRunResult,
    FeatureStatus,
    FileDiff,
    OperationResult,
    ProjectStatus,
    WorktreeInfo,
    WorktreeSetup,
    WorktreeStatus,
)
from automaker.registry import Execution, ExecutionRegistry
from automaker.worktree import WorktreeManager, safe_name

logger = logging.getLogger(__name__)

ANALYSIS_PREFIX = "project-analysis-"
FEATURE_LOG_DIR = Path(".automaker") / "logs"


@dataclass
class ProjectLoopState:
    max_concurrency: int
    is_running: bool = False
    task: asyncio.Task | None = None
    stop_event: asyncio.Event | None = None
    sink: EventSink | None = None
    use_worktrees: bool = False


class AutoModeService:
    def __init__(
        self,
        feature_store: FeatureStore,
        worktree_manager: WorktreeManager,
        engine: ExecutionEngine,
        context_store: ContextStore,
        config: AutoModeConfig | None = None,
    ):
        self.feature_store = feature_store
        self.worktree_manager = worktree_manager
        self.engine = engine
        self.context_store = context_store
        self.config = config or AutoModeConfig()
        self.registry = ExecutionRegistry()
        self._project_loops: dict[str, ProjectLoopState] = {}
        self._tasks: set[asyncio.Task] = set()

    # -- background tasks --

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} raised exception: {exc}", exc_info=exc)

    def _use_worktrees(self, override: bool | None) -> bool:
        return self.config.use_worktrees if override is None else override

    # -- project loops --

    def _get_project_state(self, project_path: str) -> ProjectLoopState:
        if project_path not in self._project_loops:
            self._project_loops[project_path] = ProjectLoopState(max_concurrency=self.config.max_concurrency)
        return self._project_loops[project_path]

    def any_loop_running(self) -> bool:
        return any(state.is_running for state in self._project_loops.values())

    async def start(
        self,
        project_path: str,
        sink: EventSink | None = None,
        max_concurrency: int | None = None,
        use_worktrees: bool | None = None,
    ) -> OperationResult:
        """Start the auto mode loop for a project.

        Polls once immediately, then every ``poll_interval_seconds``.
        """
        state = self._get_project_state(project_path)
        if state.is_running:
            raise AlreadyRunningError(project_path)
        if max_concurrency is None:
            max_concurrency = self.config.max_concurrency
        elif max_concurrency < 1:
            raise ValueError(f"max_concurrency must be a positive integer, got {max_concurrency}")

        state.is_running = True
        state.max_concurrency = max_concurrency
        state.sink = sink
        state.use_worktrees = self._use_worktrees(use_worktrees)
        state.stop_event = asyncio.Event()
        logger.info(f"Starting auto mode for {project_path} (max_concurrency={max_concurrency})")

        await self.check_and_start(project_path)
        if state.is_running and state.stop_event is not None:
            state.task = self.spawn(
                self._poll_loop(project_path, state.stop_event),
                name=f"auto-mode-loop:{project_path}",
            )
        return OperationResult(success=True)

    def stop(self, project_path: str) -> OperationResult:
        """Stop picking up new features; running ones complete on their own."""
        state = self._project_loops.get(project_path)
        if state is None:
            logger.info(f"No auto mode state found for project: {project_path}")
            return OperationResult(success=True, running_features=0)

        state.is_running = False
        if state.stop_event is not None:
            state.stop_event.set()
            state.stop_event = None
        if state.task is not None:
            state.task.cancel()
            state.task = None

        running_count = self.registry.count_for_project(project_path)
        logger.info(f"Auto loop stopped for {project_path}. {running_count} feature(s) still running and will complete.")
        return OperationResult(success=True, running_features=running_count)

    async def _poll_loop(self, project_path: str, stop_event: asyncio.Event) -> None:
        state = self._project_loops[project_path]
        logger.info(f"Poll loop running for {project_path} (interval={self.config.poll_interval_seconds}s)")
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            if state.is_running and not stop_event.is_set():
                await self.check_and_start(project_path)

    async def check_and_start(self, project_path: str) -> None:
        """Start backlog features for a project until its concurrency cap is reached."""
        state = self._project_loops.get(project_path)
        if state is None or not state.is_running:
            return
        try:
            running_count = self.registry.count_for_project(project_path)
            logger.debug(f"[{project_path}] Checking features - Running: {running_count}/{state.max_concurrency}")
            if state.max_concurrency - running_count <= 0:
                return

            features = await self.feature_store.load_features(project_path)
            if not state.is_running:
                return
            backlog = [f for f in features if f.status == FeatureStatus.backlog and f.id not in self.registry]
            if not backlog:
                logger.debug(f"[{project_path}] No backlog features available")
                return

            # the registry may have changed while features were loading
            available = state.max_concurrency - self.registry.count_for_project(project_path)
            to_start = backlog[:max(available, 0)]
            if to_start:
                logger.info(f"[{project_path}] Starting {len(to_start)} feature(s) from backlog")
            for feature in to_start:
                self.start_feature_async(feature, project_path, state.sink, state.use_worktrees, require_backlog=True)
        except Exception as e:
            logger.error(f"[{project_path}] Error checking/starting features: {e}", exc_info=True)

    def get_status(self, project_path: str | None = None) -> AutoModeStatus:
        if project_path is not None:
            state = self._project_loops.get(project_path)
            return AutoModeStatus(
                auto_loop_running=bool(state and state.is_running),
                running_features=self.registry.ids_for_project(project_path),
                running_count=self.registry.count_for_project(project_path),
            )
        return AutoModeStatus(
            auto_loop_running=self.any_loop_running(),
            running_projects=[path for path, state in self._project_loops.items() if state.is_running],
            running_features=self.registry.ids(),
            running_count=len(self.registry),
        )

    def get_all_project_statuses(self) -> dict[str, ProjectStatus]:
        return {
            path: ProjectStatus(
                is_running=state.is_running,
                running_features=self.registry.ids_for_project(path),
                running_count=self.registry.count_for_project(path),
                max_concurrency=state.max_concurrency,
            )
            for path, state in self._project_loops.items()
        }

    # -- shared run envelope --

    async def _run_execution(
        self,
        execution: Execution,
        body: Callable[[], Awaitable[EngineResult | None]],
        raise_errors: bool = True,
    ) -> EngineResult | None:
        """Run ``body`` for an acquired execution and always release it.

        An exception is recorded on the feature and re-raised when
        ``raise_errors`` is set. A run that was stopped from outside is
        discarded quietly: its result or error no longer belongs to the
        feature.
        """
        with feature_log(execution.feature_id, *self._run_log_location(execution)):
            try:
                return await body()
            except Exception as e:
                if not execution.is_active():
                    logger.info(f"Feature {execution.feature_id} was stopped; discarding outcome ({e})")
                    return None
                logger.error(f"Error running feature {execution.feature_id}: {e}", exc_info=True)
                await self._record_failure(execution, e)
                if raise_errors:
                    raise
                return None
            finally:
                self.registry.release(execution.feature_id, execution)

    def _run_log_location(self, execution: Execution) -> tuple[Path | None, str | None]:
        if not self.config.feature_logs:
            return None, None
        return Path(execution.project_path) / FEATURE_LOG_DIR, f"{safe_name(execution.feature_id)}.log"

    def _acquire(
        self,
        feature_id: str,
        project_path: str,
        sink: EventSink | None,
        execution: Execution | None,
    ) -> Execution:
        """Use an execution the caller already registered, or register one."""
        if execution is not None:
            return execution
        return self.registry.try_acquire(feature_id, project_path, sink)

    async def _record_failure(self, execution: Execution, error: Exception) -> None:
        feature_id = execution.feature_id
        project_path = execution.project_path
        message = str(error) or type(error).__name__
        missing = isinstance(error, FeatureNotFoundError) and error.feature_id == feature_id

        if not missing:
            trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            try:
                await self.context_store.append(project_path, feature_id, f"\n\n❌ ERROR: {message}\n\n{trace}\n")
            except Exception:
                logger.exception(f"Failed to write error to context for {feature_id}")
            try:
                await self.feature_store.update_status(
                    feature_id, FeatureStatus.waiting_approval, project_path, error=message
                )
            except Exception:
                logger.exception(f"Failed to update status after error for {feature_id}")

        emit(execution.sink, project_path, EventType.error, feature_id=feature_id, error=message)

    @staticmethod
    def _check_active(execution: Execution) -> None:
        if not execution.is_active():
            raise FeatureStoppedError(execution.feature_id)

    async def _engine_call(self, coro: Awaitable):
        timeout = self.config.engine_timeout_seconds
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EngineError(f"Engine call timed out after {timeout}s") from e

    async def _load_feature(self, project_path: str, feature_id: str) -> Feature:
        feature = await self.feature_store.get_feature(project_path, feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        return feature

    @staticmethod
    def status_for_result(feature: Feature, result: EngineResult) -> FeatureStatus:
        """Rest state after an implementation attempt.

        Failures go to ``waiting_approval`` rather than back to ``backlog`` so
        a systemic failure (rate limits, a broken toolchain) cannot turn into
        an endless retry loop.
        """
        if result.passes and not feature.skip_tests:
            return FeatureStatus.verified
        return FeatureStatus.waiting_approval

    async def _finalize(
        self,
        execution: Execution,
        feature: Feature,
        result: EngineResult,
        new_status: FeatureStatus | None = None,
    ) -> EngineResult | None:
        if not execution.is_active():
            logger.info(f"Feature {feature.id} was stopped; discarding result")
            return None
        if new_status is None:
            new_status = self.status_for_result(feature, result)
        await self.feature_store.update_status(feature.id, new_status, execution.project_path)
        emit(
            execution.sink,
            execution.project_path,
            EventType.feature_complete,
            feature_id=feature.id,
            passes=result.passes,
            message=result.message,
        )
        return result

    def _emit_start(self, execution: Execution, feature: Feature, setup: WorktreeSetup | None = None, **overrides):
        data = feature.model_dump(mode="json")
        if setup is not None:
            data["worktree_path"] = setup.work_path
            data["branch_name"] = setup.branch_name
        data.update(overrides)
        emit(execution.sink, execution.project_path, EventType.feature_start, feature_id=feature.id, feature=data)

    # -- worktree isolation --

    async def setup_worktree_for_feature(
        self,
        feature: Feature,
        project_path: str,
        sink: EventSink | None = None,
        use_worktrees: bool | None = None,
        create: bool = True,
    ) -> WorktreeSetup:
        """Resolve where a feature's work happens.

        Falls back to the project directory when worktrees are disabled, the
        project is not a git repository, or creation fails. A feature already
        bound to an existing worktree reuses it; with ``create`` unset a
        missing worktree is not re-created.
        """
        not_isolated = WorktreeSetup(use_worktree=False, work_path=project_path)
        if not self._use_worktrees(use_worktrees):
            logger.debug("Worktrees disabled, working directly on main project")
            return not_isolated

        try:
            is_git = await self.worktree_manager.is_git_repo(project_path)
        except Exception as e:
            logger.warning(f"Could not check git status of {project_path}: {e}")
            is_git = False
        if not is_git:
            logger.info(f"Project {project_path} is not a git repo, skipping worktree creation")
            return not_isolated

        if feature.worktree_path and feature.branch_name and os.path.isdir(feature.worktree_path):
            emit(sink, project_path, EventType.progress, feature_id=feature.id,
                 content=f"Working in isolated branch: {feature.branch_name}\n")
            return WorktreeSetup(use_worktree=True, work_path=feature.worktree_path, branch_name=feature.branch_name)
        if not create:
            return not_isolated

        emit(sink, project_path, EventType.progress, feature_id=feature.id,
             content="Creating isolated worktree for feature...\n")
        try:
            info = await self.worktree_manager.create_worktree(project_path, feature)
        except Exception as e:
            logger.warning(f"Failed to create worktree for {feature.id}: {e}. Falling back to main project.")
            emit(sink, project_path, EventType.progress, feature_id=feature.id,
                 content=f"Warning: Could not create worktree ({e}). Working directly on main project.\n")
            return not_isolated

        logger.info(f"Created worktree at {info.worktree_path}, branch: {info.branch_name}")
        emit(sink, project_path, EventType.progress, feature_id=feature.id,
             content=f"Working in isolated branch: {info.branch_name}\n")
        await self.feature_store.update_worktree(feature.id, project_path, info.worktree_path, info.branch_name)
        return WorktreeSetup(
            use_worktree=True,
            work_path=info.worktree_path,
            branch_name=info.branch_name,
            base_branch=info.base_branch,
        )

    async def _resolve_work_path(
        self,
        execution: Execution,
        feature: Feature,
        use_worktrees: bool | None,
        create: bool = True,
    ) -> WorktreeSetup:
        setup = await self.setup_worktree_for_feature(
            feature, execution.project_path, execution.sink, use_worktrees, create=create
        )
        execution.worktree_path = setup.work_path
        execution.branch_name = setup.branch_name
        return setup

    # -- feature runs --

    def start_feature_async(
        self,
        feature: Feature,
        project_path: str,
        sink: EventSink | None = None,
        use_worktrees: bool | None = None,
        require_backlog: bool = False,
    ) -> asyncio.Task | None:
        """Start a feature in the background; ``None`` if it is already running.

        Errors are recorded on the feature and never reach the caller. With
        ``require_backlog`` the stored feature is re-read once the execution
        is held, and the run is skipped unless it is still in the backlog.
        """
        try:
            execution = self.registry.try_acquire(feature.id, project_path, sink)
        except AlreadyActiveError:
            logger.info(f"Feature {feature.id} already running, skipping")
            return None
        logger.info(f"Starting feature {feature.id}: {feature.description[:50]}")

        async def body():
            current = feature
            if require_backlog:
                current = await self.feature_store.get_feature(project_path, feature.id)
                if current is None or current.status != FeatureStatus.backlog:
                    logger.info(f"Feature {feature.id} left the backlog before it started, skipping")
                    return None
            return await self._implement(execution, current, use_worktrees)

        return self.spawn(
            self._run_execution(execution, body, raise_errors=False),
            name=f"feature:{feature.id}",
        )

    async def run_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
        use_worktrees: bool | None = None,
        execution: Execution | None = None,
    ) -> FeatureRunResult:
        execution = self._acquire(feature_id, project_path, sink, execution)
        logger.info(f"Running feature {feature_id}")

        async def body():
            feature = await self._load_feature(project_path, feature_id)
            return await self._implement(execution, feature, use_worktrees)

        result = await self._run_execution(execution, body)
        if result is None:
            return FeatureRunResult(success=False, passes=False)
        return FeatureRunResult(success=True, passes=result.passes)

    async def _implement(self, execution: Execution, feature: Feature, use_worktrees: bool | None) -> EngineResult | None:
        setup = await self._resolve_work_path(execution, feature, use_worktrees)
        self._check_active(execution)
        await self.feature_store.update_status(feature.id, FeatureStatus.in_progress, execution.project_path)
        self._emit_start(execution, feature, setup)
        result = await self._engine_call(self.engine.implement(feature, setup.work_path, execution.sink, execution))
        return await self._finalize(execution, feature, result)

    async def verify_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
        use_worktrees: bool | None = None,
        execution: Execution | None = None,
    ) -> FeatureRunResult:
        """Run the feature's tests; pass -> verified, fail -> back to in_progress."""
        execution = self._acquire(feature_id, project_path, sink, execution)
        logger.info(f"Verifying feature {feature_id}")

        async def body():
            feature = await self._load_feature(project_path, feature_id)
            setup = await self._resolve_work_path(execution, feature, use_worktrees, create=False)
            self._emit_start(execution, feature, setup)
            result = await self._engine_call(self.engine.verify(feature, setup.work_path, execution.sink, execution))
            new_status = FeatureStatus.verified if result.passes else FeatureStatus.in_progress
            return await self._finalize(execution, feature, result, new_status)

        result = await self._run_execution(execution, body)
        if result is None:
            return FeatureRunResult(success=False, passes=False)
        return FeatureRunResult(success=True, passes=result.passes)

    async def resume_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
        use_worktrees: bool | None = None,
        execution: Execution | None = None,
    ) -> FeatureRunResult:
        """Continue a feature from its transcript, auto-retrying if the agent stops early."""
        execution = self._acquire(feature_id, project_path, sink, execution)
        logger.info(f"Resuming feature {feature_id}")

        async def body():
            feature = await self._load_feature(project_path, feature_id)
            setup = await self._resolve_work_path(execution, feature, use_worktrees)
            self._check_active(execution)
            await self.feature_store.update_status(feature_id, FeatureStatus.in_progress, project_path)
            self._emit_start(execution, feature, setup)

            context = await self.context_store.read(project_path, feature_id)
            result = await self._engine_call(
                self.engine.resume_with_context(feature, setup.work_path, execution.sink, context, execution)
            )

            attempts = 0
            max_attempts = self.config.max_resume_retries
            while not result.passes and attempts < max_attempts and execution.is_active():
                current = await self.feature_store.get_feature(project_path, feature_id)
                if current is None or current.status != FeatureStatus.in_progress:
                    break
                attempts += 1
                logger.info(f"Feature {feature_id} ended early, auto-retrying (attempt {attempts}/{max_attempts})")
                await self.context_store.append(
                    project_path, feature_id, f"\n\n🔄 Auto-retry #{attempts} - Continuing implementation...\n\n"
                )
                emit(execution.sink, project_path, EventType.progress, feature_id=feature_id,
                     content=f"\n🔄 Auto-retry #{attempts} - Agent ended early, continuing...\n")
                context = await self.context_store.read(project_path, feature_id)
                result = await self._engine_call(
                    self.engine.resume_with_context(feature, setup.work_path, execution.sink, context, execution)
                )

            return await self._finalize(execution, feature, result)

        result = await self._run_execution(execution, body)
        if result is None:
            return FeatureRunResult(success=False, passes=False)
        return FeatureRunResult(success=True, passes=result.passes)

    async def follow_up_feature(
        self,
        project_path: str,
        feature_id: str,
        prompt: str,
        image_paths: list[str] | None = None,
        sink: EventSink | None = None,
        use_worktrees: bool | None = None,
    ) -> asyncio.Task:
        """Send further instructions to a feature awaiting approval.

        Returns as soon as the work is scheduled; the returned task may be
        awaited or ignored. Its outcome is reported through events.
        """
        execution = self.registry.try_acquire(feature_id, project_path, sink)
        try:
            feature = await self._load_feature(project_path, feature_id)
            if feature.status != FeatureStatus.waiting_approval:
                raise InvalidFeatureStateError(
                    f"Feature {feature_id} is {feature.status.value}; follow-up requires waiting_approval"
                )
        except BaseException:
            self.registry.release(feature_id, execution)
            raise

        logger.info(f"Follow-up on feature {feature_id}: {prompt[:80]}")
        return self.spawn(
            self._run_execution(
                execution,
                lambda: self._follow_up(execution, feature, prompt, image_paths, use_worktrees),
                raise_errors=False,
            ),
            name=f"follow-up:{feature_id}",
        )

    async def _follow_up(
        self,
        execution: Execution,
        feature: Feature,
        prompt: str,
        image_paths: list[str] | None,
        use_worktrees: bool | None,
    ) -> EngineResult | None:
        project_path = execution.project_path
        setup = await self._resolve_work_path(execution, feature, use_worktrees)
        self._check_active(execution)
        await self.feature_store.update_status(feature.id, FeatureStatus.in_progress, project_path)
        self._emit_start(execution, feature, setup)

        previous = await self.context_store.read(project_path, feature.id)
        section = f"\n\n## Follow-up Instructions\n\n{prompt}"
        await self.context_store.append(project_path, feature.id, section)

        result = await self._engine_call(
            self.engine.resume_with_context(
                feature, setup.work_path, execution.sink, previous + section, execution, image_paths=image_paths
            )
        )
        return await self._finalize(execution, feature, result)

    async def commit_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
        use_worktrees: bool | None = None,
        execution: Execution | None = None,
    ) -> OperationResult:
        """Commit a feature's changes without further work and mark it verified."""
        execution = self._acquire(feature_id, project_path, sink, execution)
        logger.info(f"Committing feature {feature_id}")

        async def body():
            feature = await self._load_feature(project_path, feature_id)
            setup = await self._resolve_work_path(execution, feature, use_worktrees, create=False)
            self._emit_start(execution, feature, setup, description="Committing changes...")
            emit(execution.sink, project_path, EventType.phase, feature_id=feature_id,
                 phase="action", message="Committing changes to git...")
            await self._engine_call(self.engine.commit_only(feature, setup.work_path, execution.sink, execution))
            return await self._finalize(
                execution,
                feature,
                EngineResult(passes=True, message="Changes committed successfully"),
                FeatureStatus.verified,
            )

        result = await self._run_execution(execution, body)
        return OperationResult(success=result is not None)

    # -- project analysis --

    def acquire_analysis(self, project_path: str, sink: EventSink | None = None) -> Execution:
        """Register a project analysis run under a ``project-analysis-<ms>`` id.

        One analysis per project at a time. The entry lives in the same
        registry as features, so it counts toward the project's running
        features and can be stopped with ``stop_feature``.
        """
        if any(fid.startswith(ANALYSIS_PREFIX) for fid in self.registry.ids_for_project(project_path)):
            raise AnalysisRunningError(project_path)
        analysis_id = f"{ANALYSIS_PREFIX}{int(time.time() * 1000)}"
        return self.registry.try_acquire(analysis_id, project_path, sink)

    async def analyze_project(
        self,
        project_path: str,
        sink: EventSink | None = None,
        execution: Execution | None = None,
    ) -> AnalysisResult:
        """Have the agent scan the project and write ``.automaker/app_spec.txt``.

        Errors are reported as an error event and re-raised.
        """
        if execution is None:
            execution = self.acquire_analysis(project_path, sink)
        analysis_id = execution.feature_id
        logger.info(f"Analyzing project at {project_path} ({analysis_id})")

        with feature_log(analysis_id, *self._run_log_location(execution)):
            try:
                emit(execution.sink, project_path, EventType.feature_start, feature_id=analysis_id, feature={
                    "id": analysis_id,
                    "category": "Project Analysis",
                    "description": "Analyzing project structure and tech stack",
                })
                result = await self._engine_call(self.engine.analyze_project(project_path, execution.sink, execution))
                self._check_active(execution)
                emit(execution.sink, project_path, EventType.feature_complete, feature_id=analysis_id,
                     passes=result.passes, message=result.message)
                return AnalysisResult(
                    success=True, analysis_id=analysis_id, passes=result.passes, message=result.message
                )
            except Exception as e:
                if not execution.is_active():
                    logger.info(f"Project analysis {analysis_id} was stopped; discarding outcome ({e})")
                    return AnalysisResult(success=False, analysis_id=analysis_id, message="Project analysis stopped")
                logger.error(f"Error analyzing project {project_path}: {e}", exc_info=True)
                emit(execution.sink, project_path, EventType.error, feature_id=analysis_id,
                     error=str(e) or type(e).__name__)
                raise
            finally:
                self.registry.release(analysis_id, execution)

    # -- cancellation, revert, merge --

    def stop_feature(self, feature_id: str) -> OperationResult:
        """Cancel a running feature without waiting for the engine to acknowledge."""
        execution = self.registry.get(feature_id)
        if execution is None:
            return OperationResult(success=False, error=f"Feature {feature_id} is not running")
        logger.info(f"Stopping feature: {feature_id}")
        execution.cancel()
        self.registry.release(feature_id)
        return OperationResult(success=True)

    async def revert_feature(self, project_path: str, feature_id: str, sink: EventSink | None = None) -> OperationResult:
        """Discard a feature's work: remove its worktree and branch, back to backlog."""
        logger.info(f"Reverting feature: {feature_id}")
        try:
            if feature_id in self.registry:
                self.stop_feature(feature_id)
            removed = await self.worktree_manager.remove_worktree(project_path, feature_id, delete_branch=True)
            await self.feature_store.update_worktree(feature_id, project_path, None, None)
            await self.feature_store.update_status(feature_id, FeatureStatus.backlog, project_path)
            await self.context_store.delete(project_path, feature_id)
        except Exception as e:
            logger.error(f"Error reverting feature {feature_id}: {e}", exc_info=True)
            emit(sink, project_path, EventType.error, feature_id=feature_id, error=str(e))
            return OperationResult(success=False, error=str(e))

        emit(sink, project_path, EventType.feature_complete, feature_id=feature_id,
             passes=False, message="Feature reverted - all changes discarded")
        logger.info(f"Feature {feature_id} reverted")
        return OperationResult(success=True, removed_path=removed.removed_path)

    async def merge_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
        squash: bool = False,
    ) -> OperationResult:
        """Merge a feature's branch into its base branch and remove the worktree."""
        logger.info(f"Merging feature: {feature_id}")
        try:
            await self._load_feature(project_path, feature_id)
            emit(sink, project_path, EventType.progress, feature_id=feature_id,
                 content="Merging feature branch into base branch...\n")
            merged = await self.worktree_manager.merge_worktree(project_path, feature_id, cleanup=True, squash=squash)
            await self.feature_store.update_worktree(feature_id, project_path, None, None)
            await self.feature_store.update_status(feature_id, FeatureStatus.verified, project_path)
        except Exception as e:
            logger.error(f"Error merging feature {feature_id}: {e}", exc_info=True)
            emit(sink, project_path, EventType.error, feature_id=feature_id, error=str(e))
            return OperationResult(success=False, error=str(e))

        emit(sink, project_path, EventType.feature_complete, feature_id=feature_id,
             passes=True, message=f"Feature merged into {merged.into_branch}")
        logger.info(f"Feature {feature_id} merged into {merged.into_branch}")
        return OperationResult(success=True, merged_branch=merged.merged_branch)

    # -- worktree inspection --

    async def get_worktree_info(self, project_path: str, feature_id: str) -> WorktreeInfo | None:
        return await self.worktree_manager.get_worktree_info(project_path, feature_id)

    async def get_worktree_status(self, project_path: str, feature_id: str) -> WorktreeStatus | None:
        info = await self.worktree_manager.get_worktree_info(project_path, feature_id)
        if info is None:
            return None
        return await self.worktree_manager.get_worktree_status(info.worktree_path)

    async def list_worktrees(self, project_path: str) -> list[WorktreeInfo]:
        return await self.worktree_manager.get_all_feature_worktrees(project_path)

    async def get_file_diffs(self, project_path: str, feature_id: str) -> list[FileDiff] | None:
        info = await self.worktree_manager.get_worktree_info(project_path, feature_id)
        if info is None:
            return None
        return await self.worktree_manager.get_file_diffs(info.worktree_path)

    async def get_file_diff(self, project_path: str, feature_id: str, file_path: str) -> FileDiff | None:
        info = await self.worktree_manager.get_worktree_info(project_path, feature_id)
        if info is None:
            return None
        return await self.worktree_manager.get_file_diff(info.worktree_path, file_path)

    # -- lifecycle --

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop every loop and wait up to ``timeout`` for in-flight runs.

        Runs still going after that are cancelled, which makes the engine
        kill its agent processes, and their registry entries are released.
        ``None`` waits without a limit.
        """
        for project_path in list(self._project_loops):
            self.stop(project_path)

        pending = [t for t in self._tasks if not t.done()]
        if pending:
            logger.info(f"Waiting for {len(pending)} running task(s) to finish")
            await asyncio.wait(pending, timeout=timeout)

        for execution in self.registry.executions():
            logger.warning(f"Force releasing feature {execution.feature_id}")
            execution.cancel()
            self.registry.release(execution.feature_id, execution)

        remaining = [t for t in self._tasks if not t.done()]
        for task in remaining:
            task.cancel()
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)
        logger.info("Auto mode service shut down")
