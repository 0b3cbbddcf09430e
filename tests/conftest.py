from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio

from automaker.auto_mode import AutoModeService
from automaker.config import AutoModeConfig
from automaker.context_store import ContextStore
from automaker.engine import ExecutionEngine
from automaker.errors import EngineError, FeatureNotFoundError, WorktreeError
from automaker.feature_store import FeatureStore
from automaker.models import (
    EngineResult,
    Feature,
    FeatureStatus,
    FileDiff,
    MergeResult,
    RemoveResult,
    WorktreeInfo,
    WorktreeStatus,
)
from automaker.worktree import WorktreeManager

PROJECT = "/projects/demo"


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------

class FakeFeatureStore(FeatureStore):
    def __init__(self):
        self.features: dict[str, list[Feature]] = {}
        self.status_history: list[tuple[str, FeatureStatus]] = []
        self.load_error: Exception | None = None
        # called after a load takes its snapshot, to change state mid-load
        self.on_load = None
        self.load_delay = 0.0

    def add(self, project_path: str, *features: Feature) -> None:
        self.features.setdefault(project_path, []).extend(features)

    def find(self, project_path: str, feature_id: str) -> Feature:
        for feature in self.features.get(project_path, []):
            if feature.id == feature_id:
                return feature
        raise FeatureNotFoundError(feature_id)

    def status_of(self, project_path: str, feature_id: str) -> FeatureStatus:
        return self.find(project_path, feature_id).status

    async def load_features(self, project_path):
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.load_error is not None:
            raise self.load_error
        snapshot = [f.model_copy(deep=True) for f in self.features.get(project_path, [])]
        if self.on_load is not None:
            self.on_load(project_path)
        return snapshot

    async def update_status(self, feature_id, status, project_path, summary=None, error=None):
        feature = self.find(project_path, feature_id)
        feature.status = FeatureStatus(status)
        feature.error = error
        if summary is not None:
            feature.summary = summary
        self.status_history.append((feature_id, feature.status))

    async def update_worktree(self, feature_id, project_path, worktree_path, branch_name):
        feature = self.find(project_path, feature_id)
        feature.worktree_path = worktree_path
        feature.branch_name = branch_name


class FakeContextStore(ContextStore):
    def __init__(self):
        self.texts: dict[tuple[str, str], str] = {}

    async def read(self, project_path, feature_id):
        return self.texts.get((project_path, feature_id), "")

    async def append(self, project_path, feature_id, text):
        key = (project_path, feature_id)
        self.texts[key] = self.texts.get(key, "") + text

    async def delete(self, project_path, feature_id):
        self.texts.pop((project_path, feature_id), None)


class FakeWorktreeManager(WorktreeManager):
    """Records calls; worktrees are plain directories under ``root``."""

    def __init__(self, root: Path):
        self.root = root
        self.is_git = True
        self.create_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.merge_error: Exception | None = None
        self.worktrees: dict[str, WorktreeInfo] = {}
        self.calls: list[tuple[str, str]] = []

    async def is_git_repo(self, path):
        self.calls.append(("is_git_repo", path))
        return self.is_git

    async def create_worktree(self, project_path, feature):
        self.calls.append(("create_worktree", feature.id))
        if self.create_error is not None:
            raise self.create_error
        path = self.root / feature.id
        path.mkdir(parents=True, exist_ok=True)
        info = WorktreeInfo(
            feature_id=feature.id,
            worktree_path=str(path),
            branch_name=f"feature/{feature.id}",
            base_branch="main",
        )
        self.worktrees[feature.id] = info
        return info

    async def remove_worktree(self, project_path, feature_id, delete_branch=True):
        self.calls.append(("remove_worktree", feature_id))
        if self.remove_error is not None:
            raise self.remove_error
        info = self.worktrees.pop(feature_id, None)
        if info is None:
            return RemoveResult()
        return RemoveResult(
            removed_path=info.worktree_path,
            deleted_branch=info.branch_name if delete_branch else None,
        )

    async def merge_worktree(self, project_path, feature_id, cleanup=True, squash=False):
        self.calls.append(("merge_worktree", feature_id))
        if self.merge_error is not None:
            raise self.merge_error
        info = self.worktrees.get(feature_id)
        if info is None:
            raise WorktreeError(f"No worktree found for feature {feature_id}")
        if cleanup:
            del self.worktrees[feature_id]
        return MergeResult(merged_branch=info.branch_name, into_branch=info.base_branch or "main")

    async def get_worktree_info(self, project_path, feature_id):
        return self.worktrees.get(feature_id)

    async def get_worktree_status(self, worktree_path):
        return WorktreeStatus(worktree_path=worktree_path, branch_name="feature/x", base_branch="main")

    async def get_all_feature_worktrees(self, project_path):
        return list(self.worktrees.values())

    async def get_file_diffs(self, worktree_path):
        return [FileDiff(path="app.py", status="M", diff="+print('hi')\n")]

    async def get_file_diff(self, worktree_path, file_path):
        return FileDiff(path=file_path, status="M", diff="+print('hi')\n")


@dataclass
class EngineCall:
    method: str
    feature_id: str
    work_path: str
    context: str | None = None
    image_paths: list[str] | None = None


class FakeEngine(ExecutionEngine):
    """Scriptable engine.

    ``hold(*ids)`` makes calls for those features block until ``finish(id)``
    or until their execution is cancelled.
    """

    def __init__(self):
        self.calls: list[EngineCall] = []
        self.results: list[EngineResult] = []
        self.default_result = EngineResult(passes=True, message="done")
        self.error: Exception | None = None
        self.on_call = None
        self.gates: dict[str, asyncio.Event] = {}
        self.active: set[str] = set()
        self.max_active = 0

    def hold(self, *feature_ids: str) -> None:
        for feature_id in feature_ids:
            self.gates[feature_id] = asyncio.Event()

    def finish(self, feature_id: str) -> None:
        self.gates[feature_id].set()

    def started_ids(self) -> list[str]:
        return [c.feature_id for c in self.calls]

    def calls_for(self, method: str) -> list[EngineCall]:
        return [c for c in self.calls if c.method == method]

    async def _call(self, method, feature, work_path, execution, context=None, image_paths=None):
        self.calls.append(EngineCall(method, feature.id, work_path, context, image_paths))
        self.active.add(feature.id)
        self.max_active = max(self.max_active, len(self.active))
        try:
            gate = self.gates.get(feature.id)
            if gate is not None and not gate.is_set():
                waiters = [
                    asyncio.ensure_future(gate.wait()),
                    asyncio.ensure_future(execution.cancel_event.wait()),
                ]
                try:
                    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for waiter in waiters:
                        waiter.cancel()
            if execution.cancelled:
                return EngineResult(passes=False, message="Feature stopped")
            if self.on_call is not None:
                await self.on_call(method, feature)
            if self.error is not None:
                raise self.error
            if self.results:
                return self.results.pop(0)
            return self.default_result
        finally:
            self.active.discard(feature.id)

    async def implement(self, feature, work_path, sink, execution):
        return await self._call("implement", feature, work_path, execution)

    async def verify(self, feature, work_path, sink, execution):
        return await self._call("verify", feature, work_path, execution)

    async def resume_with_context(self, feature, work_path, sink, context, execution, image_paths=None):
        return await self._call("resume_with_context", feature, work_path, execution, context, image_paths)

    async def commit_only(self, feature, work_path, sink, execution):
        result = await self._call("commit_only", feature, work_path, execution)
        if not result.passes:
            raise EngineError(f"Commit failed for {feature.id}: {result.message}")

    async def analyze_project(self, project_path, sink, execution):
        return await self._call("analyze_project", Feature(id=execution.feature_id), project_path, execution)


class EventRecorder:
    def __init__(self):
        self.events: list[dict] = []

    def __call__(self, event: dict) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def drain(service: AutoModeService) -> None:
    """Wait for every background feature task the service has spawned."""
    while True:
        pending = [t for t in service._tasks if not t.done() and not t.get_name().startswith("auto-mode-loop")]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    return FakeFeatureStore()


@pytest.fixture
def context():
    return FakeContextStore()


@pytest.fixture
def worktrees(tmp_path):
    return FakeWorktreeManager(tmp_path / "worktrees")


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def auto_config():
    return AutoModeConfig(poll_interval_seconds=0.01)


@pytest_asyncio.fixture
async def service(store, worktrees, engine, context, auto_config):
    svc = AutoModeService(store, worktrees, engine, context, auto_config)
    yield svc
    await svc.shutdown(timeout=1.0)
