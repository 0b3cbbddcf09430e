from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FeatureStatus(str, Enum):
    backlog = "backlog"
    in_progress = "in_progress"
    waiting_approval = "waiting_approval"
    verified = "verified"


class EventType(str, Enum):
    feature_start = "auto_mode_feature_start"
    progress = "auto_mode_progress"
    phase = "auto_mode_phase"
    feature_complete = "auto_mode_feature_complete"
    error = "auto_mode_error"


EventSink = Callable[[dict[str, Any]], None]


class Feature(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: FeatureStatus = FeatureStatus.backlog
    description: str = ""
    category: str = ""
    steps: list[str] = Field(default_factory=list)
    skip_tests: bool = False
    model: str | None = None
    thinking_level: str | None = None
    image_paths: list[str] = Field(default_factory=list)
    worktree_path: str | None = None
    branch_name: str | None = None
    summary: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None


class EngineResult(BaseModel):
    passes: bool
    message: str = ""


class WorktreeSetup(BaseModel):
    use_worktree: bool
    work_path: str
    branch_name: str | None = None
    base_branch: str | None = None


class WorktreeInfo(BaseModel):
    feature_id: str
    worktree_path: str
    branch_name: str
    base_branch: str | None = None
    commit: str = ""


class ChangedFile(BaseModel):
    path: str
    status: str


class WorktreeStatus(BaseModel):
    worktree_path: str
    branch_name: str
    base_branch: str | None = None
    has_changes: bool = False
    changed_files: list[ChangedFile] = Field(default_factory=list)
    commits_ahead: int = 0
    recent_commits: list[str] = Field(default_factory=list)


class FileDiff(BaseModel):
    path: str
    status: str = "M"
    diff: str = ""


class MergeResult(BaseModel):
    merged_branch: str
    into_branch: str


class RemoveResult(BaseModel):
    removed_path: str | None = None
    deleted_branch: str | None = None


class OperationResult(BaseModel):
    success: bool
    error: str | None = None
    running_features: int | None = None
    removed_path: str | None = None
    merged_branch: str | None = None


class FeatureRunResult(BaseModel):
    success: bool
    passes: bool


class AnalysisResult(BaseModel):
    success: bool
    analysis_id: str
    passes: bool | None = None
    message: str = ""


class AutoModeStatus(BaseModel):
    auto_loop_running: bool
    running_features: list[str]
    running_count: int
    running_projects: list[str] | None = None


class ProjectStatus(BaseModel):
    is_running: bool
    running_features: list[str]
    running_count: int
    max_concurrency: int


# ---------------------------------------------------------------------------
# HTTP request bodies
# ---------------------------------------------------------------------------

class StartRequest(BaseModel):
    project_path: str
    max_concurrency: int | None = None
    use_worktrees: bool | None = None


class ProjectRequest(BaseModel):
    project_path: str


class FeatureRequest(BaseModel):
    project_path: str
    feature_id: str
    use_worktrees: bool | None = None


class FollowUpRequest(BaseModel):
    project_path: str
    feature_id: str
    prompt: str
    image_paths: list[str] = Field(default_factory=list)
    use_worktrees: bool | None = None


class MergeRequest(BaseModel):
    project_path: str
    feature_id: str
    squash: bool = False


class StopFeatureRequest(BaseModel):
    feature_id: str


class FileDiffRequest(BaseModel):
    project_path: str
    feature_id: str
    file_path: str
