from __future__ import annotations


class AutomakerError(Exception):
    """Base class for orchestrator errors."""


class AlreadyActiveError(AutomakerError):
    def __init__(self, feature_id: str):
        super().__init__(f"Feature {feature_id} is already running")
        self.feature_id = feature_id


class AlreadyRunningError(AutomakerError):
    def __init__(self, project_path: str):
        super().__init__(f"Auto mode loop is already running for project: {project_path}")
        self.project_path = project_path


class FeatureNotFoundError(AutomakerError):
    def __init__(self, feature_id: str):
        super().__init__(f"Feature {feature_id} not found")
        self.feature_id = feature_id


class InvalidFeatureStateError(AutomakerError):
    pass


class WorktreeError(AutomakerError):
    pass


class EngineError(AutomakerError):
    pass


class FeatureStoppedError(AutomakerError):
    def __init__(self, feature_id: str):
        super().__init__(f"Feature {feature_id} was stopped")
        self.feature_id = feature_id


class AnalysisRunningError(AutomakerError):
    def __init__(self, project_path: str):
        super().__init__(f"Project analysis is already running for {project_path}")
        self.project_path = project_path
