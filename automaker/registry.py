"""Process-wide table of active feature executions.

Registering an execution is the per-feature lock: only one execution per
feature id may be present at a time. ``try_acquire`` never awaits, so under a
single asyncio event loop the check-and-insert cannot interleave with
another coroutine.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from automaker.errors import AlreadyActiveError
from automaker.models import EventSink

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Execution:
    feature_id: str
    project_path: str
    registry: ExecutionRegistry = field(repr=False)
    sink: EventSink | None = field(default=None, repr=False)
    worktree_path: str | None = None
    branch_name: str | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def is_active(self) -> bool:
        """True while this execution is still the registered one for its id."""
        return self.registry.get(self.feature_id) is self


class ExecutionRegistry:
    def __init__(self):
        self._executions: dict[str, Execution] = {}

    def try_acquire(
        self,
        feature_id: str,
        project_path: str,
        sink: EventSink | None = None,
    ) -> Execution:
        if feature_id in self._executions:
            raise AlreadyActiveError(feature_id)
        execution = Execution(
            feature_id=feature_id,
            project_path=project_path,
            registry=self,
            sink=sink,
        )
        self._executions[feature_id] = execution
        return execution

    def release(self, feature_id: str, execution: Execution | None = None) -> None:
        """Remove an entry; a no-op when absent.

        With ``execution`` given, only that exact execution is removed, so a
        stopped pipeline finishing late cannot release a newer run of the
        same feature.
        """
        current = self._executions.get(feature_id)
        if current is None:
            return
        if execution is not None and current is not execution:
            logger.debug(f"Skipping release of {feature_id}: registered execution was replaced")
            return
        del self._executions[feature_id]

    def get(self, feature_id: str) -> Execution | None:
        return self._executions.get(feature_id)

    def ids(self) -> list[str]:
        return list(self._executions)

    def executions(self) -> list[Execution]:
        return list(self._executions.values())

    def ids_for_project(self, project_path: str) -> list[str]:
        return [fid for fid, ex in self._executions.items() if ex.project_path == project_path]

    def count_for_project(self, project_path: str) -> int:
        return sum(1 for ex in self._executions.values() if ex.project_path == project_path)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._executions

    def __len__(self) -> int:
        return len(self._executions)
