from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from automaker.errors import FeatureNotFoundError
from automaker.models import Feature, FeatureStatus

logger = logging.getLogger(__name__)

FEATURES_FILE = Path(".automaker") / "feature_list.json"


class FeatureStore(ABC):
    @abstractmethod
    async def load_features(self, project_path: str) -> list[Feature]:
        ...

    @abstractmethod
    async def update_status(
        self,
        feature_id: str,
        status: FeatureStatus,
        project_path: str,
        summary: str | None = None,
        error: str | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def update_worktree(
        self,
        feature_id: str,
        project_path: str,
        worktree_path: str | None,
        branch_name: str | None,
    ) -> None:
        ...

    async def get_feature(self, project_path: str, feature_id: str) -> Feature | None:
        for feature in await self.load_features(project_path):
            if feature.id == feature_id:
                return feature
        return None


class JsonFeatureStore(FeatureStore):
    """Features kept as a JSON array in ``.automaker/feature_list.json``.

    Each read-modify-write holds a per-project lock; writes go to a temp file
    that is then renamed over the original.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, project_path: str) -> asyncio.Lock:
        if project_path not in self._locks:
            self._locks[project_path] = asyncio.Lock()
        return self._locks[project_path]

    @staticmethod
    def features_path(project_path: str) -> Path:
        return Path(project_path) / FEATURES_FILE

    def _read(self, project_path: str) -> list[dict]:
        path = self.features_path(project_path)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid feature list {path}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"Feature list {path} is not a JSON array, ignoring")
            return []
        return data

    def _write(self, project_path: str, data: list[dict]) -> None:
        path = self.features_path(project_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, path)

    async def load_features(self, project_path: str) -> list[Feature]:
        raw = await asyncio.to_thread(self._read, project_path)
        features = []
        for item in raw:
            try:
                features.append(Feature.model_validate(item))
            except ValueError as e:
                logger.warning(f"Skipping invalid feature in {project_path}: {e}")
        return features

    async def _update(self, feature_id: str, project_path: str, changes: dict) -> None:
        async with self._lock(project_path):
            data = await asyncio.to_thread(self._read, project_path)
            for item in data:
                if item.get("id") == feature_id:
                    item.update(changes)
                    item["updated_at"] = datetime.now(timezone.utc).isoformat()
                    break
            else:
                raise FeatureNotFoundError(feature_id)
            await asyncio.to_thread(self._write, project_path, data)

    async def update_status(
        self,
        feature_id: str,
        status: FeatureStatus,
        project_path: str,
        summary: str | None = None,
        error: str | None = None,
    ) -> None:
        status = FeatureStatus(status)
        changes: dict = {"status": status.value, "error": error}
        if summary is not None:
            changes["summary"] = summary
        if status == FeatureStatus.in_progress:
            changes["started_at"] = datetime.now(timezone.utc).isoformat()
        await self._update(feature_id, project_path, changes)
        logger.info(f"Feature {feature_id} -> {status.value}")

    async def update_worktree(
        self,
        feature_id: str,
        project_path: str,
        worktree_path: str | None,
        branch_name: str | None,
    ) -> None:
        await self._update(
            feature_id,
            project_path,
            {"worktree_path": worktree_path, "branch_name": branch_name},
        )

    async def add_feature(self, project_path: str, feature: Feature) -> Feature:
        async with self._lock(project_path):
            data = await asyncio.to_thread(self._read, project_path)
            data.append(feature.model_dump(mode="json"))
            await asyncio.to_thread(self._write, project_path, data)
        return feature
