from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from automaker.worktree import safe_name

logger = logging.getLogger(__name__)

CONTEXT_DIR = Path(".automaker") / "agents-context"


class ContextStore(ABC):
    """Free-text transcript per feature, carried across resume and follow-up runs."""

    @abstractmethod
    async def read(self, project_path: str, feature_id: str) -> str:
        ...

    @abstractmethod
    async def append(self, project_path: str, feature_id: str, text: str) -> None:
        ...

    @abstractmethod
    async def delete(self, project_path: str, feature_id: str) -> None:
        ...


class FileContextStore(ContextStore):
    @staticmethod
    def context_path(project_path: str, feature_id: str) -> Path:
        return Path(project_path) / CONTEXT_DIR / f"{safe_name(feature_id)}.md"

    async def read(self, project_path: str, feature_id: str) -> str:
        path = self.context_path(project_path, feature_id)

        def _read() -> str:
            try:
                return path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                return ""

        return await asyncio.to_thread(_read)

    async def append(self, project_path: str, feature_id: str, text: str) -> None:
        path = self.context_path(project_path, feature_id)

        def _append() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)

        await asyncio.to_thread(_append)

    async def delete(self, project_path: str, feature_id: str) -> None:
        path = self.context_path(project_path, feature_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info(f"Deleted context for feature {feature_id}")
