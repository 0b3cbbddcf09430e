"""Git worktree isolation for features.

Each isolated feature gets ``.automaker/worktrees/<feature_id>`` on branch
``feature/<feature_id>``. The branch it was forked from is recorded in git
config (``branch.<name>.automakerBase``) so merges and diffs know their base.
Mutating commands on one repository are serialized with a lock because
``git worktree add`` and merges both touch the main checkout's refs.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from automaker.errors import WorktreeError
from automaker.models import ChangedFile, Feature, FileDiff, MergeResult, RemoveResult, WorktreeInfo, WorktreeStatus

logger = logging.getLogger(__name__)

WORKTREES_DIR = Path(".automaker") / "worktrees"
BRANCH_PREFIX = "feature/"
BASE_CONFIG_KEY = "automakerBase"
GIT_TIMEOUT = 60.0


class WorktreeManager(ABC):
    @abstractmethod
    async def is_git_repo(self, path: str) -> bool:
        ...

    @abstractmethod
    async def create_worktree(self, project_path: str, feature: Feature) -> WorktreeInfo:
        ...

    @abstractmethod
    async def remove_worktree(self, project_path: str, feature_id: str, delete_branch: bool = True) -> RemoveResult:
        ...

    @abstractmethod
    async def merge_worktree(
        self,
        project_path: str,
        feature_id: str,
        cleanup: bool = True,
        squash: bool = False,
    ) -> MergeResult:
        ...

    @abstractmethod
    async def get_worktree_info(self, project_path: str, feature_id: str) -> WorktreeInfo | None:
        ...

    @abstractmethod
    async def get_worktree_status(self, worktree_path: str) -> WorktreeStatus:
        ...

    @abstractmethod
    async def get_all_feature_worktrees(self, project_path: str) -> list[WorktreeInfo]:
        ...

    @abstractmethod
    async def get_file_diffs(self, worktree_path: str) -> list[FileDiff]:
        ...

    @abstractmethod
    async def get_file_diff(self, worktree_path: str, file_path: str) -> FileDiff:
        ...


async def _git(*args: str, cwd: str | Path, timeout: float = GIT_TIMEOUT) -> subprocess.CompletedProcess:
    cmd = ["git", *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise WorktreeError(f"Could not run git in {cwd}: {e}") from e
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise WorktreeError(f"git {args[0]} timed out after {timeout}s in {cwd}")
    return subprocess.CompletedProcess(
        args=cmd,
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def safe_name(feature_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", feature_id).strip("-.") or "feature"


def _parse_worktree_list(output: str) -> list[dict[str, str]]:
    worktrees: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                worktrees.append(current)
                current = {}
            continue
        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):].replace("refs/heads/", "", 1)
    if current:
        worktrees.append(current)
    return worktrees


def _split_diff(output: str) -> dict[str, str]:
    """Split a multi-file ``git diff`` into per-file chunks keyed by new path."""
    chunks: dict[str, str] = {}
    for chunk in re.split(r"(?m)^(?=diff --git )", output):
        if not chunk.startswith("diff --git "):
            continue
        header = chunk.splitlines()[0]
        match = re.match(r"diff --git a/.+? b/(.+)$", header)
        if match:
            chunks[match.group(1)] = chunk
    return chunks


class GitWorktreeManager(WorktreeManager):
    def __init__(self, git_timeout: float = GIT_TIMEOUT):
        self.git_timeout = git_timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, project_path: str) -> asyncio.Lock:
        key = os.path.realpath(project_path)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _run(self, *args: str, cwd: str | Path) -> subprocess.CompletedProcess:
        return await _git(*args, cwd=cwd, timeout=self.git_timeout)

    async def _check(self, *args: str, cwd: str | Path) -> str:
        result = await self._run(*args, cwd=cwd)
        if result.returncode != 0:
            raise WorktreeError(
                f"git {' '.join(args)} failed (rc={result.returncode}): "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        return result.stdout

    @staticmethod
    def worktree_path(project_path: str, feature_id: str) -> Path:
        return Path(project_path).resolve() / WORKTREES_DIR / safe_name(feature_id)

    @staticmethod
    def branch_name(feature_id: str) -> str:
        return f"{BRANCH_PREFIX}{safe_name(feature_id)}"

    async def is_git_repo(self, path: str) -> bool:
        try:
            result = await self._run("rev-parse", "--is-inside-work-tree", cwd=path)
        except WorktreeError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    async def _current_branch(self, cwd: str | Path) -> str | None:
        result = await self._run("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
        branch = result.stdout.strip()
        if result.returncode != 0 or not branch or branch == "HEAD":
            return None
        return branch

    async def _base_branch(self, cwd: str | Path, branch: str) -> str | None:
        result = await self._run("config", "--get", f"branch.{branch}.{BASE_CONFIG_KEY}", cwd=cwd)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    async def _branch_exists(self, cwd: str | Path, branch: str) -> bool:
        result = await self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=cwd)
        return result.returncode == 0

    async def _list(self, project_path: str) -> list[dict[str, str]]:
        output = await self._check("worktree", "list", "--porcelain", cwd=project_path)
        return _parse_worktree_list(output)

    async def _find(self, project_path: str, path: Path) -> dict[str, str] | None:
        target = os.path.realpath(path)
        for entry in await self._list(project_path):
            if os.path.realpath(entry.get("worktree", "")) == target:
                return entry
        return None

    async def _info_from_entry(self, project_path: str, feature_id: str, entry: dict[str, str]) -> WorktreeInfo:
        branch = entry.get("branch", "")
        base = await self._base_branch(project_path, branch) if branch else None
        return WorktreeInfo(
            feature_id=feature_id,
            worktree_path=entry.get("worktree", ""),
            branch_name=branch,
            base_branch=base,
            commit=entry.get("HEAD", ""),
        )

    async def create_worktree(self, project_path: str, feature: Feature) -> WorktreeInfo:
        path = self.worktree_path(project_path, feature.id)
        branch = self.branch_name(feature.id)
        async with self._lock(project_path):
            existing = await self._find(project_path, path)
            if existing is not None:
                logger.info(f"Reusing existing worktree for {feature.id} at {path}")
                return await self._info_from_entry(project_path, feature.id, existing)

            base = await self._current_branch(project_path)
            if base is None:
                raise WorktreeError(f"Cannot create worktree for {feature.id}: {project_path} has a detached HEAD")

            path.parent.mkdir(parents=True, exist_ok=True)
            if await self._branch_exists(project_path, branch):
                await self._check("worktree", "add", str(path), branch, cwd=project_path)
            else:
                await self._check("worktree", "add", "-b", branch, str(path), base, cwd=project_path)
                await self._check("config", f"branch.{branch}.{BASE_CONFIG_KEY}", base, cwd=project_path)

        logger.info(f"Created worktree for {feature.id} at {path} (branch={branch})")
        entry = await self._find(project_path, path) or {"worktree": str(path), "branch": branch}
        return await self._info_from_entry(project_path, feature.id, entry)

    async def remove_worktree(self, project_path: str, feature_id: str, delete_branch: bool = True) -> RemoveResult:
        if not await self.is_git_repo(project_path):
            return RemoveResult()
        path = self.worktree_path(project_path, feature_id)
        branch = self.branch_name(feature_id)
        removed_path = None
        deleted_branch = None
        async with self._lock(project_path):
            await self._run("worktree", "prune", cwd=project_path)
            if await self._find(project_path, path) is not None:
                await self._check("worktree", "remove", "--force", str(path), cwd=project_path)
                removed_path = str(path)
            if delete_branch and await self._branch_exists(project_path, branch):
                await self._check("branch", "-D", branch, cwd=project_path)
                deleted_branch = branch
        logger.info(f"Removed worktree for {feature_id} (path={removed_path}, branch={deleted_branch})")
        return RemoveResult(removed_path=removed_path, deleted_branch=deleted_branch)

    async def merge_worktree(
        self,
        project_path: str,
        feature_id: str,
        cleanup: bool = True,
        squash: bool = False,
    ) -> MergeResult:
        """Merge a feature branch into its base branch.

        A worktree with uncommitted changes is refused. On conflict the merge
        is aborted so the base branch is left clean for later merges.
        """
        info = await self.get_worktree_info(project_path, feature_id)
        if info is None:
            raise WorktreeError(f"No worktree found for feature {feature_id}")

        dirty = await self._check("status", "--porcelain", cwd=info.worktree_path)
        if dirty.strip():
            raise WorktreeError(f"Worktree for {feature_id} has uncommitted changes")

        branch = info.branch_name
        into = info.base_branch or await self._current_branch(project_path)
        if into is None:
            raise WorktreeError(f"Cannot determine base branch for {branch}")

        async with self._lock(project_path):
            await self._check("checkout", into, cwd=project_path)
            if squash:
                merge = await self._run("merge", "--squash", branch, cwd=project_path)
            else:
                merge = await self._run("merge", "--no-ff", "-m", f"Merge {branch} into {into}", branch, cwd=project_path)
            if merge.returncode != 0:
                logger.warning(f"Merge of {branch} failed, aborting merge to restore {into}")
                if squash:
                    await self._run("reset", "--merge", cwd=project_path)
                else:
                    await self._run("merge", "--abort", cwd=project_path)
                raise WorktreeError(
                    f"git merge {branch} failed (rc={merge.returncode}): "
                    f"{merge.stderr.strip() or merge.stdout.strip()}"
                )
            if squash:
                staged = await self._run("diff", "--cached", "--quiet", cwd=project_path)
                if staged.returncode != 0:
                    await self._check("commit", "-m", f"feat({feature_id}): squash merge {branch}", cwd=project_path)

        logger.info(f"Merged {branch} into {into}")
        if cleanup:
            await self.remove_worktree(project_path, feature_id, delete_branch=True)
        return MergeResult(merged_branch=branch, into_branch=into)

    async def get_worktree_info(self, project_path: str, feature_id: str) -> WorktreeInfo | None:
        if not await self.is_git_repo(project_path):
            return None
        entry = await self._find(project_path, self.worktree_path(project_path, feature_id))
        if entry is None:
            return None
        return await self._info_from_entry(project_path, feature_id, entry)

    async def get_all_feature_worktrees(self, project_path: str) -> list[WorktreeInfo]:
        if not await self.is_git_repo(project_path):
            return []
        root = os.path.realpath(Path(project_path) / WORKTREES_DIR)
        result = []
        for entry in await self._list(project_path):
            path = os.path.realpath(entry.get("worktree", ""))
            if os.path.dirname(path) == root:
                result.append(await self._info_from_entry(project_path, os.path.basename(path), entry))
        return result

    async def get_worktree_status(self, worktree_path: str) -> WorktreeStatus:
        branch = await self._current_branch(worktree_path) or ""
        base = await self._base_branch(worktree_path, branch) if branch else None

        changed = []
        porcelain = await self._check("status", "--porcelain", cwd=worktree_path)
        for line in porcelain.splitlines():
            if len(line) > 3:
                changed.append(ChangedFile(path=line[3:], status=line[:2].strip()))

        commits_ahead = 0
        log_range = ["-n", "10"]
        if base:
            count = await self._run("rev-list", "--count", f"{base}..HEAD", cwd=worktree_path)
            if count.returncode == 0:
                commits_ahead = int(count.stdout.strip() or 0)
            log_range.append(f"{base}..HEAD")
        log = await self._run("log", "--oneline", *log_range, cwd=worktree_path)
        recent = log.stdout.strip().splitlines() if log.returncode == 0 else []

        return WorktreeStatus(
            worktree_path=worktree_path,
            branch_name=branch,
            base_branch=base,
            has_changes=bool(changed),
            changed_files=changed,
            commits_ahead=commits_ahead,
            recent_commits=recent,
        )

    async def _diff_ref(self, worktree_path: str) -> str:
        branch = await self._current_branch(worktree_path)
        base = await self._base_branch(worktree_path, branch) if branch else None
        return base or "HEAD"

    async def get_file_diffs(self, worktree_path: str) -> list[FileDiff]:
        ref = await self._diff_ref(worktree_path)
        names = await self._check("diff", "--name-status", ref, cwd=worktree_path)
        chunks = _split_diff(await self._check("diff", ref, cwd=worktree_path))

        diffs = []
        for line in names.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            path = parts[-1]
            diffs.append(FileDiff(path=path, status=parts[0][:1], diff=chunks.get(path, "")))

        untracked = await self._check("ls-files", "--others", "--exclude-standard", cwd=worktree_path)
        for path in untracked.splitlines():
            if path.strip():
                diffs.append(FileDiff(path=path, status="?"))
        return diffs

    async def get_file_diff(self, worktree_path: str, file_path: str) -> FileDiff:
        ref = await self._diff_ref(worktree_path)
        tracked = await self._run("ls-files", "--error-unmatch", file_path, cwd=worktree_path)
        if tracked.returncode != 0 and (Path(worktree_path) / file_path).exists():
            # --no-index exits 1 when the files differ
            result = await self._run("diff", "--no-index", "--", os.devnull, file_path, cwd=worktree_path)
            if result.returncode > 1:
                raise WorktreeError(f"git diff failed for {file_path}: {result.stderr.strip()}")
            return FileDiff(path=file_path, status="?", diff=result.stdout)
        diff = await self._check("diff", ref, "--", file_path, cwd=worktree_path)
        return FileDiff(path=file_path, status="M" if diff else "", diff=diff)
