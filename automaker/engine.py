"""Agent-driven implementation via the Claude Code CLI.

The orchestrator only depends on ``ExecutionEngine``. ``ClaudeCodeEngine``
launches ``claude -p ... --output-format stream-json`` in the feature's work
path, mirrors the stream into the feature transcript and into progress
events, and kills the process group when the execution is cancelled.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from automaker.config import ClaudeCodeConfig
from automaker.context_store import ContextStore
from automaker.errors import EngineError
from automaker.events import emit
from automaker.models import EngineResult, EventSink, EventType, Feature
from automaker.registry import Execution

logger = logging.getLogger(__name__)

STREAM_LIMIT = 10 * 1024 * 1024  # stream-json can emit very long lines
TERMINATE_GRACE_SECONDS = 5.0


class ExecutionEngine(ABC):
    @abstractmethod
    async def implement(self, feature: Feature, work_path: str, sink: EventSink | None, execution: Execution) -> EngineResult:
        ...

    @abstractmethod
    async def verify(self, feature: Feature, work_path: str, sink: EventSink | None, execution: Execution) -> EngineResult:
        ...

    @abstractmethod
    async def resume_with_context(
        self,
        feature: Feature,
        work_path: str,
        sink: EventSink | None,
        context: str,
        execution: Execution,
        image_paths: list[str] | None = None,
    ) -> EngineResult:
        ...

    @abstractmethod
    async def commit_only(self, feature: Feature, work_path: str, sink: EventSink | None, execution: Execution) -> None:
        ...

    @abstractmethod
    async def analyze_project(self, project_path: str, sink: EventSink | None, execution: Execution) -> EngineResult:
        ...


IMPLEMENT_PROMPT = """\
Implement the following feature in this repository.

Category: {category}
Description: {description}
{steps}
When complete:
1. {test_step}
2. Commit the code with message format: feat({feature_id}): [description]
3. Finish with a short summary of what changed
"""

VERIFY_PROMPT = """\
Verify that the following feature is fully implemented and its tests pass.
Do not add new functionality; fix only what is needed for the tests to pass.

Description: {description}
{steps}"""

RESUME_PROMPT = """\
Continue implementing the following feature. The transcript of the work so
far is below; pick up where it left off and do not redo finished steps.

Description: {description}
{images}
--- Previous work ---
{context}
"""

COMMIT_PROMPT = """\
Commit all current changes for the feature below. Do not change any code.
Use the commit message format: feat({feature_id}): [description]

Description: {description}
"""

ANALYZE_PROMPT = """\
Analyze this project. Do not change any source code.

Scan the repository and write a concise specification of the application to
.automaker/app_spec.txt, replacing the file if it exists. Cover:
- what the application does and who uses it
- the tech stack, frameworks and build tooling
- the main modules and how they fit together
- how tests are run

Finish with a one-paragraph summary of the project.
"""


def _format_steps(feature: Feature) -> str:
    if not feature.steps:
        return ""
    return "Steps:\n" + "\n".join(f"- {s}" for s in feature.steps) + "\n"


def build_command(prompt: str, config: ClaudeCodeConfig, model: str | None = None) -> list[str]:
    cmd = [config.command, "-p", prompt, "--output-format", "stream-json"]
    if config.verbose:
        cmd.append("--verbose")
    if config.skip_permissions:
        cmd.append("--dangerously-skip-permissions")
    model = model or config.model
    if model:
        cmd.extend(["--model", model])
    return cmd


@dataclass
class SessionLog:
    feature_id: str
    events: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    tool_uses: list = field(default_factory=list)
    assistant_messages: list = field(default_factory=list)
    result: dict | None = None

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0


class ClaudeCodeEngine(ExecutionEngine):
    def __init__(self, context_store: ContextStore, config: ClaudeCodeConfig | None = None):
        self.context_store = context_store
        self.config = config or ClaudeCodeConfig()

    async def implement(self, feature, work_path, sink, execution):
        test_step = (
            "Skip running tests; they are not required for this feature"
            if feature.skip_tests
            else "Run the tests and make sure they pass"
        )
        prompt = IMPLEMENT_PROMPT.format(
            category=feature.category or "general",
            description=feature.description,
            steps=_format_steps(feature),
            test_step=test_step,
            feature_id=feature.id,
        )
        return await self._run(prompt, feature, work_path, sink, execution)

    async def verify(self, feature, work_path, sink, execution):
        prompt = VERIFY_PROMPT.format(description=feature.description, steps=_format_steps(feature))
        return await self._run(prompt, feature, work_path, sink, execution)

    async def resume_with_context(self, feature, work_path, sink, context, execution, image_paths=None):
        images = ""
        if image_paths:
            images = "Attached images:\n" + "\n".join(f"- {p}" for p in image_paths) + "\n"
        prompt = RESUME_PROMPT.format(description=feature.description, images=images, context=context)
        return await self._run(prompt, feature, work_path, sink, execution)

    async def commit_only(self, feature, work_path, sink, execution):
        prompt = COMMIT_PROMPT.format(feature_id=feature.id, description=feature.description)
        result = await self._run(prompt, feature, work_path, sink, execution)
        if not result.passes:
            raise EngineError(f"Commit failed for {feature.id}: {result.message}")

    async def analyze_project(self, project_path, sink, execution):
        analysis = Feature(id=execution.feature_id, category="Project Analysis")
        return await self._run(ANALYZE_PROMPT, analysis, project_path, sink, execution)

    async def _run(
        self,
        prompt: str,
        feature: Feature,
        work_path: str,
        sink: EventSink | None,
        execution: Execution,
    ) -> EngineResult:
        cmd = build_command(prompt, self.config, model=feature.model)
        logger.info(f"[{feature.id}] Launching Claude Code in {work_path}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=work_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise EngineError(f"Claude Code CLI '{self.config.command}' not found on PATH") from e

        session = SessionLog(feature_id=feature.id)
        watcher = asyncio.create_task(self._terminate_on_cancel(proc, execution))
        # read stderr alongside stdout so a chatty CLI cannot fill the pipe and stall
        stderr_reader = asyncio.create_task(proc.stderr.read())
        try:
            async for line in proc.stdout:
                text = line.decode(errors="replace").strip()
                if not text:
                    continue
                try:
                    event = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug(f"[{feature.id}] Non-JSON line from Claude Code: {text[:200]}")
                    continue
                await self._handle_event(event, session, execution, sink)
            await proc.wait()
            stderr = await stderr_reader
        finally:
            watcher.cancel()
            stderr_reader.cancel()
            if proc.returncode is None:
                # interrupted (e.g. by a timeout) before the CLI exited
                _kill_group(proc)

        if execution.cancelled:
            logger.info(f"[{feature.id}] Claude Code run stopped")
            return EngineResult(passes=False, message="Feature stopped")

        result = session.result or {}
        message = result.get("result") or ""
        passes = proc.returncode == 0 and not result.get("is_error", False)
        if proc.returncode != 0 and not message:
            message = stderr.decode(errors="replace").strip() or f"Claude Code exit code: {proc.returncode}"
        logger.info(
            f"[{feature.id}] Claude Code finished: rc={proc.returncode}, passes={passes}, "
            f"events={len(session.events)}, tools={len(session.tool_uses)}"
        )
        return EngineResult(passes=passes, message=message)

    async def _handle_event(self, event: dict, session: SessionLog, execution: Execution, sink: EventSink | None):
        session.events.append(event)
        event_type = event.get("type", "")
        chunks: list[str] = []

        if event_type == "assistant":
            for block in event.get("message", {}).get("content", []):
                if block.get("type") == "text" and block.get("text"):
                    session.assistant_messages.append(block["text"])
                    chunks.append(block["text"])
                elif block.get("type") == "tool_use":
                    tool_name = block.get("name", "")
                    session.tool_uses.append({"tool": tool_name, "input": block.get("input", {})})
                    chunks.append(f"\n🔧 Tool: {tool_name}\n")
        elif event_type == "error":
            session.errors.append(event)
            logger.error(f"[{session.feature_id}] Error: {event.get('error', {})}")
        elif event_type == "result":
            session.result = event
            cost = event.get("total_cost_usd") or event.get("cost_usd") or 0
            logger.info(f"[{session.feature_id}] Result: cost=${cost:.4f}")

        if not chunks or not execution.is_active():
            return
        content = "".join(chunks)
        await self.context_store.append(execution.project_path, session.feature_id, content)
        emit(sink, execution.project_path, EventType.progress, feature_id=session.feature_id, content=content)

    @staticmethod
    async def _terminate_on_cancel(proc: asyncio.subprocess.Process, execution: Execution) -> None:
        """Terminate the CLI's process group once the execution is cancelled.

        The process runs in its own session, so signalling the group also
        reaches grandchild processes spawned by the agent.
        """
        await execution.cancel_event.wait()
        if proc.returncode is not None:
            return
        logger.info(f"Terminating Claude Code for {execution.feature_id} (pid={proc.pid})")
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except OSError:
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Force killing Claude Code for {execution.feature_id} (pid={proc.pid})")
            _kill_group(proc)
            await proc.wait()


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
