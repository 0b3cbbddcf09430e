from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from automaker.config import ClaudeCodeConfig
from automaker.engine import ClaudeCodeEngine, SessionLog, build_command
from automaker.errors import EngineError
from automaker.models import Feature
from automaker.registry import ExecutionRegistry

from tests.conftest import FakeContextStore, EventRecorder

PROJECT = "/projects/demo"


def _line(event: dict) -> bytes:
    return (json.dumps(event) + "\n").encode()


def _assistant(*blocks: dict) -> dict:
    return {"type": "assistant", "message": {"content": list(blocks)}}


class FakeProcess:
    def __init__(self, lines: list[bytes], returncode: int = 0, stderr: bytes = b""):
        self._lines = lines
        self._returncode = returncode
        self.returncode = None
        self.pid = 4242
        self.stdout = self._stream()
        self.stderr = MagicMock()
        self.stderr.read = AsyncMock(return_value=stderr)

    async def _stream(self):
        for line in self._lines:
            yield line

    async def wait(self):
        self.returncode = self._returncode
        return self.returncode


@pytest.fixture
def context_store():
    return FakeContextStore()


@pytest.fixture
def engine(context_store):
    return ClaudeCodeEngine(context_store, ClaudeCodeConfig(command="claude"))


# ---------------------------------------------------------------------------
# build_command
# ---------------------------------------------------------------------------

class TestBuildCommand:
    def test_defaults(self):
        cmd = build_command("do it", ClaudeCodeConfig())
        assert cmd == [
            "claude", "-p", "do it", "--output-format", "stream-json",
            "--verbose", "--dangerously-skip-permissions",
        ]

    def test_model_from_feature_overrides_config(self):
        cmd = build_command("do it", ClaudeCodeConfig(model="sonnet"), model="opus")
        assert cmd[-2:] == ["--model", "opus"]

    def test_model_from_config(self):
        cmd = build_command("do it", ClaudeCodeConfig(model="sonnet", verbose=False, skip_permissions=False))
        assert cmd == ["claude", "-p", "do it", "--output-format", "stream-json", "--model", "sonnet"]


# ---------------------------------------------------------------------------
# Stream handling
# ---------------------------------------------------------------------------

class TestHandleEvent:
    async def test_text_and_tools_go_to_transcript_and_events(self, engine, context_store):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        events = EventRecorder()
        session = SessionLog(feature_id="A")

        await engine._handle_event(
            _assistant({"type": "text", "text": "Reading files"}, {"type": "tool_use", "name": "Read", "input": {}}),
            session, execution, events,
        )

        assert context_store.texts[(PROJECT, "A")] == "Reading files\n🔧 Tool: Read\n"
        assert events.of_type("auto_mode_progress")[0]["content"] == "Reading files\n🔧 Tool: Read\n"
        assert session.tool_uses == [{"tool": "Read", "input": {}}]

    async def test_inactive_execution_writes_nothing(self, engine, context_store):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        registry.release("A")
        events = EventRecorder()

        await engine._handle_event(
            _assistant({"type": "text", "text": "late output"}), SessionLog(feature_id="A"), execution, events,
        )

        assert context_store.texts == {}
        assert events.events == []

    async def test_result_and_errors_are_recorded(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        session = SessionLog(feature_id="A")

        await engine._handle_event({"type": "error", "error": {"message": "overloaded"}}, session, execution, None)
        await engine._handle_event({"type": "result", "result": "ok", "total_cost_usd": 0.12}, session, execution, None)

        assert session.has_errors
        assert session.result["result"] == "ok"

    async def test_result_with_null_cost(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        session = SessionLog(feature_id="A")

        await engine._handle_event({"type": "result", "result": "ok", "total_cost_usd": None}, session, execution, None)

        assert session.result["result"] == "ok"


# ---------------------------------------------------------------------------
# Subprocess runs
# ---------------------------------------------------------------------------

class TestRun:
    async def test_successful_run(self, engine, context_store):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        proc = FakeProcess([
            _line(_assistant({"type": "text", "text": "Implemented login"})),
            b"not json\n",
            _line({"type": "result", "result": "All done", "is_error": False}),
        ])

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
            result = await engine.implement(Feature(id="A", description="Login"), "/work", None, execution)

        assert result.passes
        assert result.message == "All done"
        assert spawn.call_args.kwargs["cwd"] == "/work"
        assert spawn.call_args.kwargs["start_new_session"] is True
        assert "Login" in spawn.call_args.args[2]
        assert context_store.texts[(PROJECT, "A")] == "Implemented login"

    async def test_error_result_does_not_pass(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        proc = FakeProcess([_line({"type": "result", "result": "Rate limited", "is_error": True})])

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = await engine.verify(Feature(id="A"), "/work", None, execution)

        assert not result.passes
        assert result.message == "Rate limited"

    async def test_nonzero_exit_uses_stderr(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        proc = FakeProcess([], returncode=1, stderr=b"invalid api key\n")

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = await engine.implement(Feature(id="A"), "/work", None, execution)

        assert not result.passes
        assert result.message == "invalid api key"

    async def test_missing_cli(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError)):
            with pytest.raises(EngineError, match="not found"):
                await engine.implement(Feature(id="A"), "/work", None, execution)

    async def test_commit_failure_raises(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        proc = FakeProcess([_line({"type": "result", "result": "nothing to commit", "is_error": True})])

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(EngineError, match="nothing to commit"):
                await engine.commit_only(Feature(id="A"), "/work", None, execution)

    async def test_resume_prompt_carries_context_and_images(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        proc = FakeProcess([_line({"type": "result", "result": "ok"})])

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
            await engine.resume_with_context(
                Feature(id="A"), "/work", None, "previous transcript", execution, image_paths=["/tmp/ui.png"],
            )

        prompt = spawn.call_args.args[2]
        assert "previous transcript" in prompt
        assert "/tmp/ui.png" in prompt

    async def test_stderr_is_read_while_stdout_streams(self, engine):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("A", PROJECT)
        stderr_read = asyncio.Event()
        proc = FakeProcess([])

        async def read_stderr():
            stderr_read.set()
            return b"deprecation warning\n" * 1000

        async def stdout_after_stderr():
            # a CLI blocked on a full stderr pipe writes nothing more to stdout
            await stderr_read.wait()
            yield _line({"type": "result", "result": "ok"})

        proc.stderr.read = read_stderr
        proc.stdout = stdout_after_stderr()

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = await asyncio.wait_for(engine.implement(Feature(id="A"), "/work", None, execution), timeout=1.0)

        assert result.passes
        assert result.message == "ok"

    async def test_analyze_project_runs_in_project_directory(self, engine, context_store):
        registry = ExecutionRegistry()
        execution = registry.try_acquire("project-analysis-1", PROJECT)
        proc = FakeProcess([
            _line(_assistant({"type": "text", "text": "Scanning"})),
            _line({"type": "result", "result": "Wrote app_spec.txt"}),
        ])

        with patch("automaker.engine.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
            result = await engine.analyze_project(PROJECT, None, execution)

        assert result.passes
        assert result.message == "Wrote app_spec.txt"
        assert spawn.call_args.kwargs["cwd"] == PROJECT
        assert ".automaker/app_spec.txt" in spawn.call_args.args[2]
        assert context_store.texts[(PROJECT, "project-analysis-1")] == "Scanning"
