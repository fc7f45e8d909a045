"""Property-based tests for the coding agent runner.

Verifies the runner contract across randomized process outcomes: exit
code semantics, output type and ordering, and argument construction.

Testing Configuration:
- Library: Hypothesis (Python)
"""

import asyncio
import tempfile
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

from hypothesis import given, settings, strategies as st

from src.loom.config import AgentProvider, AgentSettings
from src.loom.runner.agent import AgentRunInput, AgentRunner, build_args


def _make_mock_process(
    returncode: int,
    stdout_chunks: List[bytes],
    stderr_chunks: List[bytes],
):
    process = AsyncMock()
    process.returncode = returncode
    process.kill = MagicMock()

    stdout_reader = AsyncMock()
    stdout_reader.read = AsyncMock(side_effect=list(stdout_chunks) + [b""])
    stderr_reader = AsyncMock()
    stderr_reader.read = AsyncMock(side_effect=list(stderr_chunks) + [b""])

    process.stdout = stdout_reader
    process.stderr = stderr_reader
    process.wait = AsyncMock(return_value=returncode)
    return process


def _input(workspace: Path, config: AgentSettings, body: Optional[str] = "body"):
    return AgentRunInput(
        task_id=1,
        issue_title="title",
        issue_body=body,
        workspace_path=workspace,
        branch="loom/issue-1",
        config=config,
    )


safe_text = st.text(
    alphabet=st.characters(
        whitelist_categories=("L", "N", "P", "S", "Z"),
        blacklist_characters="\x00\r",
    ),
    min_size=0,
    max_size=200,
)

chunk_strategy = st.lists(
    safe_text.map(lambda t: t.encode("utf-8")),
    min_size=0,
    max_size=10,
)

arg_strategy = st.lists(
    st.text(alphabet=st.characters(whitelist_categories=("L", "N")), min_size=1, max_size=12),
    max_size=5,
)


class TestExitCodeSemantics:
    """Property: exit code 0 ↔ success=True, non-zero ↔ success=False."""

    @given(exit_code=st.integers(min_value=0, max_value=255))
    @settings(max_examples=100)
    def test_exit_code_determines_success(self, exit_code):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = AgentRunner()
            process = _make_mock_process(exit_code, [], [])
            with patch("asyncio.create_subprocess_exec", return_value=process):
                result = asyncio.run(
                    runner.run(_input(Path(tmpdir), AgentSettings()))
                )

        assert result.success is (exit_code == 0)
        assert result.exit_code == exit_code
        if exit_code == 0:
            assert result.error is None
        else:
            assert result.error


class TestOutputContract:
    """Property: output is always a str holding stdout before stderr."""

    @given(stdout_chunks=chunk_strategy, stderr_chunks=chunk_strategy)
    @settings(max_examples=100)
    def test_output_is_stdout_then_stderr(self, stdout_chunks, stderr_chunks):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = AgentRunner()
            process = _make_mock_process(0, stdout_chunks, stderr_chunks)
            with patch("asyncio.create_subprocess_exec", return_value=process):
                result = asyncio.run(
                    runner.run(_input(Path(tmpdir), AgentSettings()))
                )

        stdout = b"".join(stdout_chunks).decode("utf-8")
        stderr = b"".join(stderr_chunks).decode("utf-8")
        expected = "\n".join(part for part in (stdout, stderr) if part)

        assert isinstance(result.output, str)
        assert result.output == expected


class TestArgumentConstruction:
    """Property: extra args always trail, prompt placement follows provider."""

    @given(
        provider=st.sampled_from(list(AgentProvider)),
        model=st.one_of(st.none(), st.text(min_size=1, max_size=20)),
        extra_args=arg_strategy,
        body=st.one_of(st.none(), safe_text),
    )
    @settings(max_examples=100)
    def test_args_layout(self, provider, model, extra_args, body):
        config = AgentSettings(provider=provider, model=model, extra_args=extra_args)

        args = build_args(_input(Path("/tmp/ws"), config, body=body))

        if extra_args:
            assert args[-len(extra_args):] == extra_args

        if provider == AgentProvider.CLAUDE:
            assert args[0] == "-p"
            assert args[1].startswith("You are working on a GitHub issue.")
            head = args[: len(args) - len(extra_args)]
            assert head[2:] == (["--model", model] if model else [])
        else:
            assert args[0].startswith("You are working on a GitHub issue.")
            assert len(args) == 1 + len(extra_args)
