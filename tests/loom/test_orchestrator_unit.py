"""Unit tests for the Orchestrator.

GitHub, git and the agent runner are mocked; task state lives in an
InMemoryTaskStore so assertions can read back tasks, agent runs and
task logs exactly as the orchestrator left them.
"""

import asyncio
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.loom.config import AgentSettings, RepoWatchConfig
from src.loom.events.emitter import EventEmitter
from src.loom.events.models import EventType, TaskEvent
from src.loom.github.client import GitHubAPIError
from src.loom.github.models import GitHubIssue, GitHubPullRequest
from src.loom.orchestrator import Orchestrator
from src.loom.runner.agent import AgentRunResult
from src.loom.state.models import AgentRunStatus, TaskStatus
from src.loom.state.store import InMemoryTaskStore
from src.loom.workspace.git import GitCommandError


WIDGETS = RepoWatchConfig(owner="acme", repo="widgets", label="loom")
GADGETS = RepoWatchConfig(owner="acme", repo="gadgets", label="loom")


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_issue(number: int = 42, title: str = "Fix login", body: Optional[str] = "Button is dead"):
    return GitHubIssue(
        id=1000 + number,
        number=number,
        title=title,
        body=body,
        html_url=f"https://github.com/acme/widgets/issues/{number}",
    )


def _make_pr(number: int = 7, repo: str = "widgets") -> GitHubPullRequest:
    return GitHubPullRequest(
        id=9000 + number,
        number=number,
        html_url=f"https://github.com/acme/{repo}/pull/{number}",
        head_branch="loom/issue-42",
        base_branch="main",
    )


def _make_result(
    success: bool = True,
    output: str = "Changed 2 files",
    error: Optional[str] = None,
    exit_code: Optional[int] = 0,
    timed_out: bool = False,
) -> AgentRunResult:
    return AgentRunResult(
        success=success,
        output=output,
        error=error,
        exit_code=exit_code,
        duration_seconds=1.0,
        timed_out=timed_out,
    )


class RecordingEmitter(EventEmitter):
    def __init__(self):
        self.events: List[TaskEvent] = []

    async def emit(self, event: TaskEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[EventType]:
        return [event.event_type for event in self.events]


@pytest.fixture
def deps():
    """Create the orchestrator's collaborators with happy-path defaults."""
    github_client = AsyncMock()
    github_client.list_issues.return_value = [_make_issue()]
    github_client.create_pull_request.return_value = _make_pr()
    github_client.create_branch.return_value = "abc123"

    git = MagicMock()
    git.prepare_directory = AsyncMock(
        side_effect=lambda owner, repo, number: Path(f"/tmp/loom-agent/{owner}-{repo}-{number}")
    )
    git.authenticated_clone_url.side_effect = (
        lambda owner, repo: f"https://token@github.com/{owner}/{repo}.git"
    )
    git.clone = AsyncMock()
    git.checkout = AsyncMock()
    git.commit_and_push = AsyncMock(return_value=True)

    agent_runner = MagicMock()
    agent_runner.run = AsyncMock(return_value=_make_result())

    return {
        "store": InMemoryTaskStore(),
        "github_client": github_client,
        "git": git,
        "agent_runner": agent_runner,
        "repos": [WIDGETS],
        "agent": AgentSettings(model="sonnet"),
        "event_emitter": RecordingEmitter(),
    }


@pytest.fixture
def orchestrator(deps):
    return Orchestrator(**deps)


async def _task_for(store: InMemoryTaskStore, issue_number: int, repo: RepoWatchConfig = WIDGETS):
    repo_record = await store.upsert_repo(repo.owner, repo.repo, repo.label)
    return await store.find_task_by_issue(repo_record.id, issue_number)


def _comments(deps) -> List[str]:
    return [call.args[3] for call in deps["github_client"].create_comment.call_args_list]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_new_issue_runs_to_completed(orchestrator, deps):
    store = deps["store"]

    async def scenario():
        await orchestrator.poll()
        task = await _task_for(store, 42)
        runs = await store.list_agent_runs(task.id)
        logs = await store.list_task_logs(task.id)
        return task, runs, logs

    task, runs, logs = asyncio.run(scenario())

    assert task.status == TaskStatus.COMPLETED
    assert task.pr_number == 7
    assert task.pr_url == "https://github.com/acme/widgets/pull/7"
    assert task.attempt_count == 1
    assert task.title == "Fix login"
    assert task.description == "Button is dead"

    assert len(runs) == 1
    assert runs[0].status == AgentRunStatus.COMPLETED
    assert runs[0].provider == "claude"
    assert runs[0].model == "sonnet"
    assert runs[0].output == "Changed 2 files"
    assert runs[0].completed_at is not None

    assert [entry.message for entry in logs] == ["Task dispatched", "Pull request opened"]
    assert deps["event_emitter"].types == [EventType.DISPATCHED, EventType.COMPLETION]


def test_pipeline_steps_called_with_task_values(orchestrator, deps):
    asyncio.run(orchestrator.poll())

    github = deps["github_client"]
    git = deps["git"]
    workspace = Path("/tmp/loom-agent/acme-widgets-42")

    github.list_issues.assert_awaited_once_with("acme", "widgets", "loom", state="open")
    git.prepare_directory.assert_awaited_once_with("acme", "widgets", 42)
    git.clone.assert_awaited_once_with("https://token@github.com/acme/widgets.git", workspace)
    github.create_branch.assert_awaited_once_with(
        "acme", "widgets", "loom/issue-42", from_branch="main"
    )
    git.checkout.assert_awaited_once_with(workspace, "loom/issue-42", create=True)

    run_input = deps["agent_runner"].run.await_args.args[0]
    assert run_input.workspace_path == workspace
    assert run_input.branch == "loom/issue-42"
    assert run_input.issue_title == "Fix login"
    assert run_input.issue_body == "Button is dead"

    git.commit_and_push.assert_awaited_once()
    assert git.commit_and_push.await_args.args[2] == "loom/issue-42"

    pr_request = github.create_pull_request.await_args.args[2]
    assert pr_request.title == "fix: Fix login (#42)"
    assert pr_request.head_branch == "loom/issue-42"
    assert pr_request.base_branch == "main"
    assert "Changed 2 files" in pr_request.body
    assert pr_request.body.endswith("Closes #42")


def test_issue_notified_and_working_label_managed(orchestrator, deps):
    asyncio.run(orchestrator.poll())

    github = deps["github_client"]
    github.add_label.assert_awaited_once_with("acme", "widgets", 42, "loom:working")
    github.remove_label.assert_awaited_once_with("acme", "widgets", 42, "loom:working")

    comments = _comments(deps)
    assert len(comments) == 2
    assert "task #1" in comments[0]
    assert comments[1] == "✅ Done! PR opened: https://github.com/acme/widgets/pull/7"


def test_custom_base_branch_used_for_branch_and_pr(deps):
    orch = Orchestrator(**deps, base_branch="develop")

    asyncio.run(orch.poll())

    github = deps["github_client"]
    assert github.create_branch.await_args.kwargs["from_branch"] == "develop"
    assert github.create_pull_request.await_args.args[2].base_branch == "develop"


# ---------------------------------------------------------------------------
# Deduplication and retry
# ---------------------------------------------------------------------------


def test_completed_issue_is_not_processed_again(orchestrator, deps):
    async def scenario():
        await orchestrator.poll()
        await orchestrator.poll()
        return await deps["store"].list_tasks()

    tasks = asyncio.run(scenario())

    assert len(tasks) == 1
    deps["agent_runner"].run.assert_awaited_once()
    assert len(_comments(deps)) == 2


def test_in_progress_task_is_skipped(orchestrator, deps):
    store = deps["store"]

    async def scenario():
        repo = await store.upsert_repo("acme", "widgets", "loom")
        await store.create_task(repo.id, "Fix login", None, 42, status=TaskStatus.IN_PROGRESS)
        await orchestrator.poll()
        return await store.list_tasks()

    tasks = asyncio.run(scenario())

    assert len(tasks) == 1
    assert tasks[0].status == TaskStatus.IN_PROGRESS
    deps["agent_runner"].run.assert_not_awaited()
    deps["github_client"].create_comment.assert_not_awaited()


def test_failed_task_is_retried_with_same_id(orchestrator, deps):
    store = deps["store"]
    runner = deps["agent_runner"]
    runner.run.side_effect = [
        _make_result(success=False, error="compile error", exit_code=1),
        _make_result(),
    ]

    async def scenario():
        await orchestrator.poll()
        failed = await _task_for(store, 42)
        deps["github_client"].list_issues.return_value = [
            _make_issue(title="Fix login (updated)")
        ]
        await orchestrator.poll()
        retried = await _task_for(store, 42)
        runs = await store.list_agent_runs(retried.id)
        return failed, retried, runs, await store.list_tasks()

    failed, retried, runs, tasks = asyncio.run(scenario())

    assert failed.status == TaskStatus.FAILED
    assert retried.id == failed.id
    assert retried.status == TaskStatus.COMPLETED
    assert retried.attempt_count == 2
    assert retried.title == "Fix login (updated)"
    assert len(tasks) == 1
    assert [run.status for run in runs] == [AgentRunStatus.FAILED, AgentRunStatus.COMPLETED]
    assert runs[0].error == "agent: compile error"

    dispatched = [
        event for event in deps["event_emitter"].events
        if event.event_type == EventType.DISPATCHED
    ]
    assert [event.details["kind"] for event in dispatched] == ["new", "retry"]


def test_todo_task_is_claimed(orchestrator, deps):
    store = deps["store"]

    async def scenario():
        repo = await store.upsert_repo("acme", "widgets", "loom")
        queued = await store.create_task(repo.id, "Old title", None, 42)
        await orchestrator.poll()
        return queued, await store.get_task(queued.id)

    queued, task = asyncio.run(scenario())

    assert task.status == TaskStatus.COMPLETED
    assert task.attempt_count == 1
    assert deps["event_emitter"].events[0].details["kind"] == "queued"


def test_mixed_issue_states_in_one_cycle(orchestrator, deps):
    """#42 failed earlier and is retried, #43 completed earlier and is left alone."""
    store = deps["store"]

    async def scenario():
        repo = await store.upsert_repo("acme", "widgets", "loom")
        failed = await store.create_task(repo.id, "Fix login", None, 42, status=TaskStatus.IN_PROGRESS)
        await store.update_task_status(failed.id, TaskStatus.FAILED)
        done = await store.create_task(repo.id, "Add dark mode", None, 43, status=TaskStatus.IN_PROGRESS)
        await store.update_task_status(done.id, TaskStatus.COMPLETED, pr_number=3, pr_url="u")

        deps["github_client"].list_issues.return_value = [
            _make_issue(42),
            _make_issue(43, title="Add dark mode"),
        ]
        await orchestrator.poll()
        return await store.get_task(failed.id), await store.get_task(done.id)

    retried, untouched = asyncio.run(scenario())

    assert retried.status == TaskStatus.COMPLETED
    assert retried.pr_number == 7
    assert untouched.status == TaskStatus.COMPLETED
    assert untouched.pr_number == 3
    assert deps["agent_runner"].run.await_count == 1


# ---------------------------------------------------------------------------
# Pipeline failures
# ---------------------------------------------------------------------------


def test_agent_timeout_fails_task(orchestrator, deps):
    store = deps["store"]
    deps["agent_runner"].run.return_value = _make_result(
        success=False,
        output="partial work",
        error="timeout",
        exit_code=None,
        timed_out=True,
    )

    async def scenario():
        await orchestrator.poll()
        task = await _task_for(store, 42)
        return task, await store.list_agent_runs(task.id), await store.list_task_logs(task.id)

    task, runs, logs = asyncio.run(scenario())

    assert task.status == TaskStatus.FAILED
    assert task.pr_number is None
    assert runs[0].status == AgentRunStatus.FAILED
    assert runs[0].error == "agent: timeout"
    assert runs[0].output == "partial work"
    assert logs[-1].metadata == {"stage": "agent", "error": "agent: timeout"}

    assert deps["event_emitter"].types == [
        EventType.DISPATCHED,
        EventType.TIMEOUT,
        EventType.ERROR,
    ]
    assert _comments(deps)[-1] == "❌ Loom failed to process this issue: agent: timeout"
    deps["git"].commit_and_push.assert_not_awaited()
    deps["github_client"].create_pull_request.assert_not_awaited()
    deps["github_client"].remove_label.assert_awaited_once()


def test_nonzero_exit_without_error_text(orchestrator, deps):
    deps["agent_runner"].run.return_value = _make_result(
        success=False, output="", error=None, exit_code=3
    )

    asyncio.run(orchestrator.poll())

    assert _comments(deps)[-1].endswith("agent: Exit code 3")


@pytest.mark.parametrize(
    "failing_step, stage",
    [
        ("clone", "workspace"),
        ("checkout", "branch"),
        ("commit_and_push", "submit"),
    ],
)
def test_git_step_failure_stage(deps, failing_step, stage):
    getattr(deps["git"], failing_step).side_effect = GitCommandError(
        [failing_step], 128, "fatal: boom"
    )
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        task = await _task_for(deps["store"], 42)
        return task, await deps["store"].list_agent_runs(task.id)

    task, runs = asyncio.run(scenario())

    assert task.status == TaskStatus.FAILED
    assert runs[0].status == AgentRunStatus.FAILED
    assert runs[0].error.startswith(f"{stage}: ")
    assert deps["event_emitter"].events[-1].details["stage"] == stage


def test_clone_failure_skips_agent(deps):
    deps["git"].clone.side_effect = GitCommandError(["clone"], 128, "not found")
    orch = Orchestrator(**deps)

    asyncio.run(orch.poll())

    deps["agent_runner"].run.assert_not_awaited()


def test_pull_request_failure_fails_task(deps):
    deps["github_client"].create_pull_request.side_effect = GitHubAPIError(
        "Validation Failed", status_code=422
    )
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return await _task_for(deps["store"], 42)

    task = asyncio.run(scenario())

    assert task.status == TaskStatus.FAILED
    assert "submit: Validation Failed" in _comments(deps)[-1]


def test_remote_branch_failure_is_tolerated(deps):
    deps["github_client"].create_branch.side_effect = GitHubAPIError(
        "Reference already exists", status_code=422
    )
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return await _task_for(deps["store"], 42)

    assert asyncio.run(scenario()).status == TaskStatus.COMPLETED
    deps["git"].checkout.assert_awaited_once()


def test_notification_failures_are_not_fatal(deps):
    github = deps["github_client"]
    github.add_label.side_effect = GitHubAPIError("label boom", status_code=500)
    github.create_comment.side_effect = GitHubAPIError("comment boom", status_code=500)
    github.remove_label.side_effect = GitHubAPIError("remove boom", status_code=500)
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return await _task_for(deps["store"], 42)

    task = asyncio.run(scenario())

    assert task.status == TaskStatus.COMPLETED
    assert deps["event_emitter"].types[-1] == EventType.COMPLETION


def test_run_update_failure_after_completion_keeps_success(deps):
    store = deps["store"]
    original_update_run = store.update_agent_run
    calls = []

    async def flaky_update_run(run_id, **fields):
        calls.append(fields)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return await original_update_run(run_id, **fields)

    store.update_agent_run = flaky_update_run
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        task = await _task_for(store, 42)
        runs = await store.list_agent_runs(task.id)
        logs = await store.list_task_logs(task.id)
        return task, runs, logs

    task, runs, logs = asyncio.run(scenario())

    assert task.status == TaskStatus.COMPLETED
    assert task.pr_number == 7
    assert runs[0].status == AgentRunStatus.COMPLETED
    assert runs[0].completed_at is not None
    assert runs[0].error is None

    comments = _comments(deps)
    assert len(comments) == 2
    assert comments[1] == "✅ Done! PR opened: https://github.com/acme/widgets/pull/7"
    assert not any("failed" in comment for comment in comments)
    assert [entry.message for entry in logs] == ["Task dispatched", "Pull request opened"]
    assert deps["event_emitter"].types == [EventType.DISPATCHED, EventType.COMPLETION]


def test_completion_write_failure_marks_task_failed(deps):
    store = deps["store"]
    original_update_status = store.update_task_status

    async def failing_update_status(task_id, status, **fields):
        if status == TaskStatus.COMPLETED:
            raise RuntimeError("database went away")
        return await original_update_status(task_id, status, **fields)

    store.update_task_status = failing_update_status
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        task = await _task_for(store, 42)
        return task, await store.list_agent_runs(task.id)

    task, runs = asyncio.run(scenario())

    assert task.status == TaskStatus.FAILED
    assert runs[0].status == AgentRunStatus.FAILED
    assert runs[0].error == "record: database went away"
    assert _comments(deps)[-1].endswith("record: database went away")
    assert deps["event_emitter"].types[-1] == EventType.ERROR


def test_emitter_failure_is_not_fatal(deps):
    emitter = AsyncMock()
    emitter.emit.side_effect = RuntimeError("sink down")
    deps["event_emitter"] = emitter
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return await _task_for(deps["store"], 42)

    assert asyncio.run(scenario()).status == TaskStatus.COMPLETED


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


def test_failed_issue_does_not_block_next_issue(deps):
    deps["github_client"].list_issues.return_value = [_make_issue(42), _make_issue(43)]
    deps["git"].clone.side_effect = [GitCommandError(["clone"], 128, "boom"), None]
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return await _task_for(deps["store"], 42), await _task_for(deps["store"], 43)

    first, second = asyncio.run(scenario())

    assert first.status == TaskStatus.FAILED
    assert second.status == TaskStatus.COMPLETED


def test_listing_failure_skips_only_that_repository(deps):
    async def list_issues(owner, repo, label, state="open"):
        if repo == "widgets":
            raise GitHubAPIError("Server Error", status_code=500)
        return [_make_issue(5)]

    deps["github_client"].list_issues.side_effect = list_issues
    deps["repos"] = [WIDGETS, GADGETS]
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return await _task_for(deps["store"], 5, GADGETS)

    task = asyncio.run(scenario())

    assert task.status == TaskStatus.COMPLETED
    deps["git"].prepare_directory.assert_awaited_once_with("acme", "gadgets", 5)


def test_same_issue_number_in_two_repositories(deps):
    deps["repos"] = [WIDGETS, GADGETS]
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return (
            await _task_for(deps["store"], 42, WIDGETS),
            await _task_for(deps["store"], 42, GADGETS),
        )

    widgets_task, gadgets_task = asyncio.run(scenario())

    assert widgets_task.id != gadgets_task.id
    assert widgets_task.repo_id != gadgets_task.repo_id
    assert deps["agent_runner"].run.await_count == 2


def test_task_creation_failure_moves_to_next_issue(deps):
    # Empty titles are rejected by the store
    deps["github_client"].list_issues.return_value = [
        _make_issue(41, title=""),
        _make_issue(42),
    ]
    orch = Orchestrator(**deps)

    async def scenario():
        await orch.poll()
        return await deps["store"].list_tasks()

    tasks = asyncio.run(scenario())

    assert [task.github_issue_id for task in tasks] == [42]
    assert tasks[0].status == TaskStatus.COMPLETED


# ---------------------------------------------------------------------------
# Loop lifecycle
# ---------------------------------------------------------------------------


def test_start_and_stop(deps):
    deps["github_client"].list_issues.return_value = []
    orch = Orchestrator(**deps, poll_interval_seconds=0.01)

    async def scenario():
        orch.start()
        assert orch.is_running
        await asyncio.sleep(0.05)
        orch.stop()
        await asyncio.wait_for(orch.wait_stopped(), timeout=1.0)

    asyncio.run(scenario())

    assert not orch.is_running
    assert deps["github_client"].list_issues.await_count >= 2


def test_stop_interrupts_sleep(deps):
    deps["github_client"].list_issues.return_value = []
    orch = Orchestrator(**deps, poll_interval_seconds=3600)

    async def scenario():
        orch.start()
        await asyncio.sleep(0.01)
        orch.stop()
        await asyncio.wait_for(orch.wait_stopped(), timeout=1.0)

    asyncio.run(scenario())

    assert deps["github_client"].list_issues.await_count == 1


def test_loop_survives_cycle_failure(deps):
    orch = Orchestrator(**deps, poll_interval_seconds=0.01)
    cycles = []

    async def failing_poll():
        cycles.append(1)
        raise RuntimeError("cycle exploded")

    orch.poll = failing_poll

    async def scenario():
        orch.start()
        await asyncio.sleep(0.05)
        orch.stop()
        await asyncio.wait_for(orch.wait_stopped(), timeout=1.0)

    asyncio.run(scenario())

    assert len(cycles) >= 2


def test_start_twice_keeps_one_loop(deps):
    deps["github_client"].list_issues.return_value = []
    orch = Orchestrator(**deps, poll_interval_seconds=3600)

    async def scenario():
        orch.start()
        first = orch._loop_task
        orch.start()
        second = orch._loop_task
        orch.stop()
        await orch.wait_stopped()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is second
