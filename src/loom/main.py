"""FastAPI application entry point for the Loom engine.

The application hosts the orchestrator's poll loop for the lifetime of
the process and exposes liveness, readiness and Prometheus endpoints.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import LoomSettings, get_settings
from .events.emitter import EventSinkType, create_event_emitter
from .events.metrics import generate_metrics_output
from .github.client import GitHubClient
from .orchestrator import Orchestrator
from .runner.agent import AgentRunner
from .state.repository import PostgresTaskStore
from .state.store import InMemoryTaskStore
from .workspace.git import GitWorkspace

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: Optional[LoomSettings] = None
orchestrator: Optional[Orchestrator] = None
github_client: Optional[GitHubClient] = None
store: Optional[Union[InMemoryTaskStore, PostgresTaskStore]] = None


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: LoomSettings) -> None:
    """Log configuration values with secrets redacted."""
    agent = settings.agent

    logger.info("Loom configuration:")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  GitHub Max Retries: {settings.github_max_retries}")
    for repo in settings.repo_configs:
        logger.info(f"  Watching: {repo.full_name} (label: {repo.label})")
    logger.info(f"  Working Label: {settings.working_label}")
    logger.info(f"  Base Branch: {settings.base_branch}")
    logger.info(f"  Poll Interval: {settings.poll_interval_ms}ms")
    logger.info(f"  Work Dir: {settings.work_dir}")
    logger.info(f"  Agent Provider: {agent.provider.value}")
    logger.info(f"  Agent Binary: {agent.executable}")
    logger.info(f"  Agent Model: {agent.model or '(default)'}")
    logger.info(f"  Agent Extra Args: {agent.extra_args}")
    logger.info(f"  Agent Timeout: {settings.agent_timeout_ms}ms")
    if settings.database_url:
        logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    else:
        logger.info("  Database URL: (unset, using in-memory store)")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


async def _build_store(
    cfg: LoomSettings,
) -> Union[InMemoryTaskStore, PostgresTaskStore]:
    """Create the task store, connecting and migrating PostgreSQL if configured."""
    if not cfg.database_url:
        logger.warning("No database configured, task state will not survive restarts")
        return InMemoryTaskStore()

    postgres_store = PostgresTaskStore(cfg.database_url)
    await postgres_store.connect()
    await postgres_store.ensure_schema()
    return postgres_store


def _build_orchestrator(
    cfg: LoomSettings,
    task_store: Union[InMemoryTaskStore, PostgresTaskStore],
    gh_client: GitHubClient,
) -> Orchestrator:
    """Wire all engine dependencies into an Orchestrator.

    Args:
        cfg: Validated engine settings.
        task_store: Connected task store.
        gh_client: Authenticated GitHub API client.

    Returns:
        Fully wired Orchestrator.
    """
    event_emitter = create_event_emitter(
        [EventSinkType.LOGGING, EventSinkType.METRICS]
    )

    return Orchestrator(
        store=task_store,
        github_client=gh_client,
        git=GitWorkspace(token=cfg.github_token, base_path=cfg.work_path),
        agent_runner=AgentRunner(),
        repos=cfg.repo_configs,
        agent=cfg.agent,
        poll_interval_seconds=cfg.poll_interval_seconds,
        working_label=cfg.working_label,
        base_branch=cfg.base_branch,
        event_emitter=event_emitter,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring and starting the poll loop
    - Graceful shutdown and cleanup
    """
    global settings, orchestrator, github_client, store

    logger.info("Loom engine starting up...")

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    _log_configuration(settings)

    store = await _build_store(settings)
    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
        max_retries=settings.github_max_retries,
    )
    orchestrator = _build_orchestrator(settings, store, github_client)
    orchestrator.start()

    logger.info("Loom engine started successfully")

    yield

    logger.info("Loom engine shutting down...")

    if orchestrator is not None:
        orchestrator.stop()
        await orchestrator.wait_stopped()

    if github_client is not None:
        await github_client.close()

    if store is not None:
        await store.close()

    logger.info("Loom engine shutdown complete")


app = FastAPI(
    title="Loom Engine",
    description="Turns labelled GitHub issues into agent-authored pull requests",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is healthy.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Ready when the task store and the GitHub API answer and the poll
    loop is running.

    Returns:
        Status and dependency health information; HTTP 503 when not ready.
    """
    database_status = "unavailable"
    if store is not None:
        try:
            database_status = "healthy" if await store.health_check() else "unhealthy"
        except Exception:
            logger.exception("Store health check failed")
            database_status = "unhealthy"

    github_status = "unavailable"
    if github_client is not None:
        github_status = "healthy" if await github_client.health_check() else "unhealthy"

    loop_status = (
        "running" if orchestrator is not None and orchestrator.is_running else "stopped"
    )

    is_ready = (
        database_status == "healthy"
        and github_status == "healthy"
        and loop_status == "running"
    )
    body = {
        "status": "ready" if is_ready else "not_ready",
        "dependencies": {
            "database": database_status,
            "github": github_status,
            "poll_loop": loop_status,
        },
    }

    if not is_ready:
        return JSONResponse(status_code=503, content=body)
    return body


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint.

    Returns:
        str: Prometheus-formatted metrics text.
    """
    return PlainTextResponse(
        generate_metrics_output(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    run_settings = get_settings()
    uvicorn.run(
        app,
        host=run_settings.host,
        port=run_settings.port,
        log_level=run_settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
