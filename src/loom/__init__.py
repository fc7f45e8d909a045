"""Loom: turns labelled GitHub issues into agent-authored pull requests.

The engine polls GitHub repositories for issues carrying a watch label,
runs a coding agent against a fresh clone for each one, and opens a pull
request with the result.

Modules:
- config: LOOM_ environment settings
- orchestrator: poll loop and per-task pipeline
- runner: coding agent subprocess execution
- github: GitHub REST client and models
- workspace: per-task git clones
- state: task persistence (in-memory or PostgreSQL)
- events: event emission and Prometheus metrics
- main: FastAPI process host
"""

__version__ = "1.0.0"
