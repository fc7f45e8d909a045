"""Engine configuration using pydantic-settings.

This module defines the LoomSettings class that reads configuration
from environment variables with the LOOM_ prefix, plus the small value
types the rest of the engine is constructed from (RepoWatchConfig,
AgentSettings).

LOOM_GITHUB_TOKEN and LOOM_WATCH_REPOS must be set for the engine to
start; everything else has a default.
"""

import shlex
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentProvider(str, Enum):
    """Supported coding agent CLIs."""

    CLAUDE = "claude"
    CUSTOM = "custom"


class RepoWatchConfig(BaseModel):
    """A repository the engine polls, and the label that marks work."""

    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class AgentSettings(BaseModel):
    """How to invoke the coding agent.

    Attributes:
        provider: Which CLI argument convention to use.
        binary: Executable name or path; the provider name when unset.
        model: Optional model name passed to the agent.
        extra_args: Additional arguments appended after the prompt.
        timeout_seconds: Wall-clock limit for one agent run.
    """

    provider: AgentProvider = AgentProvider.CLAUDE
    binary: Optional[str] = None
    model: Optional[str] = None
    extra_args: List[str] = Field(default_factory=list)
    timeout_seconds: float = Field(default=1800.0, gt=0)

    @property
    def executable(self) -> str:
        return self.binary or self.provider.value


def parse_repo_list(raw: str, default_label: str) -> List[RepoWatchConfig]:
    """Parse a comma-separated ``owner/repo[:label]`` list.

    Blank entries are ignored. The label is everything after the first
    colon, so labels may themselves contain colons.

    Raises:
        ValueError: If an entry is malformed or no repository is named.
    """
    configs = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue

        full_name, _, label = entry.partition(":")
        owner, slash, repo = full_name.strip().partition("/")
        owner = owner.strip()
        repo = repo.strip()
        if not slash or not owner or not repo or "/" in repo:
            raise ValueError(
                f"Invalid repository entry {entry!r}: expected owner/repo[:label]"
            )

        configs.append(
            RepoWatchConfig(
                owner=owner,
                repo=repo,
                label=label.strip() or default_label,
            )
        )

    if not configs:
        raise ValueError("watch_repos must name at least one repository")
    return configs


class LoomSettings(BaseSettings):
    """Engine configuration from environment variables.

    All environment variables are prefixed with LOOM_ (e.g., LOOM_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_token: GitHub API token for reading issues, pushing and opening PRs
    - watch_repos: Comma-separated owner/repo[:label] list
    """

    model_config = SettingsConfigDict(
        env_prefix="LOOM_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Transient-error retries inside the API client
    github_max_retries: int = 0

    # -------------------------------------------------------------------------
    # Watch Configuration
    # -------------------------------------------------------------------------
    watch_repos: str

    # Label used for entries in watch_repos that do not name one
    default_label: str = "loom"

    # Label added to an issue while the engine works on it
    working_label: str = "loom:working"

    # PR base and source of the remote working branch
    base_branch: str = "main"

    poll_interval_ms: int = 60000

    # -------------------------------------------------------------------------
    # Workspace Configuration
    # -------------------------------------------------------------------------
    work_dir: str = "/tmp/loom-agent"

    # -------------------------------------------------------------------------
    # Agent Configuration
    # -------------------------------------------------------------------------
    agent_provider: AgentProvider = AgentProvider.CLAUDE
    agent_binary: Optional[str] = None
    agent_model: Optional[str] = None

    # Shell-style string, split with shlex
    agent_extra_args: str = ""

    agent_timeout_ms: int = 30 * 60 * 1000

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; unset runs with the in-memory store
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("default_label", "working_label", "base_branch")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("github_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("github_max_retries cannot be negative")
        return v

    @field_validator("poll_interval_ms")
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        """Validate that the poll interval is at least one second."""
        if v < 1000:
            raise ValueError("poll_interval_ms must be at least 1000")
        return v

    @field_validator("work_dir")
    @classmethod
    def validate_work_dir(cls, v: str) -> str:
        """Validate that the work dir is an absolute path."""
        if not Path(v).is_absolute():
            raise ValueError("work_dir must be an absolute path")
        return v

    @field_validator("agent_timeout_ms")
    @classmethod
    def validate_agent_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent_timeout_ms must be at least 1")
        return v

    @field_validator("agent_binary", "agent_model", "database_url", mode="before")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that database URL has a PostgreSQL scheme when set."""
        if v is None:
            return v
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_derived_values(self) -> "LoomSettings":
        parse_repo_list(self.watch_repos, self.default_label)
        shlex.split(self.agent_extra_args)
        return self

    # -------------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------------
    @property
    def repo_configs(self) -> List[RepoWatchConfig]:
        return parse_repo_list(self.watch_repos, self.default_label)

    @property
    def agent(self) -> AgentSettings:
        return AgentSettings(
            provider=self.agent_provider,
            binary=self.agent_binary,
            model=self.agent_model,
            extra_args=shlex.split(self.agent_extra_args),
            timeout_seconds=self.agent_timeout_ms / 1000,
        )

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def work_path(self) -> Path:
        return Path(self.work_dir)


def get_settings() -> LoomSettings:
    """Create and return a LoomSettings instance.

    Returns:
        LoomSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return LoomSettings()
