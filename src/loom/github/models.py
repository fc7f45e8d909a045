"""GitHub API data models.

Typed views over the subset of GitHub REST payloads the engine uses:
issues, labels, pull requests and repositories, plus the request model
for opening a pull request.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GitHubLabel(BaseModel):
    """A label attached to an issue."""

    id: int = 0
    name: str = ""
    color: str = ""
    description: Optional[str] = None


class GitHubIssue(BaseModel):
    """An issue as returned by the issues API.

    Attributes:
        id: Global GitHub issue id.
        number: Issue number within the repository.
        title: Issue title.
        body: Issue body, None when empty.
        state: "open" or "closed".
        labels: Labels attached to the issue.
        url: API URL of the issue.
        html_url: Browser URL of the issue.
        created_at: ISO-8601 creation timestamp.
        updated_at: ISO-8601 last update timestamp.
    """

    id: int
    number: int = Field(..., gt=0)
    title: str
    body: Optional[str] = None
    state: str = "open"
    labels: List[GitHubLabel] = Field(default_factory=list)
    url: str = ""
    html_url: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "GitHubIssue":
        """Build an issue from a raw API payload.

        Labels may arrive either as objects or as bare names.
        """
        labels = []
        for raw_label in data.get("labels") or []:
            if isinstance(raw_label, str):
                labels.append(GitHubLabel(name=raw_label))
            else:
                labels.append(
                    GitHubLabel(
                        id=raw_label.get("id") or 0,
                        name=raw_label.get("name") or "",
                        color=raw_label.get("color") or "",
                        description=raw_label.get("description"),
                    )
                )

        return cls(
            id=data["id"],
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or None,
            state="open" if data.get("state") == "open" else "closed",
            labels=labels,
            url=data.get("url", ""),
            html_url=data.get("html_url", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    def has_label(self, label_name: str) -> bool:
        return any(label.name == label_name for label in self.labels)


class GitHubPullRequest(BaseModel):
    """A pull request as returned by the pulls API."""

    id: int
    number: int = Field(..., gt=0)
    title: str = ""
    body: Optional[str] = None
    state: str = "open"
    url: str = ""
    html_url: str = ""
    head_branch: str = ""
    base_branch: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "GitHubPullRequest":
        """Build a pull request from a raw API payload.

        A merged pull request reports state "merged".
        """
        state = "open"
        if data.get("merged_at"):
            state = "merged"
        elif data.get("state") == "closed":
            state = "closed"

        return cls(
            id=data["id"],
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body"),
            state=state,
            url=data.get("url", ""),
            html_url=data.get("html_url", ""),
            head_branch=(data.get("head") or {}).get("ref", ""),
            base_branch=(data.get("base") or {}).get("ref", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


class GitHubRepository(BaseModel):
    """Repository metadata needed for branch creation."""

    owner: str
    name: str
    full_name: str
    clone_url: str = ""
    default_branch: str = "main"

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "GitHubRepository":
        return cls(
            owner=(data.get("owner") or {}).get("login", ""),
            name=data["name"],
            full_name=data.get("full_name", ""),
            clone_url=data.get("clone_url", ""),
            default_branch=data.get("default_branch") or "main",
        )


class PRCreateRequest(BaseModel):
    """Request to open a pull request.

    Attributes:
        title: Pull request title.
        body: Pull request body in markdown.
        head_branch: Branch containing the changes.
        base_branch: Branch the changes should be merged into.
    """

    title: str = Field(..., min_length=1)
    body: str = ""
    head_branch: str = Field(..., min_length=1)
    base_branch: str = Field(..., min_length=1)
