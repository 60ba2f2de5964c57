"""
Session collaborator interface.

The session runtime (process or pod lifecycle, I/O proxying) lives outside
this package. The scheduler only needs to create a session, look one up and
delete one; anything implementing SessionManager can be plugged in.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from agentsched.scheduler.schedule import ResourceScope, SlackParams

logger = logging.getLogger(__name__)

# A previous session in one of these states blocks the next execution
ACTIVE_SESSION_STATUSES = frozenset({"active", "starting", "creating"})

_GITHUB_PREFIXES = ("https://github.com/", "git@github.com:", "http://github.com/")


class Session(ABC):
    """A running agent session as seen by the scheduler."""

    @property
    @abstractmethod
    def id(self) -> str: ...

    @property
    @abstractmethod
    def status(self) -> str:
        """e.g. 'creating', 'starting', 'active', 'stopped'."""
        ...


@dataclass
class RepositoryInfo:
    full_name: str   # "owner/repo"
    clone_dir: str


@dataclass
class RunServerRequest:
    """Everything the session runtime needs to start a session."""

    user_id: str
    environment: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    scope: ResourceScope = ResourceScope.USER
    team_id: str = ""
    teams: list[str] = field(default_factory=list)  # credentials are limited to these teams
    initial_message: str = ""
    github_token: str = ""
    agent_type: str = ""
    slack_params: SlackParams | None = None
    oneshot: bool = False
    repo_info: RepositoryInfo | None = None


class SessionManager(ABC):
    """
    The scheduler's view of the session runtime.

    Implementations own timeouts: the worker imposes none on these calls.
    """

    @abstractmethod
    async def create_session(self, session_id: str, request: RunServerRequest) -> Session:
        """Create and start a session. Raises on failure."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """Return the session, or None if it does not exist."""
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Stop and remove a session."""
        ...


def is_valid_repository_url(repo_url: str) -> bool:
    """GitHub URL (https, http, ssh) or bare "owner/repo"."""
    if repo_url.startswith(_GITHUB_PREFIXES):
        return True
    parts = repo_url.split("/")
    return len(parts) == 2 and bool(parts[0]) and bool(parts[1])


def extract_repo_full_name(repo_url: str) -> str:
    """Reduce a repository URL to "owner/repo". Raises ValueError otherwise."""
    repo_path = repo_url
    for prefix in _GITHUB_PREFIXES:
        if repo_url.startswith(prefix):
            repo_path = repo_url[len(prefix):]
            break
    if repo_path.endswith(".git"):
        repo_path = repo_path[: -len(".git")]
    if len(repo_path.split("/")) != 2:
        raise ValueError(f"invalid repository path: {repo_path}")
    return repo_path


def extract_repository_info(tags: dict[str, str] | None, clone_dir: str) -> RepositoryInfo | None:
    """Repository info from the "repository" tag, or None if absent or invalid."""
    if not tags:
        return None
    repo_url = tags.get("repository", "")
    if not repo_url or not is_valid_repository_url(repo_url):
        return None
    try:
        full_name = extract_repo_full_name(repo_url)
    except ValueError as e:
        logger.warning(f"Failed to extract repository full name from URL {repo_url}: {e}")
        return None
    return RepositoryInfo(full_name=full_name, clone_dir=clone_dir)
