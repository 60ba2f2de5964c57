"""Tests for the session collaborator helpers and the in-memory manager."""

import pytest

from agentsched.core.errors import SessionError
from agentsched.sessions.base import (
    RunServerRequest,
    extract_repo_full_name,
    extract_repository_info,
    is_valid_repository_url,
)
from agentsched.sessions.memory import InMemorySessionManager


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/acme/widgets",
        "https://github.com/acme/widgets.git",
        "http://github.com/acme/widgets",
        "git@github.com:acme/widgets.git",
        "acme/widgets",
    ],
)
def test_extract_repository_info(url):
    info = extract_repository_info({"repository": url}, "session-1")

    assert info is not None
    assert info.full_name == "acme/widgets"
    assert info.clone_dir == "session-1"


@pytest.mark.parametrize(
    "tags",
    [
        None,
        {},
        {"repository": ""},
        {"repository": "widgets"},
        {"repository": "https://gitlab.com/acme/widgets"},
        {"repository": "https://github.com/acme/widgets/tree/main"},
    ],
)
def test_extract_repository_info_rejects(tags):
    assert extract_repository_info(tags, "session-1") is None


def test_is_valid_repository_url():
    assert is_valid_repository_url("git@github.com:acme/widgets")
    assert not is_valid_repository_url("acme/widgets/extra")
    assert not is_valid_repository_url("/widgets")


def test_extract_repo_full_name_raises_on_deep_path():
    with pytest.raises(ValueError):
        extract_repo_full_name("https://github.com/acme")


@pytest.mark.asyncio
async def test_in_memory_manager_lifecycle():
    manager = InMemorySessionManager()
    request = RunServerRequest(user_id="alice")

    session = await manager.create_session("s-1", request)
    assert session.id == "s-1"
    assert session.status == "active"
    assert (await manager.get_session("s-1")) is session

    manager.set_status("s-1", "stopped")
    assert (await manager.get_session("s-1")).status == "stopped"

    await manager.delete_session("s-1")
    assert await manager.get_session("s-1") is None


@pytest.mark.asyncio
async def test_in_memory_manager_errors():
    manager = InMemorySessionManager()
    await manager.create_session("s-1", RunServerRequest(user_id="alice"))

    with pytest.raises(SessionError):
        await manager.create_session("s-1", RunServerRequest(user_id="alice"))
    with pytest.raises(SessionError):
        await manager.delete_session("ghost")
