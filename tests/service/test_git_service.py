"""GitService against a local repository served over file://."""

import shutil
import subprocess

import pytest

from launchpad.command import CommandRunner
from launchpad.git_service import GitService

pytestmark = [
    pytest.mark.service,
    pytest.mark.asyncio,
    pytest.mark.skipif(shutil.which("git") is None, reason="git not installed"),
]


def git(cwd, *args: str) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=Dev", "-c", "user.email=dev@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def origin(tmp_path):
    repo = tmp_path / "origin"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    (repo / "index.html").write_text("<h1>v1</h1>\n")
    git(repo, "add", ".")
    git(repo, "commit", "-q", "-m", "First page")
    (repo / "index.html").write_text("<h1>v2</h1>\n")
    (repo / "about.html").write_text("<p>about</p>\n")
    git(repo, "add", ".")
    git(repo, "commit", "-q", "-m", "Add about page")
    git(repo, "branch", "feature")
    return repo


@pytest.fixture
def service(settings):
    return GitService(CommandRunner(settings), settings)


async def test_clone_main(service, origin):
    result = await service.clone_repository(f"file://{origin}", "dep-1")

    assert result.success is True
    assert result.commit_hash == git(origin, "rev-parse", "HEAD")
    assert result.author == "Dev"
    assert result.message == "Add about page"
    assert result.branch == "main"
    assert result.path == str(service.path_for("dep-1"))


async def test_clone_is_shallow(service, origin):
    result = await service.clone_repository(f"file://{origin}", "dep-1")

    assert git(result.path, "rev-list", "--count", "HEAD") == "1"


async def test_clone_missing_branch(service, origin):
    result = await service.clone_repository(f"file://{origin}", "dep-1", branch="nope")

    assert result.success is False
    assert "nope" in result.error


async def test_clone_replaces_stale_directory(service, origin):
    stale = service.path_for("dep-1")
    stale.mkdir(parents=True)
    (stale / "leftover.txt").write_text("old")

    result = await service.clone_repository(f"file://{origin}", "dep-1")

    assert result.success is True
    assert not (stale / "leftover.txt").exists()


async def test_repository_queries(service, origin):
    path = str(origin)
    head = git(origin, "rev-parse", "HEAD")
    first = git(origin, "rev-parse", "HEAD~1")

    assert sorted(await service.list_files(path)) == ["about.html", "index.html"]
    assert await service.file_exists(path, "about.html") is True
    assert await service.file_exists(path, "../outside") is False
    assert await service.get_file_content(path, "index.html") == "<h1>v2</h1>\n"
    assert await service.get_file_content(path, "../../etc/passwd") is None
    assert "+<h1>v2</h1>" in await service.get_diff(path, first, head)

    commit = await service.get_commit_info(path, first)
    assert commit.message == "First page"
    assert commit.email == "dev@example.com"

    branches = {branch.name: branch for branch in await service.list_branches(path)}
    assert set(branches) == {"main", "feature"}
    assert branches["feature"].commit == head


async def test_checkout(service, origin):
    assert await service.checkout(str(origin), "feature") is True
    assert await service.checkout(str(origin), "does-not-exist") is False


async def test_cleanup(service, origin):
    await service.clone_repository(f"file://{origin}", "dep-1")

    await service.cleanup("dep-1")
    await service.cleanup("dep-1")

    assert not service.path_for("dep-1").exists()
