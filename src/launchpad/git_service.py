"""Git service - shallow clones and repository introspection."""

from pathlib import Path
import re
import shlex
import shutil
from urllib.parse import urlsplit, urlunsplit

import structlog

from launchpad.command import CancelToken, CommandRunner
from launchpad.config import Settings, get_settings
from launchpad.errors import CommandError, InvalidName
from launchpad.models import (
    BranchInfo,
    CloneResult,
    CommitInfo,
    GitProvider,
    RepoInfo,
    validate_name,
)

logger = structlog.get_logger()

# Unit separator keeps commit subjects with any punctuation parseable
_FIELD_SEP = "\x1f"
_LOG_FORMAT = "%x1f".join(["%H", "%an", "%ae", "%aI", "%s"])

_PROVIDER_HOSTS: dict[str, GitProvider] = {
    "github.com": GitProvider.GITHUB,
    "gitlab.com": GitProvider.GITLAB,
    "bitbucket.org": GitProvider.BITBUCKET,
}

_BASE_URLS: dict[GitProvider, str] = {
    GitProvider.GITHUB: "https://github.com",
    GitProvider.GITLAB: "https://gitlab.com",
    GitProvider.BITBUCKET: "https://bitbucket.org",
}

# userinfo placed before the host when a token is embedded
_TOKEN_SCHEMES: dict[GitProvider, str] = {
    GitProvider.GITHUB: "{token}",
    GitProvider.GITLAB: "oauth2:{token}",
    GitProvider.BITBUCKET: "x-token-auth:{token}",
    GitProvider.CUSTOM: "{token}",
}

_URL_PATTERNS: list[tuple[GitProvider, re.Pattern[str]]] = [
    (provider, re.compile(pattern.format(host=re.escape(host))))
    for host, provider in _PROVIDER_HOSTS.items()
    for pattern in (
        r"^https://{host}/([^/]+)/([^/.]+)(\.git)?$",
        r"^git@{host}:([^/]+)/([^/.]+)(\.git)?$",
    )
]


def parse_repo_url(url: str) -> RepoInfo:
    """Classify a repository URL by provider and extract owner/repo.

    HTTPS and SSH forms of GitHub, GitLab and Bitbucket URLs are recognized,
    with or without a trailing .git. Anything else is a custom, invalid URL.
    """
    for provider, pattern in _URL_PATTERNS:
        match = pattern.fullmatch(url)
        if match:
            return RepoInfo(
                provider=provider,
                owner=match.group(1),
                repo=match.group(2),
                base_url=_BASE_URLS[provider],
                is_valid=True,
            )
    return RepoInfo(provider=GitProvider.CUSTOM)


def add_token_to_url(url: str, token: str) -> str:
    """Embed an access token into an HTTPS clone URL using the provider's scheme.

    URLs that cannot be parsed are returned unchanged.
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return url
    if not parts.scheme or not host:
        return url

    provider = _PROVIDER_HOSTS.get(host, GitProvider.CUSTOM)
    userinfo = _TOKEN_SCHEMES[provider].format(token=token)
    netloc = f"{userinfo}@{host}"
    if port:
        netloc = f"{netloc}:{port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _redact(text: str, token: str | None) -> str:
    if not token:
        return text
    return text.replace(token, "***")


class GitService:
    """Clones repositories into per-deployment work directories."""

    def __init__(self, runner: CommandRunner | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.runner = runner or CommandRunner(self.settings)
        self.work_dir = Path(self.settings.work_dir)

    def path_for(self, deployment_id: str) -> Path:
        """Work directory of a deployment, always directly under ``work_dir``.

        Raises:
            InvalidName: ``deployment_id`` is not a plain path segment
        """
        target = self.work_dir / validate_name(deployment_id, "deployment id")
        if target.resolve().parent != self.work_dir.resolve():
            raise InvalidName(f"Invalid deployment id: {deployment_id!r}")
        return target

    async def clone_repository(
        self,
        url: str,
        deployment_id: str,
        branch: str = "main",
        token: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> CloneResult:
        """Shallow, single-branch clone of ``branch`` into the deployment's work dir.

        Any stale directory for the same deployment id is removed first.
        Failures are returned as ``success=False`` with an error string.
        """
        target = self.path_for(deployment_id)
        logger.info(
            "cloning_repository",
            repo_url=url,
            deployment_id=deployment_id,
            branch=branch,
            target_path=str(target),
        )

        clone_url = add_token_to_url(url, token) if token else url
        command = shlex.join(
            [
                "git",
                "clone",
                "--depth",
                "1",
                "--single-branch",
                "--branch",
                branch,
                clone_url,
                str(target),
            ]
        )

        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            shutil.rmtree(target, ignore_errors=True)

            await self.runner.run(
                command,
                cwd=str(self.work_dir),
                env={"GIT_TERMINAL_PROMPT": "0"},
                cancel_token=cancel_token,
                display=_redact(command, token),
            )

            commit = await self.get_commit_info(str(target))
            if commit is None:
                raise CommandError(command, "Failed to read commit information after clone")
        except (CommandError, OSError) as e:
            error = _redact(str(e), token)
            logger.error("clone_failed", deployment_id=deployment_id, error=error)
            return CloneResult(success=False, path=str(target), branch=branch, error=error)

        logger.info(
            "repository_cloned",
            deployment_id=deployment_id,
            commit_hash=commit.hash[:7],
            branch=branch,
        )
        return CloneResult(
            success=True,
            path=str(target),
            commit_hash=commit.hash,
            branch=branch,
            author=commit.author,
            message=commit.message,
            timestamp=commit.timestamp,
        )

    async def get_commit_info(self, repo_path: str, commit_hash: str | None = None) -> CommitInfo | None:
        """HEAD commit metadata, or that of ``commit_hash``; None on error."""
        args = ["git", "log", "-1", f"--format={_LOG_FORMAT}"]
        if commit_hash:
            args.append(commit_hash)
        try:
            result = await self.runner.run(shlex.join(args), cwd=repo_path)
        except CommandError as e:
            logger.error("commit_info_failed", repo_path=repo_path, error=str(e))
            return None

        fields = result.stdout.split(_FIELD_SEP)
        if len(fields) != 5:
            return None
        commit, author, email, timestamp, message = fields
        return CommitInfo(
            hash=commit, author=author, email=email, message=message, timestamp=timestamp
        )

    async def list_branches(self, repo_path: str) -> list[BranchInfo]:
        """Local and remote branches; empty list on error."""
        command = "git branch -a --format='%(refname)%09%(objectname)'"
        try:
            result = await self.runner.run(command, cwd=repo_path)
        except CommandError as e:
            logger.error("list_branches_failed", repo_path=repo_path, error=str(e))
            return []

        branches = []
        for line in result.stdout.splitlines():
            ref, _, commit = line.partition("\t")
            if ref.endswith("/HEAD") or not ref.startswith("refs/"):
                continue
            is_remote = ref.startswith("refs/remotes/")
            name = re.sub(r"^refs/(heads|remotes/origin)/", "", ref)
            branches.append(BranchInfo(name=name, commit=commit, is_remote=is_remote))
        return branches

    async def checkout(self, repo_path: str, ref: str) -> bool:
        """Check out a branch or commit; False when git refuses."""
        try:
            await self.runner.run(shlex.join(["git", "checkout", ref]), cwd=repo_path)
        except CommandError as e:
            logger.error("checkout_failed", repo_path=repo_path, ref=ref, error=str(e))
            return False
        logger.info("checked_out_ref", repo_path=repo_path, ref=ref)
        return True

    async def get_diff(self, repo_path: str, from_commit: str, to_commit: str) -> str:
        try:
            result = await self.runner.run(
                shlex.join(["git", "diff", from_commit, to_commit]), cwd=repo_path
            )
        except CommandError as e:
            logger.error(
                "diff_failed",
                repo_path=repo_path,
                from_commit=from_commit,
                to_commit=to_commit,
                error=str(e),
            )
            return ""
        return result.stdout

    async def list_files(self, repo_path: str) -> list[str]:
        try:
            result = await self.runner.run("git ls-files", cwd=repo_path)
        except CommandError as e:
            logger.error("list_files_failed", repo_path=repo_path, error=str(e))
            return []
        return [line for line in result.stdout.splitlines() if line]

    def _resolve_inside(self, repo_path: str, file_path: str) -> Path | None:
        root = Path(repo_path).resolve()
        target = (root / file_path).resolve()
        if target != root and root not in target.parents:
            return None
        return target

    async def file_exists(self, repo_path: str, file_path: str) -> bool:
        target = self._resolve_inside(repo_path, file_path)
        return target is not None and target.exists()

    async def get_file_content(self, repo_path: str, file_path: str) -> str | None:
        target = self._resolve_inside(repo_path, file_path)
        if target is None:
            return None
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    async def cleanup(self, deployment_id: str) -> None:
        """Remove the deployment's work directory; never raises."""
        try:
            shutil.rmtree(self.path_for(deployment_id))
            logger.info("repository_cleaned_up", deployment_id=deployment_id)
        except FileNotFoundError:
            pass
        except (InvalidName, OSError) as e:
            logger.warning("repository_cleanup_failed", deployment_id=deployment_id, error=str(e))
