"""Repository URL parsing.

Every supported SCM has one descriptor class.  ``parse_url`` tries them in a
fixed priority order and returns the first structural match:

1. GitHub (github.com and GitHub Enterprise)
2. GitLab (gitlab.com and self-managed)
3. Bitbucket Server (self-hosted ``/scm/``, ``/projects/``, ``/users/`` shapes)
4. Bitbucket Cloud (``bitbucket.org``)
5. Azure DevOps (``dev.azure.com`` / ``*.visualstudio.com``)

Bitbucket Server must be tried before Bitbucket Cloud: its path shapes are
specific, while the cloud matcher only looks at the host.

Descriptors are immutable and building raw-file URLs from them never touches
the network.  A URL that matches no provider is not an error, ``parse_url``
simply returns ``None``.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Iterable
from urllib.parse import SplitResult, parse_qs, quote, urlsplit

logger = logging.getLogger(__name__)

DEFAULT_DEVFILE_FILENAMES: tuple[str, ...] = ("devfile.yaml", ".devfile.yaml")
DEFAULT_REF = "HEAD"

# git@host:owner/repo.git
_SCP_LIKE_RE = re.compile(r"^git@([^:/]+):(.+)$")
# ssh://git@host:7999/project/repo.git (Bitbucket Server clone URLs)
_SSH_URL_RE = re.compile(r"^ssh://git@([^:/]+)(?::\d+)?/(.+)$")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _component(value: str) -> str:
    """Percent-encode *value* as a single URL component."""
    return quote(value, safe="!*'()")


def normalize_scm_url(url: str) -> str:
    """Rewrite SCP-style ``git@host:path`` into ``https://host/path``."""
    url = url.strip()
    m = _SCP_LIKE_RE.match(url)
    if m:
        return f"https://{m.group(1)}/{m.group(2)}"
    return url


def _split(url: str) -> SplitResult | None:
    """Parse *url*; ``None`` when it is not an absolute http(s) URL."""
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    return parts


def _origin(parts: SplitResult) -> str:
    """``scheme://host[:port]`` without any user info."""
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme}://{parts.hostname}{port}"


def _segments(path: str) -> list[str]:
    return [s for s in path.split("/") if s]


def _strip_git(name: str) -> str:
    return name[:-4] if name.endswith(".git") else name


# ------------------------------------------------------------------
# Descriptor base
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DevfileLocation:
    """One candidate devfile: its name and where to fetch it raw."""

    filename: str
    location: str


class RemoteUrl(ABC):
    """A parsed repository URL for one SCM provider.

    Concrete descriptors are frozen dataclasses that carry at least
    ``provider_url``, ``branch`` and ``devfile_filenames``.  New providers
    are added by adding a subclass and listing it in ``_PARSERS``.
    """

    provider_name: ClassVar[str]
    provider_url: str
    branch: str
    devfile_filenames: tuple[str, ...]

    @classmethod
    @abstractmethod
    def parse(
        cls, url: str, devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES
    ) -> RemoteUrl | None:
        """Return a descriptor for *url*, or ``None`` on structural mismatch."""
        ...

    @abstractmethod
    def raw_file_location(self, filename: str) -> str:
        """URL that serves the raw content of *filename* at ``branch``."""
        ...

    @property
    @abstractmethod
    def clone_url(self) -> str: ...

    def devfile_file_locations(self) -> list[DevfileLocation]:
        return [
            DevfileLocation(filename=name, location=self.raw_file_location(name))
            for name in self.devfile_filenames
        ]


# ------------------------------------------------------------------
# GitHub
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GithubUrl(RemoteUrl):
    provider_name: ClassVar[str] = "github"

    provider_url: str
    owner: str
    repository: str
    branch: str = DEFAULT_REF
    devfile_filenames: tuple[str, ...] = DEFAULT_DEVFILE_FILENAMES

    @classmethod
    def parse(
        cls, url: str, devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES
    ) -> GithubUrl | None:
        parts = _split(normalize_scm_url(url))
        if parts is None or "github" not in parts.hostname:  # type: ignore[operator]
            return None
        segments = _segments(parts.path)
        if len(segments) < 2:
            return None

        branch = DEFAULT_REF
        if len(segments) >= 4 and segments[2] in ("tree", "blob"):
            branch = segments[3]

        return cls(
            provider_url=_origin(parts),
            owner=segments[0],
            repository=_strip_git(segments[1]),
            branch=branch,
            devfile_filenames=tuple(devfile_filenames),
        )

    def raw_file_location(self, filename: str) -> str:
        ref = self.branch or DEFAULT_REF
        if self.provider_url == "https://github.com":
            return (
                "https://raw.githubusercontent.com/"
                f"{self.owner}/{self.repository}/{ref}/{filename}"
            )
        # GitHub Enterprise Server
        return f"{self.provider_url}/raw/{self.owner}/{self.repository}/{ref}/{filename}"

    @property
    def clone_url(self) -> str:
        return f"{self.provider_url}/{self.owner}/{self.repository}.git"


# ------------------------------------------------------------------
# GitLab
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GitlabUrl(RemoteUrl):
    provider_name: ClassVar[str] = "gitlab"

    provider_url: str
    subgroups: str  # full project path, e.g. "group/sub/project"
    branch: str = DEFAULT_REF
    devfile_filenames: tuple[str, ...] = DEFAULT_DEVFILE_FILENAMES

    @property
    def project(self) -> str:
        return self.subgroups.rsplit("/", 1)[-1]

    @classmethod
    def parse(
        cls, url: str, devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES
    ) -> GitlabUrl | None:
        parts = _split(normalize_scm_url(url))
        if parts is None or "gitlab" not in parts.hostname:  # type: ignore[operator]
            return None

        path = _strip_git(parts.path.strip("/"))
        branch = DEFAULT_REF
        subgroups = path
        tree = path.find("/-/tree/")
        if tree > 0:
            subgroups = path[:tree]
            branch = path[tree + len("/-/tree/") :] or DEFAULT_REF

        if "/" not in subgroups:
            return None

        return cls(
            provider_url=_origin(parts),
            subgroups=subgroups,
            branch=branch,
            devfile_filenames=tuple(devfile_filenames),
        )

    def raw_file_location(self, filename: str) -> str:
        ref = self.branch or DEFAULT_REF
        return (
            f"{self.provider_url}/api/v4/projects/{_component(self.subgroups)}"
            f"/repository/files/{_component(filename)}/raw?ref={_component(ref)}"
        )

    @property
    def clone_url(self) -> str:
        return f"{self.provider_url}/{self.subgroups}.git"


# ------------------------------------------------------------------
# Bitbucket Server (self-hosted)
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BitbucketServerUrl(RemoteUrl):
    """Self-hosted Bitbucket.  Exactly one of ``project`` / ``user`` is set."""

    provider_name: ClassVar[str] = "bitbucket-server"

    provider_url: str
    repository: str
    project: str | None = None
    user: str | None = None
    branch: str = DEFAULT_REF
    devfile_filenames: tuple[str, ...] = DEFAULT_DEVFILE_FILENAMES

    @classmethod
    def parse(
        cls, url: str, devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES
    ) -> BitbucketServerUrl | None:
        url = url.strip()
        m = _SSH_URL_RE.match(url)
        if m:
            url = f"https://{m.group(1)}/scm/{m.group(2)}"

        parts = _split(normalize_scm_url(url))
        if parts is None or parts.hostname.endswith("bitbucket.org"):  # type: ignore[union-attr]
            return None

        segments = _segments(parts.path)
        if not segments:
            return None
        branch = parse_qs(parts.query).get("at", [DEFAULT_REF])[0] or DEFAULT_REF
        filenames = tuple(devfile_filenames)
        server = _origin(parts)

        # /scm/<project>/<repo>.git or /scm/~<user>/<repo>.git
        if segments[0] == "scm" and len(segments) >= 3:
            owner, repo = segments[1], _strip_git(segments[2])
            if owner.startswith("~"):
                return cls(server, repo, user=owner[1:], branch=branch, devfile_filenames=filenames)
            return cls(server, repo, project=owner, branch=branch, devfile_filenames=filenames)

        # /projects/<project>/repos/<repo>/... and /users/<user>/repos/<repo>/...
        if segments[0] in ("projects", "users") and "repos" in segments:
            repos_idx = segments.index("repos")
            if repos_idx < 2 or len(segments) <= repos_idx + 1:
                return None
            owner, repo = segments[1], segments[repos_idx + 1]
            if segments[0] == "projects":
                return cls(server, repo, project=owner, branch=branch, devfile_filenames=filenames)
            return cls(server, repo, user=owner, branch=branch, devfile_filenames=filenames)

        return None

    def raw_file_location(self, filename: str) -> str:
        at = ""
        if self.branch and self.branch != DEFAULT_REF:
            at = f"?at={_component(self.branch)}"
        if self.project is not None:
            owner_path = f"projects/{_component(self.project)}"
        else:
            owner_path = f"users/{_component(self.user or '')}"
        return (
            f"{self.provider_url}/rest/api/1.0/{owner_path}"
            f"/repos/{_component(self.repository)}/raw/{filename}{at}"
        )

    @property
    def clone_url(self) -> str:
        owner = self.project if self.project is not None else f"~{self.user}"
        return f"{self.provider_url}/scm/{owner}/{self.repository}.git"


# ------------------------------------------------------------------
# Bitbucket Cloud
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BitbucketUrl(RemoteUrl):
    provider_name: ClassVar[str] = "bitbucket"

    provider_url: str
    workspace: str
    repository: str
    branch: str = DEFAULT_REF
    devfile_filenames: tuple[str, ...] = DEFAULT_DEVFILE_FILENAMES

    @classmethod
    def parse(
        cls, url: str, devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES
    ) -> BitbucketUrl | None:
        parts = _split(normalize_scm_url(url))
        if parts is None or not parts.hostname.endswith("bitbucket.org"):  # type: ignore[union-attr]
            return None
        segments = _segments(parts.path)
        if len(segments) < 2:
            return None

        branch = DEFAULT_REF
        if len(segments) >= 4 and segments[2] == "src":
            branch = segments[3]

        return cls(
            # user info (https://alice@bitbucket.org/...) is dropped
            provider_url=f"{parts.scheme}://{parts.hostname}",
            workspace=segments[0],
            repository=_strip_git(segments[1]),
            branch=branch,
            devfile_filenames=tuple(devfile_filenames),
        )

    def raw_file_location(self, filename: str) -> str:
        ref = self.branch or DEFAULT_REF
        return (
            "https://api.bitbucket.org/2.0/repositories/"
            f"{self.workspace}/{self.repository}/src/{ref}/{filename}"
        )

    @property
    def clone_url(self) -> str:
        return f"https://bitbucket.org/{self.workspace}/{self.repository}.git"


# ------------------------------------------------------------------
# Azure DevOps
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AzureDevOpsUrl(RemoteUrl):
    provider_name: ClassVar[str] = "azure-devops"

    organization: str
    project: str
    repository: str
    branch: str = DEFAULT_REF
    devfile_filenames: tuple[str, ...] = DEFAULT_DEVFILE_FILENAMES
    provider_url: str = "https://dev.azure.com"

    @classmethod
    def parse(
        cls, url: str, devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES
    ) -> AzureDevOpsUrl | None:
        parts = _split(normalize_scm_url(url))
        if parts is None:
            return None
        host: str = parts.hostname  # type: ignore[assignment]
        segments = _segments(parts.path)

        org = project = repo = None
        if host == "ssh.dev.azure.com":
            # git@ssh.dev.azure.com:v3/<org>/<project>/<repo>
            if len(segments) >= 4 and segments[0] == "v3":
                org, project, repo = segments[1], segments[2], segments[3]
        elif host == "dev.azure.com":
            if len(segments) >= 4 and segments[2] == "_git":
                org, project, repo = segments[0], segments[1], segments[3]
            elif len(segments) >= 3 and segments[1] == "_git":
                org, project, repo = segments[0], segments[2], segments[2]
        elif host.endswith(".visualstudio.com"):
            if len(segments) >= 3 and segments[1] == "_git":
                org, project, repo = host.split(".", 1)[0], segments[0], segments[2]
        if not (org and project and repo):
            return None

        branch = DEFAULT_REF
        version = parse_qs(parts.query).get("version", [""])[0]
        if version.startswith("GB") and len(version) > 2:
            branch = version[2:]

        return cls(
            organization=org,
            project=project,
            repository=_strip_git(repo),
            branch=branch,
            devfile_filenames=tuple(devfile_filenames),
        )

    def raw_file_location(self, filename: str) -> str:
        location = (
            f"{self.provider_url}/{_component(self.organization)}/{_component(self.project)}"
            f"/_apis/git/repositories/{_component(self.repository)}/items"
            f"?path={quote('/' + filename, safe='/')}&api-version=7.0"
        )
        if self.branch and self.branch != DEFAULT_REF:
            location += (
                f"&versionDescriptor.version={_component(self.branch)}"
                "&versionDescriptor.versionType=branch"
            )
        return location

    @property
    def clone_url(self) -> str:
        return f"{self.provider_url}/{self.organization}/{self.project}/_git/{self.repository}"


# ------------------------------------------------------------------
# Resolver
# ------------------------------------------------------------------

_PARSERS: tuple[type[RemoteUrl], ...] = (
    GithubUrl,
    GitlabUrl,
    BitbucketServerUrl,
    BitbucketUrl,
    AzureDevOpsUrl,
)


def parse_url(
    url: str, devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES
) -> RemoteUrl | None:
    """Classify *url* and return the first matching provider descriptor."""
    filenames = tuple(devfile_filenames)
    for parser in _PARSERS:
        parsed = parser.parse(url, filenames)
        if parsed is not None:
            logger.debug("Resolved %s as %s", url, parser.provider_name)
            return parsed
    logger.debug("No SCM provider matches %s", url)
    return None
