"""
Hosting-platform listing providers (GitHub, GitLab, Gitea).

Each provider lists repositories of an organization/group or of a user via
the platform's REST API and converts them to ForgeRepository records. Only
listing is implemented; the core never writes to a forge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import quote, urlsplit

import httpx

from .errors import ConfigurationError, ForgeError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
PER_PAGE = 100


@dataclass
class ForgeRepository:
    """A repository as reported by a hosting platform."""

    name: str
    full_name: str
    clone_url: str = ""
    ssh_url: str = ""
    html_url: str = ""
    description: str = ""
    default_branch: str = ""
    private: bool = False
    archived: bool = False
    fork: bool = False
    language: str = ""
    stars: int = 0
    topics: list[str] = field(default_factory=list)
    pushed_at: datetime | None = None


class ForgeProvider(Protocol):
    @property
    def name(self) -> str: ...

    def list_organization_repos(self, org: str) -> list[ForgeRepository]: ...

    def list_user_repos(self, user: str) -> list[ForgeRepository]: ...


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class _HTTPProvider:
    """Shared httpx plumbing for the REST providers."""

    name = ""
    default_base_url = ""

    def __init__(
        self,
        token: str = "",
        base_url: str = "",
        client: httpx.Client | None = None,
    ):
        self.token = token
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self._client = client or httpx.Client(timeout=DEFAULT_TIMEOUT)

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            response = self._client.get(url, params=params, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ForgeError(f"{self.name}: GET {url} failed: {e}") from e
        return response

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class GitHubProvider(_HTTPProvider):
    """GitHub REST v3 listing, paginated through the ``Link`` header."""

    name = "github"
    default_base_url = "https://api.github.com"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def list_organization_repos(self, org: str) -> list[ForgeRepository]:
        return self._paginate(f"{self.base_url}/orgs/{quote(org)}/repos", {"type": "all"})

    def list_user_repos(self, user: str) -> list[ForgeRepository]:
        return self._paginate(f"{self.base_url}/users/{quote(user)}/repos", {"type": "all"})

    def _paginate(self, url: str, params: dict[str, Any]) -> list[ForgeRepository]:
        repos: list[ForgeRepository] = []
        next_url: str | None = url
        next_params: dict[str, Any] | None = {**params, "per_page": PER_PAGE}
        while next_url:
            response = self._get(next_url, next_params)
            repos.extend(self._convert(item) for item in response.json())
            next_url = response.links.get("next", {}).get("url")
            # the next link already carries the query string
            next_params = None
        logger.debug("github: listed %d repositories from %s", len(repos), url)
        return repos

    @staticmethod
    def _convert(item: dict) -> ForgeRepository:
        return ForgeRepository(
            name=item.get("name", ""),
            full_name=item.get("full_name", ""),
            clone_url=item.get("clone_url", ""),
            ssh_url=item.get("ssh_url", ""),
            html_url=item.get("html_url", ""),
            description=item.get("description") or "",
            default_branch=item.get("default_branch") or "",
            private=bool(item.get("private")),
            archived=bool(item.get("archived")),
            fork=bool(item.get("fork")),
            language=item.get("language") or "",
            stars=int(item.get("stargazers_count") or 0),
            topics=list(item.get("topics") or []),
            pushed_at=_parse_time(item.get("pushed_at")),
        )


class GitLabProvider(_HTTPProvider):
    """GitLab REST v4 listing, paginated through ``X-Next-Page``.

    Group listings include subgroups so nested projects keep their full
    namespace path in ``full_name``.
    """

    name = "gitlab"
    default_base_url = "https://gitlab.com"

    def __init__(
        self,
        token: str = "",
        base_url: str = "",
        client: httpx.Client | None = None,
        ssh_port: int = 0,
    ):
        super().__init__(token, base_url, client)
        self.ssh_port = ssh_port
        self.ssh_host = urlsplit(self.base_url).hostname or ""

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["PRIVATE-TOKEN"] = self.token
        return headers

    def list_organization_repos(self, org: str) -> list[ForgeRepository]:
        url = f"{self.base_url}/api/v4/groups/{quote(org, safe='')}/projects"
        return self._paginate(url, {"include_subgroups": "true"})

    def list_user_repos(self, user: str) -> list[ForgeRepository]:
        url = f"{self.base_url}/api/v4/users/{quote(user, safe='')}/projects"
        return self._paginate(url, {})

    def _paginate(self, url: str, params: dict[str, Any]) -> list[ForgeRepository]:
        repos: list[ForgeRepository] = []
        page = 1
        while True:
            response = self._get(url, {**params, "per_page": PER_PAGE, "page": page})
            repos.extend(self._convert(item) for item in response.json())
            next_page = response.headers.get("X-Next-Page", "").strip()
            if not next_page:
                break
            page = int(next_page)
        logger.debug("gitlab: listed %d repositories from %s", len(repos), url)
        return repos

    def _convert(self, item: dict) -> ForgeRepository:
        full_name = item.get("path_with_namespace", "")
        ssh_url = item.get("ssh_url_to_repo", "")
        if self.ssh_port and self.ssh_port != 22 and full_name:
            host = self.ssh_host or _scp_host(ssh_url)
            ssh_url = f"ssh://git@{host}:{self.ssh_port}/{full_name}.git"
        visibility = item.get("visibility", "")
        return ForgeRepository(
            name=item.get("path") or item.get("name", ""),
            full_name=full_name,
            clone_url=item.get("http_url_to_repo", ""),
            ssh_url=ssh_url,
            html_url=item.get("web_url", ""),
            description=item.get("description") or "",
            default_branch=item.get("default_branch") or "",
            private=visibility in ("private", "internal"),
            archived=bool(item.get("archived")),
            fork="forked_from_project" in item,
            language="",
            stars=int(item.get("star_count") or 0),
            topics=list(item.get("topics") or item.get("tag_list") or []),
            pushed_at=_parse_time(item.get("last_activity_at")),
        )


def _scp_host(ssh_url: str) -> str:
    # git@host:group/repo.git -> host
    return ssh_url.split("@", 1)[-1].split(":", 1)[0]


class GiteaProvider(_HTTPProvider):
    """Gitea REST v1 listing, paged until a short page comes back."""

    name = "gitea"
    default_base_url = "https://gitea.com"
    page_size = 50

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    def list_organization_repos(self, org: str) -> list[ForgeRepository]:
        return self._paginate(f"{self.base_url}/api/v1/orgs/{quote(org)}/repos")

    def list_user_repos(self, user: str) -> list[ForgeRepository]:
        return self._paginate(f"{self.base_url}/api/v1/users/{quote(user)}/repos")

    def _paginate(self, url: str) -> list[ForgeRepository]:
        repos: list[ForgeRepository] = []
        page = 1
        while True:
            items = self._get(url, {"limit": self.page_size, "page": page}).json()
            repos.extend(self._convert(item) for item in items)
            if len(items) < self.page_size:
                break
            page += 1
        return repos

    @staticmethod
    def _convert(item: dict) -> ForgeRepository:
        return ForgeRepository(
            name=item.get("name", ""),
            full_name=item.get("full_name", ""),
            clone_url=item.get("clone_url", ""),
            ssh_url=item.get("ssh_url", ""),
            html_url=item.get("html_url", ""),
            description=item.get("description") or "",
            default_branch=item.get("default_branch") or "",
            private=bool(item.get("private")),
            archived=bool(item.get("archived")),
            fork=bool(item.get("fork")),
            language=item.get("language") or "",
            stars=int(item.get("stars_count") or 0),
            topics=list(item.get("topics") or []),
            pushed_at=_parse_time(item.get("updated_at")),
        )


_PROVIDERS: dict[str, type[_HTTPProvider]] = {
    "github": GitHubProvider,
    "gitlab": GitLabProvider,
    "gitea": GiteaProvider,
}


def create_provider(
    name: str,
    token: str = "",
    base_url: str = "",
    ssh_port: int = 0,
    client: httpx.Client | None = None,
) -> _HTTPProvider:
    """Build a provider by name."""
    key = name.lower()
    if key not in _PROVIDERS:
        raise ConfigurationError(
            f"unknown provider {name!r} (valid: {', '.join(sorted(_PROVIDERS))})"
        )
    if key == "gitlab":
        return GitLabProvider(token=token, base_url=base_url, client=client, ssh_port=ssh_port)
    return _PROVIDERS[key](token=token, base_url=base_url, client=client)
