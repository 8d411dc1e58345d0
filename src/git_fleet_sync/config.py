"""
Repos-file loading and environment-based resolution.

A repos file is JSON, either a bare list of repository objects or an object
with ``strategy`` and ``repos`` keys:

    {
      "strategy": "pull",
      "repos": [
        {"clone_url": "https://github.com/org/app.git", "branch": "develop,main"},
        {"name": "lib", "clone_url": "git@github.com:org/lib.git",
         "target_path": "$DEV_ROOT/lib", "auth": {"ssh_key_path": "~/.ssh/id_ed25519"}}
      ]
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError
from .models import RepoSpec, Strategy, parse_strategy

STATE_FILE_ENV = "GIT_FLEET_SYNC_STATE"
TOKEN_ENV = "GIT_FLEET_SYNC_TOKEN"

_PROVIDER_TOKEN_ENVS = {
    "github": "GITHUB_TOKEN",
    "gitlab": "GITLAB_TOKEN",
    "gitea": "GITEA_TOKEN",
}


@dataclass
class FleetConfig:
    """Desired repositories loaded from a repos file."""

    repos: list[RepoSpec] = field(default_factory=list)
    strategy: Strategy | None = None
    source: Path | None = None


def repo_name_from_url(clone_url: str) -> str:
    """Derive a directory name from a clone URL.

    ``https://host/group/app.git`` and ``git@host:group/app.git`` both give
    ``app``.
    """
    tail = clone_url.rstrip("/").replace(":", "/").rsplit("/", 1)[-1]
    if tail.endswith(".git"):
        tail = tail[: -len(".git")]
    return tail


def _expand_path(value: str, base_dir: Path) -> str:
    # Expand environment variables first, then tilde
    path = Path(os.path.expandvars(value)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return os.path.normpath(str(path))


def _repo_from_entry(entry: dict, index: int, base_dir: Path) -> RepoSpec:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"repos[{index}]: expected an object, got {type(entry).__name__}")

    data = dict(entry)
    auth = dict(data.get("auth") or {})
    token_env = auth.pop("token_env", "")
    if token_env and not auth.get("token"):
        auth["token"] = os.environ.get(token_env, "")
    data["auth"] = auth

    try:
        repo = RepoSpec.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"repos[{index}]: {e}") from e

    if not repo.name:
        repo.name = repo_name_from_url(repo.clone_url)
    if not repo.name:
        raise ConfigurationError(f"repos[{index}]: needs a name or a clone_url")

    repo.target_path = _expand_path(repo.target_path or repo.name, base_dir)
    if repo.auth.ssh_key_path:
        repo.auth.ssh_key_path = os.path.expandvars(repo.auth.ssh_key_path)
    return repo


def load_repos_file(path: str | Path) -> FleetConfig:
    """Load and validate a repos file. Raises ConfigurationError on bad input."""
    path = Path(path).expanduser()
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError:
        raise ConfigurationError(f"repos file not found: {path}") from None
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"cannot read repos file {path}: {e}") from e

    strategy = None
    if isinstance(raw, dict):
        if raw.get("strategy"):
            strategy = parse_strategy(raw["strategy"])
        entries = raw.get("repos")
    else:
        entries = raw

    if not isinstance(entries, list):
        raise ConfigurationError(f"{path}: expected a list of repositories")

    base_dir = path.resolve().parent
    repos = [_repo_from_entry(entry, i, base_dir) for i, entry in enumerate(entries)]

    seen_targets: set[str] = set()
    for repo in repos:
        if repo.target_path in seen_targets:
            raise ConfigurationError(f"duplicate path detected: {repo.target_path}")
        seen_targets.add(repo.target_path)
    return FleetConfig(repos=repos, strategy=strategy, source=path)


def resolve_state_file() -> Path:
    """Resolve the run-state file location.

    Priority order:
    1. $GIT_FLEET_SYNC_STATE environment variable
    2. ~/.config/git-fleet-sync/state.json (XDG-compliant)
    """
    env_state = os.environ.get(STATE_FILE_ENV)
    if env_state:
        return Path(env_state).expanduser()
    return Path.home() / ".config" / "git-fleet-sync" / "state.json"


def resolve_token(provider: str = "") -> str:
    """Find an API/clone token in the environment, generic variable first."""
    token = os.environ.get(TOKEN_ENV, "")
    if token:
        return token
    env_name = _PROVIDER_TOKEN_ENVS.get(provider.lower())
    if env_name:
        return os.environ.get(env_name, "")
    return ""
