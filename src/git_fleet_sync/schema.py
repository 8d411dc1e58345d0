"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

_RUN_OPTIONS = {
    "strategy": {
        "type": "string",
        "enum": ["reset", "pull", "fetch"],
        "description": "How existing checkouts are updated (reset = fetch + reset --hard origin/HEAD)",
        "default": "reset",
    },
    "parallel": {
        "type": "integer",
        "description": "Number of repositories processed concurrently",
        "default": 4,
    },
    "retries": {
        "type": "integer",
        "description": "Extra attempts for a failing clone/update (linear backoff)",
        "default": 0,
    },
    "dry_run": {
        "type": "boolean",
        "description": "Plan and report without touching the filesystem",
        "default": False,
    },
    "resume": {
        "type": "boolean",
        "description": "Skip repositories recorded as done in the state file",
        "default": False,
    },
    "state_file": {
        "type": "string",
        "description": "Run-state file. Auto-resolved from $GIT_FLEET_SYNC_STATE → ~/.config/git-fleet-sync/state.json",
    },
    "cleanup": {
        "type": "boolean",
        "description": "Delete orphan directories under the cleanup roots",
        "default": False,
    },
    "json": {
        "type": "boolean",
        "description": "Output as JSON for machine parsing",
        "default": False,
    },
}

_ACTION_RESULT = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "target_path": {"type": "string"},
        "type": {"type": "string", "enum": ["clone", "update", "skip", "delete"]},
        "success": {"type": "boolean"},
        "message": {"type": "string"},
        "error": {"type": "string"},
    },
}

_EXECUTION_OUTPUT = {
    "type": "object",
    "properties": {
        "succeeded": {"type": "array", "items": _ACTION_RESULT},
        "failed": {"type": "array", "items": _ACTION_RESULT},
        "skipped": {"type": "array", "items": _ACTION_RESULT},
        "summary": {
            "type": "object",
            "properties": {
                "total": {"type": "integer"},
                "succeeded": {"type": "integer"},
                "failed": {"type": "integer"},
                "skipped": {"type": "integer"},
            },
        },
    },
}


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    return {
        "name": "git-fleet-sync",
        "version": __version__,
        "description": "Keep a fleet of Git repositories in a declared state: clone what is missing, update what exists, delete orphans, and diagnose health (divergence, dirty work trees, reachability) across the whole fleet.",
        "usage": "git-fleet-sync <command> [arguments] [options]",
        "tools": [
            {
                "name": "sync",
                "description": "Synchronize the repositories listed in a JSON repos file. Missing or non-git targets are cloned, existing checkouts are updated with the chosen strategy, and with --cleanup directories under --root that are not desired are deleted.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "repos_file": {
                            "type": "string",
                            "description": "JSON file: a list of repos, or {\"strategy\": ..., \"repos\": [...]}",
                        },
                        "root": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Directories scanned for orphans when --cleanup is set",
                        },
                        **_RUN_OPTIONS,
                    },
                    "required": ["repos_file"],
                },
                "outputSchema": _EXECUTION_OUTPUT,
            },
            {
                "name": "forge",
                "description": "Synchronize every repository of an organization/group or user on GitHub, GitLab or Gitea into a target directory.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "provider": {"type": "string", "enum": ["github", "gitlab", "gitea"]},
                        "owner": {"type": "string", "description": "Organization, group or user name"},
                        "target": {"type": "string", "description": "Local directory to sync into"},
                        "user": {
                            "type": "boolean",
                            "description": "Treat owner as a user rather than an organization",
                            "default": False,
                        },
                        "token": {
                            "type": "string",
                            "description": "API/clone token. Defaults to $GIT_FLEET_SYNC_TOKEN or the provider's *_TOKEN variable",
                        },
                        "base_url": {"type": "string", "description": "API base URL for self-hosted instances"},
                        "protocol": {"type": "string", "enum": ["https", "ssh"], "default": "https"},
                        "include_archived": {"type": "boolean", "default": False},
                        "include_forks": {"type": "boolean", "default": False},
                        "include_private": {"type": "boolean", "default": False},
                        "language": {"type": "array", "items": {"type": "string"}},
                        "min_stars": {"type": "integer", "default": 0},
                        "max_stars": {"type": "integer", "default": 0},
                        "pushed_after": {"type": "string", "description": "ISO date, e.g. 2025-01-01"},
                        "subgroups": {"type": "boolean", "default": False},
                        "subgroup_mode": {"type": "string", "enum": ["flat", "nested"], "default": "flat"},
                        "separator": {"type": "string", "default": "-"},
                        **_RUN_OPTIONS,
                    },
                    "required": ["provider", "owner", "target"],
                },
                "outputSchema": _EXECUTION_OUTPUT,
            },
            {
                "name": "status",
                "description": "Diagnose the health of every repository in a repos file. Fetches remotes (unless --skip-fetch), classifies divergence and working tree, and gives a recommendation per repository. Exits 1 if any repository is in error or unreachable.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "repos_file": {"type": "string"},
                        "skip_fetch": {"type": "boolean", "default": False},
                        "timeout": {
                            "type": "number",
                            "description": "Per-repository fetch timeout in seconds",
                            "default": 30,
                        },
                        "parallel": {"type": "integer", "default": 4},
                        "no_worktree": {"type": "boolean", "default": False},
                        "no_recommendations": {"type": "boolean", "default": False},
                        "json": {"type": "boolean", "default": False},
                    },
                    "required": ["repos_file"],
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "results": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "name": {"type": "string"},
                                    "target_path": {"type": "string"},
                                    "health_status": {
                                        "type": "string",
                                        "enum": ["healthy", "warning", "error", "unreachable"],
                                    },
                                    "network_status": {
                                        "type": ["string", "null"],
                                        "enum": ["ok", "timeout", "unreachable", "auth-failed", None],
                                    },
                                    "divergence": {
                                        "type": ["string", "null"],
                                        "enum": [
                                            "none",
                                            "fast-forward",
                                            "diverged",
                                            "ahead",
                                            "conflict",
                                            "no-upstream",
                                            None,
                                        ],
                                    },
                                    "work_tree_status": {"type": ["string", "null"]},
                                    "current_branch": {"type": "string"},
                                    "upstream_branch": {"type": "string"},
                                    "ahead_by": {"type": "integer"},
                                    "behind_by": {"type": "integer"},
                                    "modified_files": {"type": "integer"},
                                    "untracked_files": {"type": "integer"},
                                    "conflict_files": {"type": "integer"},
                                    "recommendation": {"type": "string"},
                                    "error": {"type": "string"},
                                },
                            },
                        },
                        "summary": {
                            "type": "object",
                            "properties": {
                                "healthy": {"type": "integer"},
                                "warning": {"type": "integer"},
                                "error": {"type": "integer"},
                                "unreachable": {"type": "integer"},
                                "total": {"type": "integer"},
                            },
                        },
                    },
                },
            },
        ],
        "reposFileFormat": {
            "description": "JSON list of repository objects, or an object with 'strategy' and 'repos'",
            "fields": {
                "name": "Directory name (default: derived from clone_url)",
                "clone_url": "HTTPS or SSH clone URL",
                "target_path": "Checkout path, relative to the repos file (default: <name>); $VARS and ~ expanded",
                "branch": "Branch to check out, comma-separated fallback list (e.g. 'develop,main')",
                "strict_branch_checkout": "Fail the repository if no branch can be checked out",
                "strategy": "Per-repository update strategy",
                "enabled": "false turns the repository into a skip",
                "additional_remotes": "Object of remote name -> URL",
                "auth": "token / token_env / provider / ssh_key_path / ssh_key_content / ssh_port",
            },
        },
        "notes": [
            "All commands support --json for machine-readable output",
            "Use 'status --json' first to understand the current state before syncing",
            "The reset strategy discards local changes; use --strategy pull or fetch to keep them",
            "Orphan cleanup never deletes a directory that contains a desired repository",
        ],
    }
