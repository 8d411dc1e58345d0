import json

import pytest
from typer.testing import CliRunner

from git_fleet_sync import __version__
from git_fleet_sync.cli import app

runner = CliRunner()


@pytest.fixture
def repos_file(tmp_path):
    workspace = tmp_path / "ws"
    (workspace / "existing" / ".git").mkdir(parents=True)
    path = tmp_path / "repos.json"
    path.write_text(
        json.dumps(
            {
                "strategy": "pull",
                "repos": [
                    {"name": "fresh", "clone_url": "https://example.com/fresh.git", "target_path": str(workspace / "fresh")},
                    {
                        "name": "existing",
                        "clone_url": "https://example.com/existing.git",
                        "target_path": str(workspace / "existing"),
                    },
                    {
                        "name": "off",
                        "clone_url": "https://example.com/off.git",
                        "target_path": str(workspace / "off"),
                        "enabled": False,
                    },
                ],
            }
        )
    )
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.strip() == f"git-fleet-sync {__version__}"


def test_schema():
    result = runner.invoke(app, ["--schema"])
    assert result.exit_code == 0
    schema = json.loads(result.stdout)
    assert schema["name"] == "git-fleet-sync"
    assert {tool["name"] for tool in schema["tools"]} >= {"sync", "status"}


def test_sync_plan_json(repos_file, tmp_path):
    result = runner.invoke(app, ["sync", str(repos_file), "--plan", "--json"])

    assert result.exit_code == 0, result.output
    actions = {a["repo"]["name"]: a for a in json.loads(result.stdout)["actions"]}
    assert actions["fresh"]["type"] == "clone"
    assert actions["existing"]["type"] == "update"
    assert actions["existing"]["strategy"] == "pull"
    assert actions["off"]["type"] == "skip"
    assert not (tmp_path / "ws" / "fresh").exists()


def test_sync_strategy_option_overrides_file(repos_file):
    result = runner.invoke(app, ["sync", str(repos_file), "--plan", "--json", "--strategy", "fetch"])
    actions = {a["repo"]["name"]: a for a in json.loads(result.stdout)["actions"]}
    assert actions["existing"]["strategy"] == "fetch"


def test_sync_dry_run_json(repos_file, tmp_path):
    state_file = tmp_path / "state.json"
    result = runner.invoke(app, ["sync", str(repos_file), "--dry-run", "--json", "--state-file", str(state_file)])

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["summary"]["failed"] == 0
    assert data["summary"]["skipped"] == 1
    messages = sorted(r["message"] for r in data["succeeded"])
    assert messages[0].startswith("dry-run: would clone")
    assert messages[1].startswith("dry-run: would update")
    assert not (tmp_path / "ws" / "fresh").exists()
    assert not state_file.exists()


def test_sync_failure_exits_nonzero_and_records_state(tmp_path):
    state_file = tmp_path / "state" / "run.json"
    path = tmp_path / "repos.json"
    path.write_text(
        json.dumps([{"name": "broken", "clone_url": str(tmp_path / "no-such-origin"), "target_path": str(tmp_path / "broken")}])
    )

    result = runner.invoke(app, ["sync", str(path), "--json", "--state-file", str(state_file)])

    assert result.exit_code == 1
    state = json.loads(state_file.read_text())
    assert [item["status"] for item in state["items"]] == ["failed"]


def test_sync_cleanup_requires_root(repos_file):
    result = runner.invoke(app, ["sync", str(repos_file), "--cleanup"])
    assert result.exit_code == 1
    assert "--cleanup requires" in result.stdout


def test_sync_cleanup_with_relative_root_keeps_desired_repository(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "repos" / "app" / ".git").mkdir(parents=True)
    (tmp_path / "repos" / "old" / ".git").mkdir(parents=True)
    (tmp_path / "repos.json").write_text(json.dumps([{"name": "app", "clone_url": "u", "target_path": "repos/app"}]))

    result = runner.invoke(app, ["sync", "repos.json", "--cleanup", "--root", "repos", "--plan", "--json"])

    assert result.exit_code == 0, result.output
    actions = json.loads(result.stdout)["actions"]
    deletes = [a["repo"]["target_path"] for a in actions if a["type"] == "delete"]
    assert deletes == [str(tmp_path.resolve() / "repos" / "old")]


def test_sync_duplicate_targets_rejected(tmp_path):
    path = tmp_path / "repos.json"
    path.write_text(
        json.dumps(
            [{"name": "a", "clone_url": "u", "target_path": "x"}, {"name": "b", "clone_url": "v", "target_path": "x"}]
        )
    )
    result = runner.invoke(app, ["sync", str(path), "--plan"])
    assert result.exit_code == 1
    assert "duplicate path detected" in result.stdout


def test_sync_invalid_strategy(repos_file):
    result = runner.invoke(app, ["sync", str(repos_file), "--strategy", "rebase"])
    assert result.exit_code == 1
    assert "rebase" in result.stdout


def test_sync_missing_repos_file(tmp_path):
    result = runner.invoke(app, ["sync", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "repos file not found" in result.stdout


def test_status_reports_missing_repositories(repos_file):
    result = runner.invoke(app, ["status", str(repos_file), "--json", "--skip-fetch"])

    assert result.exit_code == 1
    data = json.loads(result.stdout)
    assert data["summary"]["total"] == 3
    assert data["summary"]["unreachable"] == 3
    assert [r["name"] for r in data["results"]] == ["fresh", "existing", "off"]


def test_forge_unknown_provider(tmp_path):
    result = runner.invoke(app, ["forge", "bitbucket", "acme", str(tmp_path)])
    assert result.exit_code == 1
    assert "unknown provider" in result.stdout


def test_forge_rejects_unsafe_separator(tmp_path):
    result = runner.invoke(
        app, ["forge", "gitlab", "acme", str(tmp_path), "--subgroups", "--subgroup-mode", "flat", "--separator", "/"]
    )
    assert result.exit_code == 1
