import json

import pytest
from click.testing import CliRunner

from fedora_provision.cli import main
from fedora_provision.config import AppConfig
from fedora_provision.journal import JournalStore
from fedora_provision.models import RunStatus


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setattr("fedora_provision.engine.require_root", lambda: None)
    monkeypatch.delenv("SUDO_USER", raising=False)
    monkeypatch.delenv("PKEXEC_UID", raising=False)
    monkeypatch.delenv("FEDORA_PROVISION_JOURNAL_DIR", raising=False)
    return tmp_path


def write_catalog(directory, steps):
    path = directory / "catalog.json"
    path.write_text(json.dumps({"name": "cli test", "steps": steps}))
    return path


def user_step(step_id, script, severity="fatal"):
    return {
        "id": step_id,
        "description": f"Step {step_id}",
        "severity": severity,
        "run_as": "user",
        "action": {"type": "shell", "script": script},
    }


def invoke(directory, catalog, *extra):
    args = [
        "--catalog", str(catalog),
        "--journal-dir", str(directory / "journals"),
        "--log-file", str(directory / "provision.log"),
        "--yes",
        "--no-reboot",
        *extra,
    ]
    return CliRunner().invoke(main, args)


def test_successful_run_exits_zero_and_writes_summary(env):
    marker = env / "done"
    catalog = write_catalog(
        env,
        [
            user_step("first", f"touch {marker}"),
            user_step("optional", "exit 3", severity="recoverable"),
        ],
    )
    result = invoke(env, catalog)

    assert result.exit_code == 0, result.output
    assert marker.exists()
    store = JournalStore(env / "journals")
    [journal] = store.list_runs()
    assert journal.status == RunStatus.COMPLETED
    summary = (env / "journals" / f"{journal.run_id}.summary.txt").read_text()
    assert "[SUCCEEDED] first" in summary
    assert "[FAILED (recoverable)] optional" in summary
    assert f"--resume {journal.run_id}" in summary
    assert (env / "provision.log").stat().st_mode & 0o777 == 0o600


def test_fatal_failure_exits_one_and_resume_finishes(env):
    gate = env / "gate"
    catalog = write_catalog(
        env,
        [
            user_step("needs-gate", f"test -e {gate}"),
            user_step("after", f"touch {env / 'after'}"),
        ],
    )
    first = invoke(env, catalog)
    assert first.exit_code == 1, first.output
    assert not (env / "after").exists()

    gate.touch()
    second = invoke(env, catalog, "--resume", "latest")
    assert second.exit_code == 0, second.output
    assert (env / "after").exists()


def test_rejected_catalog_exits_two(env):
    catalog = write_catalog(env, [user_step("same", "true"), user_step("same", "true")])
    result = invoke(env, catalog)

    assert result.exit_code == 2
    assert "duplicate step ids" in result.output
    assert not (env / "journals").exists() or not list((env / "journals").glob("*.jsonl"))


def test_unknown_resume_id_exits_three(env):
    catalog = write_catalog(env, [user_step("a", "true")])
    result = invoke(env, catalog, "--resume", "20200101-000000-000000")
    assert result.exit_code == 3


def test_unknown_user_exits_three(env):
    catalog = write_catalog(env, [user_step("a", "true")])
    result = invoke(env, catalog, "--user", "no-such-user-for-provisioning")
    assert result.exit_code == 3


def test_dry_run_touches_nothing(env):
    marker = env / "marker"
    catalog = write_catalog(env, [user_step("a", f"touch {marker}")])
    result = invoke(env, catalog, "--dry-run")

    assert result.exit_code == 0, result.output
    assert not marker.exists()
    assert not list((env / "journals").glob("*.jsonl"))


def test_list_runs(env):
    catalog = write_catalog(env, [user_step("a", "true")])
    empty = invoke(env, catalog, "--list-runs")
    assert empty.exit_code == 0
    assert "No provisioning runs" in empty.output

    invoke(env, catalog)
    listed = invoke(env, catalog, "--list-runs")
    [journal] = JournalStore(env / "journals").list_runs()
    assert journal.run_id in listed.output


def test_non_string_step_id_exits_two(env):
    step = user_step("placeholder", "true")
    step["id"] = ["a"]
    catalog = write_catalog(env, [step])
    result = invoke(env, catalog)

    assert result.exit_code == 2
    assert "id must be a string" in result.output


def test_journal_dir_from_environment(env, monkeypatch):
    journals = env / "from-env"
    monkeypatch.setenv("FEDORA_PROVISION_JOURNAL_DIR", str(journals))
    catalog = write_catalog(env, [user_step("a", "true")])
    result = CliRunner().invoke(
        main,
        ["--catalog", str(catalog), "--log-file", str(env / "provision.log"), "--yes", "--no-reboot"],
    )

    assert result.exit_code == 0, result.output
    assert len(JournalStore(journals).list_runs()) == 1
    assert AppConfig().JOURNAL_DIR == "/var/lib/fedora_provision/journals"
