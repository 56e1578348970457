import pytest

from fedora_provision.actions import (
    CommandAction,
    CommandSucceeds,
    PathMissing,
    SequenceAction,
    ShellAction,
    WriteFileAction,
)
from fedora_provision.catalog import load_catalog
from fedora_provision.engine import RunOptions
from fedora_provision.errors import JournalError
from fedora_provision.models import OutcomeKind, RunStatus, Severity, Step


def build_catalog(tmp_path):
    marker = tmp_path / "installed"
    config = tmp_path / "app.conf"
    return load_catalog(
        [
            Step(
                id="install",
                description="install",
                action=CommandAction(("touch", str(marker))),
                precondition=PathMissing(str(marker)),
            ),
            Step(
                id="configure",
                description="configure",
                action=SequenceAction(
                    (
                        WriteFileAction(str(config), "enabled=1\n"),
                        ShellAction(f"echo more >> {config}"),
                    )
                ),
                severity=Severity.RECOVERABLE,
                mutates=(str(config),),
            ),
            Step(
                id="already-there",
                description="read-only check",
                action=CommandAction(("false",)),
                precondition=CommandSucceeds(("false",)),
            ),
        ]
    )


def test_dry_run_changes_nothing(tmp_path, engine, store, run_context):
    config = tmp_path / "app.conf"
    config.write_text("enabled=0\n")
    before = sorted(p.name for p in tmp_path.iterdir())

    journal = engine.run(build_catalog(tmp_path), run_context, RunOptions(dry_run=True))

    assert journal.status == RunStatus.COMPLETED
    assert journal.dry_run
    assert sorted(p.name for p in tmp_path.iterdir()) == before
    assert config.read_text() == "enabled=0\n"
    assert not store.directory.exists()
    assert store.list_runs() == []


def test_dry_run_evaluates_preconditions_and_simulates_the_rest(tmp_path, engine, run_context):
    journal = engine.run(build_catalog(tmp_path), run_context, RunOptions(dry_run=True))

    assert [(r.step_id, r.outcome.kind) for r in journal.results] == [
        ("install", OutcomeKind.SUCCEEDED),
        ("configure", OutcomeKind.SUCCEEDED),
        ("already-there", OutcomeKind.SKIPPED),
    ]
    assert all(r.outcome.simulated for r in journal.results)


def test_dry_run_has_the_shape_of_a_real_run(tmp_path, engine, run_context):
    catalog = build_catalog(tmp_path)
    simulated = engine.run(catalog, run_context, RunOptions(dry_run=True))
    real = engine.run(catalog, run_context)

    assert [r.step_id for r in simulated.results] == [r.step_id for r in real.results]
    assert [r.outcome.kind for r in simulated.results] == [r.outcome.kind for r in real.results]
    assert not any(r.outcome.simulated for r in real.results)
    assert (tmp_path / "installed").exists()
    assert (tmp_path / "app.conf").read_text() == "enabled=1\nmore\n"


def test_dry_run_logs_intended_actions(tmp_path, engine, run_context, caplog):
    with caplog.at_level("INFO"):
        engine.run(build_catalog(tmp_path), run_context, RunOptions(dry_run=True))

    messages = [r.getMessage() for r in caplog.records]
    assert any("would run: touch" in m for m in messages)
    assert any(m.startswith("Would run") and "touch" in m for m in messages)
    assert any("Would write" in m and "app.conf" in m for m in messages)


def test_dry_run_leaves_nothing_to_resume(recorder, engine, run_context):
    catalog = load_catalog([recorder.step("a")])
    dry = engine.run(catalog, run_context, RunOptions(dry_run=True))

    assert recorder.calls == []
    with pytest.raises(JournalError):
        engine.run(catalog, run_context, RunOptions(resume_from=dry.run_id))
