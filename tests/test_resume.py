import logging

import pytest

from fedora_provision.catalog import load_catalog
from fedora_provision.engine import RunOptions
from fedora_provision.errors import JournalError
from fedora_provision.models import OutcomeKind, RunStatus, Severity, Step


def kinds(journal):
    return {r.step_id: r.outcome.kind for r in journal.results}


def test_resume_skips_finished_steps_and_retries_failures(recorder, engine, run_context):
    broken = {"B", "C"}

    def flaky(step_id):
        def action(ctx):
            recorder.calls.append(step_id)
            if step_id in broken:
                raise RuntimeError(f"{step_id} broke")

        return action

    catalog = load_catalog(
        [
            Step(id="A", description="A", action=flaky("A")),
            Step(id="B", description="B", action=flaky("B"), severity=Severity.RECOVERABLE),
            Step(id="C", description="C", action=flaky("C"), severity=Severity.FATAL),
            Step(id="D", description="D", action=flaky("D")),
        ]
    )
    first = engine.run(catalog, run_context)
    assert first.status == RunStatus.ABORTED
    assert kinds(first) == {
        "A": OutcomeKind.SUCCEEDED,
        "B": OutcomeKind.FAILED_RECOVERABLE,
        "C": OutcomeKind.FAILED_FATAL,
    }

    broken.clear()
    recorder.calls.clear()
    second = engine.run(catalog, run_context, RunOptions(resume_from=first.run_id))

    assert second.run_id != first.run_id
    assert second.resumed_from == first.run_id
    assert second.status == RunStatus.COMPLETED
    assert recorder.calls == ["B", "C", "D"]
    assert kinds(second) == {
        "A": OutcomeKind.SKIPPED,
        "B": OutcomeKind.SUCCEEDED,
        "C": OutcomeKind.SUCCEEDED,
        "D": OutcomeKind.SUCCEEDED,
    }
    assert f"in run {first.run_id}" in second.results[0].outcome.detail


def test_resume_keeps_skipped_steps_skipped(recorder, engine, run_context):
    catalog = load_catalog(
        [
            recorder.step("guarded", precondition=lambda ctx: False),
            recorder.step("last", fails=True),
        ]
    )
    first = engine.run(catalog, run_context)
    second = engine.run(catalog, run_context, RunOptions(resume_from=first.run_id))

    assert second.results[0].outcome.detail.startswith("already skipped")
    assert recorder.calls == ["last", "last"]


def test_crash_mid_step_leaves_a_resumable_journal(engine, store, run_context, caplog):
    crash = {"now": True}
    calls = []

    def install(ctx):
        calls.append("install")
        if crash["now"]:
            raise KeyboardInterrupt

    catalog = load_catalog(
        [
            Step(id="repo", description="repo", action=lambda ctx: calls.append("repo")),
            Step(id="install", description="install", action=install),
        ]
    )
    with pytest.raises(KeyboardInterrupt):
        engine.run(catalog, run_context)

    crashed_id = store.latest_run_id()
    crashed = store.load(crashed_id)
    assert crashed.status == RunStatus.RUNNING
    assert not crashed.is_finished
    assert [r.step_id for r in crashed.results] == ["repo"]
    assert crashed.interrupted_steps == ["install"]

    crash["now"] = False
    calls.clear()
    with caplog.at_level(logging.WARNING, logger="provision-tests"):
        resumed = engine.run(catalog, run_context, RunOptions(resume_from="latest"))

    assert resumed.resumed_from == crashed_id
    assert calls == ["install"]
    assert kinds(resumed)["install"] == OutcomeKind.SUCCEEDED
    assert any("did not finish" in r.getMessage() for r in caplog.records)


def test_torn_last_record_is_ignored(engine, store, recorder, run_context):
    journal = engine.run(load_catalog([recorder.step("a")]), run_context)
    path = store.path_for(journal.run_id)
    with open(path, "a", encoding="utf-8") as fh:
        fh.write('{"event": "step_fini')

    loaded = store.load(journal.run_id)
    assert [r.step_id for r in loaded.results] == ["a"]
    assert loaded.status == RunStatus.COMPLETED


def test_resume_latest_ignores_dry_runs(recorder, engine, store, run_context):
    catalog = load_catalog([recorder.step("a")])
    real = engine.run(catalog, run_context)
    engine.run(catalog, run_context, RunOptions(dry_run=True))

    assert store.resolve("latest") == real.run_id


def test_resume_of_unknown_run_fails_before_any_step(recorder, engine, run_context):
    catalog = load_catalog([recorder.step("a")])
    with pytest.raises(JournalError):
        engine.run(catalog, run_context, RunOptions(resume_from="20240101-000000-abcdef"))
    with pytest.raises(JournalError):
        engine.run(catalog, run_context, RunOptions(resume_from="latest"))
    with pytest.raises(JournalError):
        engine.run(catalog, run_context, RunOptions(resume_from="../etc/passwd"))
    assert recorder.calls == []


def test_steps_dropped_from_catalog_are_reported(recorder, engine, run_context, caplog):
    first = engine.run(load_catalog([recorder.step("old"), recorder.step("kept")]), run_context)
    with caplog.at_level(logging.WARNING, logger="provision-tests"):
        second = engine.run(
            load_catalog([recorder.step("kept"), recorder.step("new")]),
            run_context,
            RunOptions(resume_from=first.run_id),
        )

    assert kinds(second) == {"kept": OutcomeKind.SKIPPED, "new": OutcomeKind.SUCCEEDED}
    assert any("old" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)
