"""Tests for the scheduler / execution coordinator."""

import os
import shlex
import threading

import pytest

from conftest import Behaviour, FakeExecutor, make_workflow
from jobgraph.conditions import UpstreamOutcome
from jobgraph.config import EngineConfig
from jobgraph.errors import CancellationError
from jobgraph.executor import SubprocessExecutor
from jobgraph.model import EventKind, RunState, TriggerContext
from jobgraph.report import RunStatus
from jobgraph.runner import Scheduler, aggregate, run_instance, run_workflow


TWO_JOBS = """
on: push
jobs:
  a:
    steps:
      - run: make a
  b:
    needs: a
    steps:
      - run: make b
"""

MATRIX_X = """
on: push
jobs:
  c:
    strategy:
      fail-fast: {fail_fast}
      matrix:
        x: [1, 2, 3]
    steps:
      - run: test ${{{{ matrix.x }}}}
"""


def _run(text, trigger, config, executor, sinks=()):
    wf = make_workflow(text)
    return run_workflow(wf, trigger, executor=executor, config=config, sinks=sinks)


class TestDependencies:
    def test_failed_need_skips_dependent(self, push, config, recorder):
        """A fails, B (default condition) is Skipped and never runs."""
        fake = FakeExecutor({"a": Behaviour(exit_code=1)})
        report = _run(TWO_JOBS, push, config, fake, sinks=[recorder])

        assert report.states() == {"a": RunState.FAILED, "b": RunState.SKIPPED}
        assert report.instance("a").reason == "exit_code"
        assert report.instance("b").reason == "needs_not_successful"
        assert RunState.RUNNING not in recorder.path("b")
        assert not fake.called("b")
        assert report.status is RunStatus.FAILED

    def test_success_path_transitions(self, push, config, recorder):
        fake = FakeExecutor()
        report = _run(TWO_JOBS, push, config, fake, sinks=[recorder])

        assert report.status is RunStatus.SUCCEEDED
        assert recorder.path("a") == [
            RunState.PENDING, RunState.READY, RunState.RUNNING, RunState.SUCCEEDED,
        ]
        assert recorder.path("b") == [
            RunState.PENDING, RunState.BLOCKED, RunState.READY, RunState.RUNNING, RunState.SUCCEEDED,
        ]

    def test_never_dispatched_before_dependencies_terminal(self, push, config, recorder):
        text = """
on: push
jobs:
  build:
    strategy:
      matrix:
        os: [linux, mac]
    steps:
      - run: build
  test:
    needs: build
    strategy:
      matrix:
        shard: [1, 2]
    steps:
      - run: test
  deploy:
    needs: [build, test]
    steps:
      - run: deploy
"""
        fake = FakeExecutor({"build": Behaviour(delay=0.05), "test": Behaviour(delay=0.02)})
        _run(text, push, config, fake, sinks=[recorder])

        events = recorder.events
        needs = {"test": ["build"], "deploy": ["build", "test"]}
        for i, ev in enumerate(events):
            if ev.new is RunState.RUNNING and ev.job in needs:
                earlier = events[:i]
                for need in needs[ev.job]:
                    upstream = {e.instance for e in events if e.job == need}
                    done = {e.instance for e in earlier if e.job == need and e.new.terminal}
                    assert upstream == done

    def test_always_and_failure_override(self, push, config):
        text = """
on: push
jobs:
  a:
    steps:
      - run: make
  cleanup:
    needs: a
    if: always()
    steps:
      - run: cleanup
  notify:
    needs: a
    if: failure()
    steps:
      - run: notify
  deploy:
    needs: a
    steps:
      - run: deploy
"""
        fake = FakeExecutor({"a": Behaviour(exit_code=2)})
        report = _run(text, push, config, fake)

        assert report.states() == {
            "a": RunState.FAILED,
            "cleanup": RunState.SUCCEEDED,
            "notify": RunState.SUCCEEDED,
            "deploy": RunState.SKIPPED,
        }
        assert report.instance("a").exit_code == 2

    def test_skip_propagates_through_chain(self, push, config):
        text = """
on: push
jobs:
  a:
    if: "false"
    steps:
      - run: a
  b:
    needs: a
    steps:
      - run: b
  c:
    needs: b
    steps:
      - run: c
"""
        fake = FakeExecutor()
        report = _run(text, push, config, fake)

        assert set(report.states().values()) == {RunState.SKIPPED}
        assert report.instance("a").reason == "condition_false"
        assert report.status is RunStatus.SKIPPED
        assert fake.calls == []


class TestFailFast:
    def test_fail_fast_false_leaves_siblings_alone(self, push, config):
        fake = FakeExecutor({"c[x=2]": Behaviour(exit_code=1)})
        wf = make_workflow(MATRIX_X.format(fail_fast="false"))
        scheduler = Scheduler(wf, push, executor=fake, config=config)
        report = scheduler.run()

        assert report.states() == {
            "c[x=1]": RunState.SUCCEEDED,
            "c[x=2]": RunState.FAILED,
            "c[x=3]": RunState.SUCCEEDED,
        }
        assert scheduler.outcomes["c"].result is RunState.FAILED
        assert report.status is RunStatus.FAILED

    def test_fail_fast_cancels_running_siblings(self, push, config):
        fake = FakeExecutor({
            "c[x=1]": Behaviour(block=True),
            "c[x=2]": Behaviour(exit_code=1, delay=0.05),
            "c[x=3]": Behaviour(block=True),
        })
        report = _run(MATRIX_X.format(fail_fast="true"), push, config, fake)

        assert report.states() == {
            "c[x=1]": RunState.CANCELLED,
            "c[x=2]": RunState.FAILED,
            "c[x=3]": RunState.CANCELLED,
        }
        assert report.instance("c[x=1]").reason == "fail_fast"

    def test_fail_fast_cancels_undispatched_siblings(self, push):
        fake = FakeExecutor({"c[x=1]": Behaviour(exit_code=1)})
        config = EngineConfig(max_workers=1, poll_interval=0.01)
        report = _run(MATRIX_X.format(fail_fast="true"), push, config, fake)

        assert report.states()["c[x=1]"] is RunState.FAILED
        assert report.states()["c[x=2]"] is RunState.CANCELLED
        assert report.states()["c[x=3]"] is RunState.CANCELLED
        assert [k for k, _ in fake.calls] == ["c[x=1]"]

    def test_cancelled_sibling_is_never_succeeded(self, push, config):
        fake = FakeExecutor({
            "c[x=1]": Behaviour(exit_code=1),
            "c[x=2]": Behaviour(delay=0.2),
            "c[x=3]": Behaviour(delay=0.2),
        })
        report = _run(MATRIX_X.format(fail_fast="true"), push, config, fake)

        assert report.states()["c[x=2]"] is not RunState.SUCCEEDED
        assert report.states()["c[x=3]"] is not RunState.SUCCEEDED


class TestConditions:
    def test_pull_request_skips_job_without_executor_calls(self, pull_request, config):
        text = """
on: [push, pull_request]
jobs:
  clippy:
    if: github.event_name != 'pull_request'
    steps:
      - run: cargo clippy
  test:
    steps:
      - run: cargo test
"""
        fake = FakeExecutor()
        report = _run(text, pull_request, config, fake)

        assert report.states() == {"clippy": RunState.SKIPPED, "test": RunState.SUCCEEDED}
        assert report.instance("clippy").reason == "condition_false"
        assert not fake.called("clippy")

    @pytest.mark.parametrize("value, expected", [
        ("true", RunState.SUCCEEDED),
        ("false", RunState.SKIPPED),
    ])
    def test_gate_output_controls_downstream(self, push, config, value, expected):
        text = """
on: push
jobs:
  pre_ci:
    steps:
      - run: gate
  test:
    needs: pre_ci
    if: needs.pre_ci.outputs.continue
    strategy:
      matrix:
        rust: [beta, stable]
    steps:
      - run: cargo test
"""
        fake = FakeExecutor({"pre_ci": Behaviour(outputs={"continue": value})})
        report = _run(text, push, config, fake)

        assert report.instance("pre_ci").outputs == {"continue": value}
        assert {i.state for i in report.for_job("test")} == {expected}

    def test_undefined_output_skips_instance_and_run_continues(self, push, config):
        text = """
on: push
jobs:
  pre_ci:
    steps:
      - run: gate
  test:
    needs: pre_ci
    if: needs.pre_ci.outputs.continue
    steps:
      - run: test
  lint:
    steps:
      - run: lint
"""
        fake = FakeExecutor()
        report = _run(text, push, config, fake)

        test = report.instance("test")
        assert test.state is RunState.SKIPPED
        assert test.reason == "undefined_reference"
        assert "needs.pre_ci.outputs.continue" in test.detail
        assert report.instance("lint").state is RunState.SUCCEEDED
        assert report.status is RunStatus.SUCCEEDED

    def test_matrix_value_in_condition(self, push, config):
        text = """
on: push
jobs:
  test:
    if: matrix.os == 'linux'
    strategy:
      matrix:
        os: [linux, windows]
    steps:
      - run: test
"""
        report = _run(text, push, config, FakeExecutor())

        assert report.states() == {
            "test[os=linux]": RunState.SUCCEEDED,
            "test[os=windows]": RunState.SKIPPED,
        }


RUST_CI = """
name: CI

on:
  push:
  pull_request:
  schedule: [cron: "40 1 * * *"]

permissions:
  contents: read

env:
  RUSTFLAGS: -Dwarnings

jobs:
  pre_ci:
    uses: dtolnay/.github/.github/workflows/pre_ci.yml@master

  test:
    name: Rust ${{matrix.rust}}
    needs: pre_ci
    if: needs.pre_ci.outputs.continue
    runs-on: ubuntu-latest
    strategy:
      fail-fast: false
      matrix:
        rust: [beta, stable, 1.56.0]
        include:
          - rust: nightly
            rustflags: --cfg thiserror_nightly_testing
    timeout-minutes: 45
    steps:
      - uses: actions/checkout@v3
      - uses: dtolnay/rust-toolchain@master
        with:
          toolchain: ${{matrix.rust}}
          components: rust-src
      - run: cargo test --all
        env:
          RUSTFLAGS: ${{matrix.rustflags}} ${{env.RUSTFLAGS}}

  msrv:
    name: Rust 1.31.0
    needs: pre_ci
    if: needs.pre_ci.outputs.continue
    runs-on: ubuntu-latest
    timeout-minutes: 45
    steps:
      - uses: actions/checkout@v3
      - uses: dtolnay/rust-toolchain@1.31.0
        with:
          components: rust-src
      - run: cargo check

  clippy:
    name: Clippy
    runs-on: ubuntu-latest
    if: github.event_name != 'pull_request'
    timeout-minutes: 45
    steps:
      - uses: actions/checkout@v3
      - uses: dtolnay/rust-toolchain@nightly
        with:
          components: clippy, rust-src
      - run: cargo clippy --tests -- -Dclippy::all -Dclippy::pedantic

  miri:
    name: Miri
    needs: pre_ci
    if: needs.pre_ci.outputs.continue
    runs-on: ubuntu-latest
    timeout-minutes: 45
    steps:
      - uses: actions/checkout@v3
      - uses: dtolnay/rust-toolchain@miri
      - run: cargo miri test
        env:
          MIRIFLAGS: -Zmiri-strict-provenance

  outdated:
    name: Outdated
    runs-on: ubuntu-latest
    if: github.event_name != 'pull_request'
    timeout-minutes: 45
    steps:
      - uses: actions/checkout@v3
      - uses: dtolnay/install@cargo-outdated
      - run: cargo outdated --workspace --exit-code 1
"""

GATED = ("test", "msrv", "miri")


class EchoCargo(SubprocessExecutor):
    """Resolves actions through the table but only echoes `run` commands."""

    def command_for(self, step):
        command = super().command_for(step)
        return f"echo {shlex.quote(command)}" if step.run is not None else command


class TestCalledWorkflowGate:
    @pytest.mark.skipif(os.name != "posix", reason="uses POSIX shell commands")
    def test_gate_action_output_drives_dependents(self, push, tmp_path):
        config = EngineConfig(
            max_workers=4,
            poll_interval=0.01,
            workdir=str(tmp_path),
            actions={
                "dtolnay/.github/.github/workflows/pre_ci.yml": 'echo "continue=true" >> "$JOBGRAPH_OUTPUT"',
                "actions/checkout": "true",
                "dtolnay/rust-toolchain": "true",
                "dtolnay/install": "true",
            },
        )
        wf = make_workflow(RUST_CI, config)
        report = run_workflow(wf, push, executor=EchoCargo(config), config=config)

        assert report.status is RunStatus.SUCCEEDED
        assert report.instance("pre_ci").outputs == {"continue": "true"}
        ran = [k for k, s in report.states().items() if s is RunState.SUCCEEDED]
        assert len([k for k in ran if k.startswith("test[")]) == 4
        assert {"msrv", "miri", "clippy", "outdated"} <= set(ran)

    def test_unconfigured_gate_action_fails_and_skips_dependents(self, push, config):
        fake = FakeExecutor({"pre_ci": Behaviour(launch_error=True)})
        report = _run(RUST_CI, push, config, fake)

        assert report.states()["pre_ci"] is RunState.FAILED
        assert report.instance("pre_ci").reason == "launch_failed"
        for key, state in report.states().items():
            if key.split("[")[0] in GATED:
                assert state is RunState.SKIPPED
        assert report.states()["clippy"] is RunState.SUCCEEDED

    def test_gate_without_continue_skips_gated_jobs(self, pull_request, config):
        fake = FakeExecutor({"pre_ci": Behaviour(outputs={"continue": ""})})
        report = _run(RUST_CI, pull_request, config, fake)

        assert report.states()["pre_ci"] is RunState.SUCCEEDED
        assert report.status is RunStatus.SUCCEEDED
        for key, state in report.states().items():
            if key != "pre_ci":
                assert state is RunState.SKIPPED
        assert [k for k, _ in fake.calls] == ["pre_ci"]


class TestTriggers:
    def test_untriggered_event_skips_everything(self, config):
        fake = FakeExecutor()
        trigger = TriggerContext(event=EventKind.SCHEDULE, schedule="0 0 * * *")
        report = _run(TWO_JOBS, trigger, config, fake)

        assert report.status is RunStatus.SKIPPED
        assert {i.reason for i in report.instances} == {"event_not_configured"}
        assert fake.calls == []

    def test_branch_filter(self, config):
        text = """
on:
  push:
    branches: [main, "release/*"]
jobs:
  a:
    steps:
      - run: a
"""
        fake = FakeExecutor()
        ok = _run(text, TriggerContext(event=EventKind.PUSH, branch="release/1.0"), config, fake)
        no = _run(text, TriggerContext(event=EventKind.PUSH, branch="feature"), config, fake)

        assert ok.status is RunStatus.SUCCEEDED
        assert no.status is RunStatus.SKIPPED


class TestExecutionFailures:
    def test_timeout_is_distinct_reason(self, push, config):
        text = """
on: push
jobs:
  slow:
    timeout-minutes: 0.002
    steps:
      - run: sleep 100
"""
        fake = FakeExecutor({"slow": Behaviour(block=True)})
        report = _run(text, push, config, fake)

        slow = report.instance("slow")
        assert slow.state is RunState.FAILED
        assert slow.reason == "timeout"

    def test_launch_failure(self, push, config):
        fake = FakeExecutor({"a": Behaviour(launch_error=True)})
        report = _run(TWO_JOBS, push, config, fake)

        assert report.instance("a").state is RunState.FAILED
        assert report.instance("a").reason == "launch_failed"
        assert report.instance("b").state is RunState.SKIPPED

    def test_retries_rerun_failed_instance(self, push, config):
        text = """
on: push
jobs:
  flaky:
    retries: 2
    steps:
      - run: flaky
"""
        fake = FakeExecutor({"flaky": Behaviour(fail_times=2)})
        report = _run(text, push, config, fake)

        flaky = report.instance("flaky")
        assert flaky.state is RunState.SUCCEEDED
        assert flaky.attempts == 3

    def test_retries_exhausted(self, push, config):
        text = """
on: push
jobs:
  flaky:
    retries: 1
    steps:
      - run: flaky
"""
        fake = FakeExecutor({"flaky": Behaviour(exit_code=3)})
        report = _run(text, push, config, fake)

        assert report.instance("flaky").state is RunState.FAILED
        assert report.instance("flaky").attempts == 2
        assert len(fake.calls) == 2

    def test_cancellation_error_is_never_failed(self, push, config):
        def gone():
            raise CancellationError(reason="aborted", message="runner shut down")

        fake = FakeExecutor({"a": Behaviour(on_start=gone)})
        report = _run(TWO_JOBS, push, config, fake)

        assert report.instance("a").state is RunState.CANCELLED
        assert report.instance("a").detail == "runner shut down"
        assert report.instance("b").state is RunState.SKIPPED

    def test_executor_crash_fails_instance(self, push, config):
        def boom():
            raise RuntimeError("executor bug")

        fake = FakeExecutor({"a": Behaviour(on_start=boom)})
        report = _run(TWO_JOBS, push, config, fake)

        assert report.instance("a").state is RunState.FAILED
        assert "executor bug" in report.instance("a").detail


class TestConcurrency:
    def test_max_parallel_bounds_job_concurrency(self, push, config):
        text = """
on: push
jobs:
  shard:
    strategy:
      max-parallel: 1
      matrix:
        n: [1, 2, 3, 4]
    steps:
      - run: shard
"""
        fake = FakeExecutor({"shard": Behaviour(delay=0.03)})
        report = _run(text, push, config, fake)

        assert report.status is RunStatus.SUCCEEDED
        assert fake.max_concurrent["shard"] == 1

    def test_run_cancel_cancels_everything_outstanding(self, push):
        text = """
on: push
jobs:
  a:
    steps:
      - run: a
  b:
    needs: a
    steps:
      - run: b
  c:
    steps:
      - run: c
"""
        config = EngineConfig(max_workers=1, poll_interval=0.01)
        wf = make_workflow(text)
        holder = {}
        fake = FakeExecutor({"a": Behaviour(block=True, on_start=lambda: holder["s"].cancel("superseded"))})
        scheduler = Scheduler(wf, push, executor=fake, config=config)
        holder["s"] = scheduler
        report = scheduler.run()

        assert scheduler.cancelled
        assert set(report.states().values()) == {RunState.CANCELLED}
        assert {i.reason for i in report.instances} == {"aborted"}
        assert not fake.called("b")
        assert not fake.called("c")

    def test_run_cancel_still_runs_opted_in_jobs(self, push):
        text = """
on: push
jobs:
  a:
    steps:
      - run: a
  summary:
    needs: a
    if: always()
    steps:
      - run: summary
  oncancel:
    needs: a
    if: cancelled()
    steps:
      - run: notify
  deploy:
    needs: a
    steps:
      - run: deploy
  tidy:
    if: always()
    steps:
      - run: tidy
  lint:
    steps:
      - run: lint
"""
        config = EngineConfig(max_workers=1, poll_interval=0.01)
        wf = make_workflow(text)
        holder = {}
        fake = FakeExecutor({"a": Behaviour(block=True, on_start=lambda: holder["s"].cancel("superseded"))})
        scheduler = Scheduler(wf, push, executor=fake, config=config)
        holder["s"] = scheduler
        report = scheduler.run()

        assert report.states() == {
            "a": RunState.CANCELLED,
            "summary": RunState.SUCCEEDED,
            "oncancel": RunState.SUCCEEDED,
            "deploy": RunState.CANCELLED,
            "tidy": RunState.SUCCEEDED,
            "lint": RunState.CANCELLED,
        }
        assert report.instance("deploy").reason == "aborted"
        assert report.instance("lint").reason == "aborted"
        assert not fake.called("deploy")
        assert not fake.called("lint")

    def test_cancel_between_resolution_and_dispatch(self, push, config):
        class LateEvent(threading.Event):
            """Reads unset on the first check, set afterwards."""

            def __init__(self):
                super().__init__()
                self.checks = 0

            def is_set(self):
                self.checks += 1
                return self.checks > 1

        fake = FakeExecutor()
        scheduler = Scheduler(make_workflow(TWO_JOBS), push, executor=fake, config=config)
        scheduler._abort = LateEvent()
        report = scheduler.run()

        assert report.states() == {"a": RunState.CANCELLED, "b": RunState.CANCELLED}
        assert {i.reason for i in report.instances} == {"aborted"}
        assert fake.calls == []

    def test_discovery_order_dispatch(self, push):
        text = """
on: push
jobs:
  z:
    steps:
      - run: z
  a:
    strategy:
      matrix:
        v: [2, 1]
    steps:
      - run: a
"""
        fake = FakeExecutor()
        config = EngineConfig(max_workers=1, poll_interval=0.01)
        _run(text, push, config, fake)

        assert [k for k, _ in fake.calls] == ["z", "a[v=2]", "a[v=1]"]

    def test_snapshot_and_environment(self, push, config):
        text = """
on: push
env:
  LEVEL: global
  KEEP: yes
jobs:
  t:
    env:
      LEVEL: job
    strategy:
      matrix:
        py: ["3.11"]
    steps:
      - run: t
"""
        fake = FakeExecutor()
        wf = make_workflow(text)
        scheduler = Scheduler(wf, push, executor=fake, config=config)
        assert set(scheduler.snapshot().values()) == {RunState.PENDING}
        scheduler.run()

        env = fake.envs["t[py=3.11]"]
        assert env["LEVEL"] == "job"
        assert env["KEEP"] == "true"
        assert env["MATRIX_PY"] == "3.11"
        assert scheduler.snapshot() == {"t[py=3.11]": RunState.SUCCEEDED}


class TestHelpers:
    def test_aggregate(self):
        assert aggregate([RunState.SUCCEEDED, RunState.FAILED]) is RunState.FAILED
        assert aggregate([RunState.SUCCEEDED, RunState.CANCELLED]) is RunState.CANCELLED
        assert aggregate([RunState.SKIPPED, RunState.SKIPPED]) is RunState.SKIPPED
        assert aggregate([RunState.SUCCEEDED, RunState.SKIPPED]) is RunState.SUCCEEDED
        assert aggregate([]) is RunState.SKIPPED

    def test_run_instance_stops_on_first_failing_step(self):
        wf = make_workflow("""
on: push
jobs:
  a:
    steps:
      - name: one
        run: one
      - name: two
        run: two
      - name: three
        run: three
""")
        from jobgraph.matrix import expand

        (instance,) = expand(wf.jobs["a"])
        fake = FakeExecutor({"a:two": Behaviour(exit_code=5)})
        outcome = run_instance(instance, fake, threading.Event())

        assert outcome.state is RunState.FAILED
        assert outcome.exit_code == 5
        assert [s for _, s in fake.calls] == ["one", "two"]

    def test_upstream_outcome_defaults(self):
        assert UpstreamOutcome(RunState.SUCCEEDED).outputs == {}
