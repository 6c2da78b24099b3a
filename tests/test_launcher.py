import pytest

from conftest import python_code
from chainvisor.local.errors import CyclicDependency, FailedToStart, InvalidSpec
from chainvisor.local.spec import ProcessSpec
from chainvisor.local.supervisor import Launcher, LifecycleState, Supervisor, order_specs


class RecordingSupervisor(Supervisor):
    """Remembers the state every handle had when it was registered."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.registered = []

    def register(self, handle):
        self.registered.append((handle.name, handle.state))
        super().register(handle)


#* --- Ordering ---
def test_order_specs_keeps_input_order_without_constraints(make_spec):
    specs = [make_spec("c"), make_spec("a"), make_spec("b")]
    assert [s.name for s in order_specs(specs)] == ["c", "a", "b"]


def test_order_specs_places_dependents_after_their_dependency(make_spec):
    specs = [make_spec("collator", start_after="relay-a"), make_spec("relay-a"), make_spec("relay-b")]
    assert [s.name for s in order_specs(specs)] == ["relay-a", "relay-b", "collator"]


def test_order_specs_reports_the_cycle(make_spec):
    specs = [make_spec("solo"), make_spec("a", start_after="b"), make_spec("b", start_after="a")]
    with pytest.raises(CyclicDependency) as excinfo:
        order_specs(specs)
    assert sorted(excinfo.value.cycle) == ["a", "b"]


def test_cyclic_batch_starts_nothing(supervisor, launcher, make_spec):
    specs = [make_spec("a", start_after="b"), make_spec("b", start_after="a")]
    with pytest.raises(CyclicDependency):
        launcher.launch_all(specs)
    assert supervisor.names() == []


def test_invalid_batch_starts_nothing(supervisor, launcher, make_spec):
    specs = [make_spec("ok"), make_spec("broken", start_after="missing")]
    with pytest.raises(InvalidSpec) as excinfo:
        launcher.launch_all(specs)
    assert "missing" in str(excinfo.value)
    assert supervisor.names() == []


#* --- Launching ---
def test_handles_are_registered_while_starting(make_spec):
    supervisor = RecordingSupervisor(poll_interval=0.05, startup_timeout=5)
    try:
        handles, errors = Launcher(supervisor, confirm_window=0.1).launch_all([make_spec("a"), make_spec("b")])
        assert errors == []
        assert supervisor.registered == [("a", LifecycleState.STARTING), ("b", LifecycleState.STARTING)]
        assert [h.state for h in handles] == [LifecycleState.RUNNING, LifecycleState.RUNNING]
    finally:
        supervisor.shutdown_all(grace=1)
        supervisor.close()


def test_relay_and_collator_scenario(supervisor, launcher, make_spec):
    specs = [
        make_spec("relay-a"),
        make_spec("relay-b"),
        make_spec("collator", start_after="relay-a", after_delay=0.5),
    ]
    handles, errors = launcher.launch_all(specs)

    assert errors == []
    assert [h.name for h in handles] == ["relay-a", "relay-b", "collator"]
    assert all(state is LifecycleState.RUNNING for state in supervisor.status().values())

    relay_a, _, collator = handles
    assert collator.started_at >= relay_a.running_at + 0.5
    assert len({h.pid for h in handles}) == 3


def test_startup_delay_holds_back_dependents(supervisor, launcher, make_spec):
    specs = [make_spec("base", startup_delay=0.4), make_spec("follower", start_after="base")]
    handles, errors = launcher.launch_all(specs)

    assert errors == []
    base, follower = handles
    assert follower.started_at >= base.running_at + 0.4


def test_missing_executable_does_not_stop_the_batch(supervisor, launcher, make_spec, tmp_path):
    specs = [
        make_spec("first"),
        ProcessSpec(name="ghost", executable="/nonexistent", cwd=tmp_path),
        make_spec("last"),
    ]
    handles, errors = launcher.launch_all(specs)

    assert len(errors) == 1
    assert isinstance(errors[0], FailedToStart)
    assert errors[0].name == "ghost"
    assert supervisor.state_of("first") is LifecycleState.RUNNING
    assert supervisor.state_of("ghost") is LifecycleState.FAILED_TO_START
    assert supervisor.state_of("last") is LifecycleState.RUNNING
    assert supervisor.get("ghost").pid is None


def test_dependent_of_a_failed_process_is_not_started(supervisor, launcher, make_spec, tmp_path):
    specs = [
        ProcessSpec(name="relay", executable="/nonexistent", cwd=tmp_path),
        make_spec("collator", start_after="relay"),
    ]
    handles, errors = launcher.launch_all(specs)

    assert [e.name for e in errors] == ["relay", "collator"]
    collator = supervisor.get("collator")
    assert collator.state is LifecycleState.FAILED_TO_START
    assert collator.pid is None
    assert "relay" in collator.error


def test_abort_on_failure_stops_the_batch(supervisor, make_spec, tmp_path):
    launcher = Launcher(supervisor, abort_on_failure=True, confirm_window=0.1)
    specs = [ProcessSpec(name="ghost", executable="/nonexistent", cwd=tmp_path), make_spec("never")]
    handles, errors = launcher.launch_all(specs)

    assert len(handles) == 1
    assert len(errors) == 1
    assert supervisor.names() == ["ghost"]


def test_immediate_exit_is_a_failed_start(supervisor, make_spec):
    launcher = Launcher(supervisor, confirm_window=1.0)
    handles, errors = launcher.launch_all([make_spec("flaky", python_code(0, 3))])

    assert len(errors) == 1
    assert "code 3" in errors[0].reason
    assert supervisor.state_of("flaky") is LifecycleState.FAILED_TO_START
    assert supervisor.exit_code("flaky") == 3


def test_child_gets_env_cwd_and_log_file(supervisor, launcher, make_spec, tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    code = "import os, sys; print(os.environ['NODE_ROLE'], os.getcwd()); sys.stdout.flush(); " \
           "print('boom', file=sys.stderr); import time; time.sleep(60)"
    spec = make_spec("node", code, cwd=workdir, env={"NODE_ROLE": "validator"})
    handles, errors = launcher.launch_all([spec])
    assert errors == []

    supervisor.shutdown_all(grace=2)
    content = spec.log_file.read_text()
    assert content.startswith("--- node started")
    assert f"validator {workdir.resolve()}" in content or f"validator {workdir}" in content
    assert "boom" in content


def _run_once(supervisor, spec):
    handles, errors = Launcher(supervisor, confirm_window=0.1).launch_all([spec])
    assert errors == []
    supervisor.wait_all(timeout=10)
    supervisor.release(spec.name)


def test_truncate_and_append_log_modes(supervisor, make_spec):
    printer = "print({!r}, flush=True); import time; time.sleep(0.5)"
    _run_once(supervisor, make_spec("node", printer.format("first run")))
    _run_once(supervisor, make_spec("node", printer.format("second run"), log_mode="append"))
    spec = make_spec("node", printer.format("third run"))
    content = spec.log_file.read_text()
    assert "first run" in content
    assert "second run" in content

    _run_once(supervisor, spec)
    content = spec.log_file.read_text()
    assert "third run" in content
    assert "first run" not in content
