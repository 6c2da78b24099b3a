import signal
import threading
import time

import pytest

from conftest import IGNORE_SIGTERM, python_code
from chainvisor.local.errors import ShutdownRequested, SupervisorError, TimedOut, UnknownProcess
from chainvisor.local.supervisor import Launcher, LifecycleState, ProcessHandle, Supervisor
from chainvisor.local.supervisor import process_utils
from chainvisor.local.supervisor.persistence import read_state_file, request_shutdown, shutdown_signal_path


def test_wait_any_reports_exits_in_order(supervisor, launcher, make_spec):
    launcher.launch_all([make_spec("slow", python_code(1.0, 2)), make_spec("quick", python_code(0.4, 0))])

    assert supervisor.wait_any(timeout=10) == ("quick", LifecycleState.EXITED)
    assert supervisor.wait_any(timeout=10) == ("slow", LifecycleState.CRASHED)
    assert supervisor.wait_any(timeout=1) is None
    assert supervisor.exit_code("quick") == 0
    assert supervisor.exit_code("slow") == 2


def test_wait_any_times_out_while_processes_run(supervisor, launcher, make_spec):
    launcher.launch_all([make_spec("sleeper")])
    with pytest.raises(TimedOut):
        supervisor.wait_any(timeout=0.2)
    with pytest.raises(TimedOut):
        supervisor.wait_all(timeout=0.2)


def test_wait_any_without_processes_returns_none(supervisor):
    assert supervisor.wait_any(timeout=0.1) is None
    assert supervisor.wait_all(timeout=0.1) == {}


def test_shutdown_all_stops_everything_gracefully(supervisor, launcher, make_spec):
    handles, _ = launcher.launch_all([make_spec("relay"), make_spec("collator", start_after="relay")])
    supervisor.shutdown_all(grace=5)

    assert supervisor.status() == {"relay": LifecycleState.EXITED, "collator": LifecycleState.EXITED}
    assert supervisor.exit_code("relay") == -signal.SIGTERM
    assert all(h.sink is None for h in handles)
    assert supervisor.failure_count() == 0

    supervisor.shutdown_all(grace=5)
    assert supervisor.status() == {"relay": LifecycleState.EXITED, "collator": LifecycleState.EXITED}


def test_shutdown_all_kills_processes_ignoring_sigterm(supervisor, make_spec):
    Launcher(supervisor, confirm_window=1.0).launch_all([make_spec("stubborn", IGNORE_SIGTERM)])
    supervisor.shutdown_all(grace=0.5)

    assert supervisor.state_of("stubborn") is LifecycleState.KILLED
    assert supervisor.exit_code("stubborn") == -signal.SIGKILL
    assert supervisor.wait_any(timeout=1) == ("stubborn", LifecycleState.KILLED)
    assert supervisor.failure_count() == 1


def test_crash_is_recorded_not_raised(supervisor, launcher, make_spec):
    handles, errors = launcher.launch_all([make_spec("crasher", python_code(0.3, 7)), make_spec("steady")])
    assert errors == []
    assert supervisor.wait_any(timeout=10) == ("crasher", LifecycleState.CRASHED)
    assert supervisor.state_of("steady") is LifecycleState.RUNNING

    rows = {row["name"]: row for row in supervisor.summary()}
    assert rows["crasher"]["exit_code"] == 7
    assert rows["crasher"]["state"] is LifecycleState.CRASHED
    assert rows["steady"]["pid"] == supervisor.get("steady").pid
    assert handles[0].sink is None


def test_unknown_names_raise(supervisor):
    with pytest.raises(UnknownProcess):
        supervisor.get("nope")
    with pytest.raises(KeyError):
        supervisor.state_of("nope")
    with pytest.raises(UnknownProcess):
        supervisor.release("nope")


def test_release_only_accepts_terminated_processes(supervisor, launcher, make_spec):
    launcher.launch_all([make_spec("node")])
    with pytest.raises(SupervisorError):
        supervisor.release("node")

    supervisor.shutdown_all(grace=5)
    handle = supervisor.release("node")
    assert handle.state.is_terminal
    assert supervisor.names() == []


def test_register_rejects_a_live_duplicate(supervisor, launcher, make_spec):
    launcher.launch_all([make_spec("node")])
    with pytest.raises(SupervisorError):
        supervisor.register(ProcessHandle(make_spec("node"), started_at=0.0))


def test_state_file_follows_the_session(state_path, make_spec):
    supervisor = Supervisor(state_path=state_path, poll_interval=0.05, startup_timeout=5)
    try:
        handles, _ = Launcher(supervisor, confirm_window=0.1).launch_all([make_spec("a"), make_spec("b")])
        state = read_state_file(state_path)
        assert [p["name"] for p in state["processes"]] == ["a", "b"]
        assert [p["state"] for p in state["processes"]] == ["running", "running"]
        assert state["processes"][0]["pid"] == handles[0].pid
        assert state["processes"][0]["create_time"] is not None

        supervisor.shutdown_all(grace=5)
        assert not state_path.exists()
    finally:
        supervisor.shutdown_all(grace=1)
        supervisor.close()


def test_detach_leaves_children_running(state_path, make_spec):
    supervisor = Supervisor(state_path=state_path, poll_interval=0.05, startup_timeout=5)
    handles, _ = Launcher(supervisor, confirm_window=0.1).launch_all([make_spec("background")])
    supervisor.detach()
    try:
        assert handles[0].popen.poll() is None
        assert handles[0].sink is None
        assert read_state_file(state_path)["processes"][0]["state"] == "running"
    finally:
        handles[0].popen.kill()
        handles[0].popen.wait()


def test_shutdown_signal_file_is_cleared_with_the_session(state_path, make_spec):
    supervisor = Supervisor(state_path=state_path, poll_interval=0.05, startup_timeout=5)
    try:
        Launcher(supervisor, confirm_window=0.1).launch_all([make_spec("a", python_code(0.3))])
        request_shutdown(state_path)
        supervisor.wait_all(timeout=10)
        assert not shutdown_signal_path(state_path).exists()
        assert not state_path.exists()
    finally:
        supervisor.close()


#* --- Shutdown ordering and races ---
def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not reached in time"
        time.sleep(0.02)


def test_shutdown_all_signals_in_reverse_launch_order(supervisor, launcher, make_spec, monkeypatch):
    signalled = []
    real_signal_tree = process_utils.signal_tree

    def recording_signal_tree(pid, force=False):
        if not force:
            signalled.append(pid)
        return real_signal_tree(pid, force=force)

    monkeypatch.setattr(process_utils, "signal_tree", recording_signal_tree)
    handles, _ = launcher.launch_all([
        make_spec("relay"),
        make_spec("collator", start_after="relay"),
        make_spec("indexer", start_after="collator"),
    ])
    supervisor.shutdown_all(grace=5)

    assert signalled == [h.pid for h in reversed(handles)]
    assert set(supervisor.status().values()) == {LifecycleState.EXITED}


def test_register_is_refused_once_shutdown_has_begun(supervisor, launcher, make_spec):
    supervisor.shutdown_all(grace=1)
    with pytest.raises(ShutdownRequested):
        supervisor.register(ProcessHandle(make_spec("late"), started_at=time.time()))

    handles, errors = launcher.launch_all([make_spec("late")])
    assert handles == [] and errors == []
    assert supervisor.names() == []


def test_shutdown_during_a_delayed_launch_starts_nothing_more(supervisor, launcher, make_spec):
    specs = [
        make_spec("relay"),
        make_spec("collator", start_after="relay", after_delay=2.0),
        make_spec("indexer", start_after="collator"),
    ]
    launch = threading.Thread(target=launcher.launch_all, args=(specs,), daemon=True)
    launch.start()
    _wait_for(lambda: "relay" in supervisor.names() and supervisor.state_of("relay") is LifecycleState.RUNNING)

    supervisor.shutdown_all(grace=2)
    launch.join(timeout=10)

    assert not launch.is_alive()
    assert supervisor.names() == ["relay"]
    assert supervisor.state_of("relay") is LifecycleState.EXITED


def test_shutdown_waits_for_a_starting_process_then_stops_it(supervisor, make_spec):
    slow_launcher = Launcher(supervisor, confirm_window=1.0)
    launch = threading.Thread(target=slow_launcher.launch_all, args=([make_spec("relay"), make_spec("collator")],),
                              daemon=True)
    launch.start()
    _wait_for(lambda: "relay" in supervisor.names())

    supervisor.shutdown_all(grace=2)
    launch.join(timeout=10)

    assert not launch.is_alive()
    assert supervisor.names() == ["relay"]
    assert supervisor.state_of("relay") is LifecycleState.EXITED
    assert supervisor.get("relay").popen.poll() is not None


def test_status_can_be_polled_while_shutting_down(supervisor, make_spec):
    Launcher(supervisor, confirm_window=1.0).launch_all([make_spec("polite"), make_spec("stubborn", IGNORE_SIGTERM)])
    done = threading.Event()
    snapshots, failures = [], []

    def poll_status():
        while not done.is_set():
            try:
                snapshots.append(supervisor.status())
            except Exception as e:
                failures.append(e)
            time.sleep(0.01)

    poller = threading.Thread(target=poll_status, daemon=True)
    poller.start()
    try:
        supervisor.shutdown_all(grace=0.5)
    finally:
        done.set()
        poller.join(timeout=5)

    assert failures == []
    assert snapshots
    assert supervisor.status() == {"polite": LifecycleState.EXITED, "stubborn": LifecycleState.KILLED}
