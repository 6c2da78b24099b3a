import pytest

from chainvisor.local.errors import LogSinkError
from chainvisor.local.supervisor import LogRouter
from chainvisor.local.supervisor.log_router import tail_file


def test_open_sink_creates_missing_directories(tmp_path):
    path = tmp_path / "data" / "nested" / "log.alice"
    sink = LogRouter().open_sink(path, owner="alice")
    sink.write(b"hello\n")
    sink.close()

    lines = path.read_text().splitlines()
    assert lines[0].startswith("--- alice started ")
    assert lines[1] == "hello"


def test_truncate_empties_and_append_keeps(tmp_path):
    path = tmp_path / "node.log"
    path.write_text("old content\n")

    router = LogRouter()
    router.open_sink(path, "append").close()
    router.release(path)
    assert path.read_text().startswith("old content\n")

    router.open_sink(path, "truncate").close()
    assert "old content" not in path.read_text()


def test_a_path_is_handed_out_once(tmp_path):
    router = LogRouter()
    sink = router.open_sink(tmp_path / "shared.log")
    try:
        with pytest.raises(LogSinkError):
            router.open_sink(tmp_path / "." / "shared.log")
    finally:
        sink.close()


def test_unwritable_location_raises_log_sink_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    with pytest.raises(LogSinkError):
        LogRouter().open_sink(blocker / "node.log")


def test_unknown_mode_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        LogRouter().open_sink(tmp_path / "x.log", "rotate")


def test_tail_file_returns_the_last_lines(tmp_path):
    path = tmp_path / "big.log"
    path.write_text("".join(f"line {i}\n" for i in range(5000)))

    assert tail_file(path, 3) == ["line 4997", "line 4998", "line 4999"]
    assert tail_file(path, 0) == []
    assert len(tail_file(path, 10000)) == 5000
