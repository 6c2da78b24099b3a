import time
import logging
import threading
from pathlib import Path
from typing import IO, List, Optional, Set

from chainvisor.local.errors import LogSinkError

log = logging.getLogger(__name__)


class LogRouter:
    """
    Opens per-process log files that a child's stdout and stderr are wired to.

    Each path is handed out to a single process only; the router never
    multiplexes several processes into one file.
    """

    def __init__(self) -> None:
        self._claimed: Set[Path] = set()
        self._lock = threading.Lock()

    def open_sink(self, path: Path, mode: str = "truncate", owner: Optional[str] = None) -> IO[bytes]:
        """
        Opens or creates a log file for one process.

        :param path: Target log file. Missing parent directories are created.
        :param mode: 'append' keeps existing content, 'truncate' empties the file.
        :param owner: Process name written into the header line.
        :return: A binary file object suitable for Popen's stdout/stderr.
        :raises LogSinkError: If the file or its directory cannot be created.
        """
        if mode not in ("append", "truncate"):
            raise ValueError(f"Unknown log mode '{mode}'")

        path = Path(path).resolve()
        with self._lock:
            if path in self._claimed:
                raise LogSinkError(f"Log file '{path}' is already used by another process")

            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                sink = path.open("ab" if mode == "append" else "wb", buffering=0)
            except OSError as e:
                raise LogSinkError(f"Cannot open log file '{path}': {e}") from e
            self._claimed.add(path)

        header = f"--- {owner or path.stem} started {time.strftime('%Y-%m-%d %H:%M:%S')} ---\n"
        try:
            sink.write(header.encode("utf-8"))
        except OSError as e:
            sink.close()
            self.release(path)
            raise LogSinkError(f"Cannot write to log file '{path}': {e}") from e

        log.debug(f"Opened log sink '{path}' ({mode}) for {owner or 'process'}")
        return sink

    def release(self, path: Path) -> None:
        """Forgets a claimed path so it can be handed out again."""
        with self._lock:
            self._claimed.discard(Path(path).resolve())


def tail_file(path: Path, lines: int) -> List[str]:
    """
    Returns the last `lines` lines of a text file.

    :param path: The file to read.
    :param lines: How many trailing lines to return.
    :return: The lines without trailing newlines, oldest first.
    """
    block_size = 8192
    with Path(path).open("rb") as f:
        f.seek(0, 2)
        end = f.tell()
        data = b""
        while end > 0 and data.count(b"\n") <= lines:
            step = min(block_size, end)
            end -= step
            f.seek(end)
            data = f.read(step) + data
    text = data.decode("utf-8", errors="replace").splitlines()
    return text[-lines:] if lines > 0 else []
