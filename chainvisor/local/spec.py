"""
Process specs: the declarative description of one child process, the
validation rules a launch batch must satisfy, and the loader for batch files.
"""
import os
import shutil
import logging
from pathlib import Path
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from chainvisor.local.config import effective_settings as config
from chainvisor.local.errors import ConfigError, InvalidSpec

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessSpec:
    """
    Immutable description of one child process.

    `startup_delay` holds back every spec that starts after this one, counted
    from the moment this process is confirmed running. `after_delay` holds
    back this spec itself, counted from the moment its `start_after`
    dependency is running (or from the start of the batch if it has none).
    """
    name: str
    executable: str
    args: Tuple[str, ...] = ()
    cwd: Path = field(default_factory=Path.cwd)
    env: Mapping[str, str] = field(default_factory=dict)
    log_file: Optional[Path] = None
    log_mode: str = "truncate"
    start_after: Optional[str] = None
    startup_delay: float = 0.0
    after_delay: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        object.__setattr__(self, "cwd", Path(self.cwd))
        object.__setattr__(self, "env", MappingProxyType({str(k): str(v) for k, v in self.env.items()}))
        log_file = Path(self.log_file) if self.log_file else self.cwd / "logs" / f"{self.name}.log"
        object.__setattr__(self, "log_file", log_file)

    @property
    def command_line(self) -> List[str]:
        return [self.executable, *self.args]


def merged_env(spec: ProcessSpec) -> Dict[str, str]:
    """Returns the inherited environment overlaid with the spec's overrides."""
    env = dict(os.environ)
    env.update(spec.env)
    return env


def resolve_executable(spec: ProcessSpec) -> Optional[Path]:
    """
    Resolves the spec's executable to an absolute path.

    Bare names are looked up on the PATH the child will see; anything with a
    path separator is taken relative to the spec's working directory.

    :param spec: The spec to resolve.
    :return: The executable path, or None if it does not exist or is not executable.
    """
    exe = spec.executable
    if os.sep not in exe and (os.altsep is None or os.altsep not in exe):
        found = shutil.which(exe, path=merged_env(spec).get("PATH"))
        return Path(found).resolve() if found else None

    path = Path(exe).expanduser()
    if not path.is_absolute():
        path = spec.cwd / path
    if path.is_file() and os.access(path, os.X_OK):
        return path.resolve()
    return None


def validate(spec: ProcessSpec, batch: Sequence[ProcessSpec], check_executable: bool = True) -> List[str]:
    """
    Checks one spec against the batch it belongs to. Has no side effects.

    :param spec: The spec to check.
    :param batch: Every spec of the launch batch, `spec` included.
    :param check_executable: Also require the executable to exist right now.
    :return: A list of human-readable problems, empty when the spec is valid.
    """
    problems = []
    label = spec.name or "<unnamed>"
    names = [s.name for s in batch]

    if not spec.name or not spec.name.strip():
        problems.append("process name must not be empty")
    elif names.count(spec.name) > 1:
        problems.append(f"'{label}': name is used by more than one process")

    if not spec.executable:
        problems.append(f"'{label}': no executable given")
    elif check_executable and resolve_executable(spec) is None:
        problems.append(f"'{label}': executable '{spec.executable}' not found or not executable")

    if spec.start_after is not None:
        if spec.start_after == spec.name:
            problems.append(f"'{label}': cannot start after itself")
        elif spec.start_after not in names:
            problems.append(f"'{label}': start_after references unknown process '{spec.start_after}'")

    if spec.startup_delay < 0 or spec.after_delay < 0:
        problems.append(f"'{label}': delays must not be negative")
    if spec.log_mode not in config.LOG_MODES:
        problems.append(f"'{label}': log_mode must be one of {', '.join(config.LOG_MODES)}")
    return problems


def validate_batch(specs: Sequence[ProcessSpec], check_executable: bool = False) -> None:
    """
    Validates a whole batch and raises once with every problem found.

    :raises InvalidSpec: If any spec is invalid.
    """
    problems: List[str] = []
    for spec in specs:
        for problem in validate(spec, specs, check_executable):
            if problem not in problems:
                problems.append(problem)
    if problems:
        raise InvalidSpec(problems)


#* --- Batch file loading ---
def _as_delay(raw: Any, key: str, name: str) -> float:
    try:
        return float(raw or 0)
    except (TypeError, ValueError):
        raise ConfigError(f"Process '{name}': '{key}' must be a number of seconds, got {raw!r}")


def _spec_from_record(record: Dict[str, Any], base_dir: Path) -> ProcessSpec:
    """Builds a ProcessSpec from one `processes:` entry of a batch file."""
    if not isinstance(record, dict):
        raise ConfigError(f"Each process entry must be a mapping, got {type(record).__name__}")

    name = str(record.get("name") or "")
    args = record.get("args") or []
    if isinstance(args, str):
        args = args.split()
    env = record.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"Process '{name}': 'env' must be a mapping")

    cwd = base_dir / Path(record["cwd"]).expanduser() if record.get("cwd") else base_dir
    log_file = base_dir / Path(record["log_file"]).expanduser() if record.get("log_file") else None

    return ProcessSpec(
        name=name,
        executable=str(record.get("executable") or ""),
        args=tuple(args),
        cwd=cwd,
        env=env,
        log_file=log_file,
        log_mode=str(record.get("log_mode") or config.DEFAULT_LOG_MODE),
        start_after=str(record["start_after"]) if record.get("start_after") else None,
        startup_delay=_as_delay(record.get("startup_delay"), "startup_delay", name),
        after_delay=_as_delay(record.get("after_delay"), "after_delay", name),
    )


def load_specs(path: Path) -> Tuple[List[ProcessSpec], Dict[str, Any]]:
    """
    Parses a YAML (or JSON) batch file.

    The file holds a `processes:` list of records with the ProcessSpec
    fields, and an optional `settings:` mapping with launch policy
    (`abort_on_failure`, `grace`). Relative paths resolve against the
    directory containing the file.

    :param path: The batch file to read.
    :return: The specs in file order and the batch settings.
    :raises ConfigError: If the file cannot be read or has the wrong shape.
    """
    path = Path(path)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read process batch file '{path}': {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse process batch file '{path}': {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get("processes"), list):
        raise ConfigError(f"'{path}' must contain a top-level 'processes' list")

    batch_settings = document.get("settings") or {}
    if not isinstance(batch_settings, dict):
        raise ConfigError(f"'{path}': 'settings' must be a mapping")

    base_dir = path.resolve().parent
    specs = [_spec_from_record(record, base_dir) for record in document["processes"]]
    log.debug(f"Loaded {len(specs)} process specs from {path}")
    return specs, batch_settings
