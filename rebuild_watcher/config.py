"""Configuration management for rebuild-watcher.

This module loads configuration from defaults, a config file, environment
variables and CLI arguments, and builds the task list for the pipeline.

The configuration is aggregated into a :class:`Config` dataclass, which serves as
the single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Config Files (the first one found is used):
    1. ``rebuild-watcher.ini`` in the working directory, section ``[rebuild-watcher]``.
       Custom tasks are declared as ``[task:<kind>]`` sections.
    2. ``pyproject.toml`` in the working directory, table ``[tool.rebuild-watcher]``.
       Custom tasks are declared as ``[[tool.rebuild-watcher.tasks]]``.
    3. ``$XDG_CONFIG_HOME/rebuild-watcher/config.ini`` (``%APPDATA%`` on Windows,
       ``~/.config`` as fallback).

Supported Environment Variables:
    * ``REBUILD_WATCHER_WATCH_PATH``: Directory to watch.
    * ``REBUILD_WATCHER_DEBOUNCE_MS``: Debounce window in milliseconds.
    * ``REBUILD_WATCHER_RECURSIVE``: Watch subdirectories (true/false).
    * ``REBUILD_WATCHER_IGNORE``: Comma-separated glob patterns to ignore.
    * ``REBUILD_WATCHER_RUNTIME``: Script runtime probed before running (default ``bun``).
    * ``REBUILD_WATCHER_SCHEMA_ONLY``: Skip the upload step.
    * ``REBUILD_WATCHER_CONVEX_COMMAND``: Command for the upload step.
    * ``REBUILD_WATCHER_SCHEMA_COMMAND``: Command for the schema generation step.
    * ``REBUILD_WATCHER_LOG_FILE``: Path to the log file.
    * ``REBUILD_WATCHER_LOG_LEVEL``: Logging level.

When no tasks are declared, the preset pipeline uploads backend functions with
``convex_command`` (unless ``schema_only``) and then runs ``schema_command``
if one is configured. ``{runtime}`` in any task command is replaced by the
configured runtime, so the default upload step runs ``bunx convex dev --once``.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import shlex
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import tomli

from rebuild_watcher.errors import ConfigError
from rebuild_watcher.pipeline import Task
from rebuild_watcher.watcher import IgnoreRule

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config", "make_ignore_rule", "uses_runtime"]

APP_NAME = "rebuild-watcher"
INI_FILE_NAME = "rebuild-watcher.ini"
TASK_SECTION_PREFIX = "task:"

DEFAULT_IGNORE = ["_generated*", ".*", "*~", "*.swp"]
DEFAULT_CONVEX_COMMAND = "{runtime}x convex dev --once"
RUNTIME_PLACEHOLDER = "{runtime}"

CONVEX_LABEL = "Uploading functions to Convex..."
CONVEX_SUCCESS = "Convex functions uploaded"
SCHEMA_LABEL = "Generating Zod schemas..."
SCHEMA_SUCCESS = "Zod schemas generated"

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        watch_path (str): Absolute path of the directory to watch.
        debounce_ms (int): Debounce window in milliseconds. Defaults to 200.
        recursive (bool): Whether subdirectories are watched. Defaults to True.
        ignore (List[str]): Glob patterns matched against relative paths.
        runtime (str): Runtime binary probed before tasks that use it. Defaults to "bun".
        schema_only (bool): Skip the upload step of the preset pipeline.
        convex_command (str): Command for the preset upload step.
        schema_command (Optional[str]): Command for the preset schema step.
        tasks (List[Task]): The resolved, ordered pipeline tasks.
        log_level (str): Logging level. Defaults to "INFO".
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
    """

    watch_path: str
    debounce_ms: int = 200
    recursive: bool = True
    ignore: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))
    runtime: str = "bun"
    schema_only: bool = False
    convex_command: str = DEFAULT_CONVEX_COMMAND
    schema_command: Optional[str] = None
    tasks: List[Task] = field(default_factory=list)
    log_level: str = "INFO"
    log_file: Optional[str] = None


def make_ignore_rule(patterns: Sequence[str]) -> IgnoreRule:
    """Build an ignore predicate from glob patterns.

    Patterns are matched with :func:`fnmatch.fnmatchcase` against the whole
    relative path (``*`` also matches ``/``), so ``_generated*`` ignores
    everything under ``_generated/`` and ``.*`` ignores dotfiles and dot
    directories at the root.

    Args:
        patterns (Sequence[str]): Glob patterns.

    Returns:
        IgnoreRule: A predicate returning True for paths to ignore.

    Example:
        >>> rule = make_ignore_rule(["_generated*", "*.swp"])
        >>> rule("_generated/api.ts"), rule("queries.ts.swp"), rule("queries.ts")
        (True, True, False)
    """
    compiled = tuple(patterns)

    def should_ignore(relative_path: str) -> bool:
        return any(fnmatch.fnmatchcase(relative_path, pattern) for pattern in compiled)

    return should_ignore


def uses_runtime(tasks: Sequence[Task], runtime: str) -> bool:
    """Return True if any task invokes ``runtime`` (or its ``<runtime>x`` runner)."""
    targets = {runtime, runtime + "x"}
    for task in tasks:
        if isinstance(task.command, str):
            try:
                argv = shlex.split(task.command)
            except ValueError:
                argv = task.command.split()
        else:
            argv = list(task.command)
        if argv and Path(argv[0]).name in targets:
            return True
    return False


def _get_config_file_paths() -> List[str]:
    """Return user-level config file candidates.

    Returns:
        List[str]: Paths of INI files outside the working directory.
    """
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        base = os.path.expanduser(xdg_config_home)
    elif os.name == "nt" and os.environ.get("APPDATA"):
        base = os.path.expanduser(os.environ["APPDATA"])
    else:
        base = os.path.join(os.path.expanduser("~"), ".config")
    return [os.path.join(base, APP_NAME, "config.ini")]


def _read_ini(path: str) -> Optional[Dict[str, Any]]:
    parser = ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8-sig")
    except (ConfigParserError, UnicodeDecodeError, OSError) as e:
        logger.error(f"Failed to parse config file {path}: {e}")
        return None

    values: Dict[str, Any] = {}
    if APP_NAME in parser:
        for key, value in parser[APP_NAME].items():
            if value is not None and value != "":
                values[key.replace("-", "_")] = value

    tasks = []
    for section in parser.sections():
        if section.startswith(TASK_SECTION_PREFIX):
            entry = {k.replace("-", "_"): v for k, v in parser[section].items()}
            entry["kind"] = section[len(TASK_SECTION_PREFIX):].strip()
            tasks.append(entry)
    if tasks:
        values["tasks"] = tasks

    if not values:
        return None
    return values


def _read_pyproject(path: str) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "rb") as f:
            data = tomli.load(f)
    except (tomli.TOMLDecodeError, OSError) as e:
        logger.error(f"Failed to parse {path}: {e}")
        return None

    table = data.get("tool", {}).get(APP_NAME)
    if not isinstance(table, dict):
        return None
    return {key.replace("-", "_"): value for key, value in table.items()}


def _load_config_file() -> Dict[str, Any]:
    """Return values from the first config file that configures this tool."""
    local_ini = os.path.join(os.getcwd(), INI_FILE_NAME)
    if os.path.isfile(local_ini):
        values = _read_ini(local_ini)
        if values is not None:
            logger.debug(f"Loaded config from {local_ini}")
            return values

    pyproject = os.path.join(os.getcwd(), "pyproject.toml")
    if os.path.isfile(pyproject):
        values = _read_pyproject(pyproject)
        if values is not None:
            logger.debug(f"Loaded config from {pyproject}")
            return values

    for path in _get_config_file_paths():
        if os.path.isfile(path):
            values = _read_ini(path)
            if values is not None:
                logger.debug(f"Loaded config from {path}")
                return values
            break
    return {}


def _default_watch_path() -> str:
    """Return the functions directory named in ``convex.json``, else ``convex``."""
    config_path = Path.cwd() / "convex.json"
    if config_path.is_file():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to parse convex.json: {e}")
        else:
            functions = data.get("functions") if isinstance(data, dict) else None
            if isinstance(functions, str) and functions:
                return functions
    return "convex"


def _validate_watch_path(path_str: str) -> str:
    """Resolve the watch path to an absolute path.

    A missing directory is accepted here; the watcher reports it as a fatal
    error when it starts.

    Raises:
        ConfigError: If the path exists but is not a directory.
    """
    try:
        resolved = Path(os.path.expanduser(path_str)).resolve()
    except (OSError, RuntimeError) as e:
        raise ConfigError(f"Error resolving watch path {path_str}: {e}") from e
    if resolved.exists() and not resolved.is_dir():
        raise ConfigError(f"Watch path is not a directory: {resolved}")
    return str(resolved)


def _validate_log_file(path_str: str) -> str:
    resolved = Path(os.path.expanduser(path_str)).resolve()
    if resolved.exists() and not resolved.is_file():
        raise ConfigError(f"Invalid path: Log file is not a regular file: {resolved}")
    return str(resolved)


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {value}")


def _to_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


def _build_tasks(raw_tasks: Any) -> List[Task]:
    if not isinstance(raw_tasks, list):
        raise ConfigError("tasks must be a list of tables")

    tasks: List[Task] = []
    seen = set()
    for entry in raw_tasks:
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid task entry: {entry!r}")
        kind = str(entry.get("kind") or "").strip()
        command = entry.get("command")
        if not kind:
            raise ConfigError(f"Task is missing a kind: {entry!r}")
        if kind in seen:
            raise ConfigError(f"Duplicate task kind: {kind}")
        if not command:
            raise ConfigError(f"Task '{kind}' is missing a command")
        if isinstance(command, list):
            command = tuple(str(part) for part in command)
        seen.add(kind)
        tasks.append(
            Task(
                kind=kind,
                command=command,
                label=str(entry.get("label") or f"Running {kind}..."),
                success_message=entry.get("success_message") or None,
                cwd=entry.get("cwd") or None,
            )
        )
    return tasks


def _preset_tasks(values: Dict[str, Any]) -> List[Task]:
    tasks: List[Task] = []
    if not values["schema_only"]:
        tasks.append(
            Task(
                kind="convex",
                command=values["convex_command"],
                label=CONVEX_LABEL,
                success_message=CONVEX_SUCCESS,
            )
        )
    if values["schema_command"]:
        tasks.append(
            Task(
                kind="schema",
                command=values["schema_command"],
                label=SCHEMA_LABEL,
                success_message=SCHEMA_SUCCESS,
            )
        )
    return tasks


def _expand_runtime(task: Task, runtime: str) -> Task:
    if isinstance(task.command, str):
        command: Any = task.command.replace(RUNTIME_PLACEHOLDER, runtime)
    else:
        command = tuple(part.replace(RUNTIME_PLACEHOLDER, runtime) for part in task.command)
    return replace(task, command=command)


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, typically
            ``vars(parser.parse_args())``. Values of None are ignored so that
            lower-priority sources take effect.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ConfigError: If a value is invalid, the watch path is not a directory,
            or the resulting pipeline has no tasks.

    Examples:
        >>> config = load_config({"watch_path": ".", "schema_command": "make schema"})
        >>> [task.kind for task in config.tasks]
        ['convex', 'schema']
        >>> load_config({"watch_path": ".", "schema_only": True, "schema_command": "make schema"}).debounce_ms
        200
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "watch_path": None,
        "debounce_ms": 200,
        "recursive": True,
        "ignore": list(DEFAULT_IGNORE),
        "runtime": "bun",
        "schema_only": False,
        "convex_command": DEFAULT_CONVEX_COMMAND,
        "schema_command": None,
        "tasks": None,
        "log_level": "INFO",
        "log_file": None,
    }

    # 2. Config File
    config_values.update(_load_config_file())

    # 3. Environment Variables
    env_map = {
        "REBUILD_WATCHER_WATCH_PATH": "watch_path",
        "REBUILD_WATCHER_DEBOUNCE_MS": "debounce_ms",
        "REBUILD_WATCHER_RECURSIVE": "recursive",
        "REBUILD_WATCHER_IGNORE": "ignore",
        "REBUILD_WATCHER_RUNTIME": "runtime",
        "REBUILD_WATCHER_SCHEMA_ONLY": "schema_only",
        "REBUILD_WATCHER_CONVEX_COMMAND": "convex_command",
        "REBUILD_WATCHER_SCHEMA_COMMAND": "schema_command",
        "REBUILD_WATCHER_LOG_FILE": "log_file",
        "REBUILD_WATCHER_LOG_LEVEL": "log_level",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    try:
        config_values["debounce_ms"] = int(config_values["debounce_ms"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid integer for debounce_ms: {config_values['debounce_ms']}") from e
    if config_values["debounce_ms"] <= 0:
        raise ConfigError(f"debounce_ms must be positive, got {config_values['debounce_ms']}")

    config_values["recursive"] = _to_bool("recursive", config_values["recursive"])
    config_values["schema_only"] = _to_bool("schema_only", config_values["schema_only"])
    config_values["ignore"] = _to_list(config_values["ignore"])

    if args.get("no_recursive"):
        config_values["recursive"] = False

    if not config_values["runtime"]:
        raise ConfigError("runtime must not be empty")

    watch_path = config_values["watch_path"] or _default_watch_path()
    config_values["watch_path"] = _validate_watch_path(str(watch_path))

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"
    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ConfigError(f"Invalid log level: {config_values['log_level']}")

    if config_values["tasks"]:
        config_values["tasks"] = _build_tasks(config_values["tasks"])
    else:
        config_values["tasks"] = _preset_tasks(config_values)
    if not config_values["tasks"]:
        raise ConfigError(
            "No pipeline tasks configured (schema_only is set but no schema_command was given)"
        )
    config_values["tasks"] = [
        _expand_runtime(task, str(config_values["runtime"])) for task in config_values["tasks"]
    ]

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
