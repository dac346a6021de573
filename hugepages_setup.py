#!/usr/bin/env python3
"""Huge Pages tuning utility for LSPHP/OPcache and MariaDB hosts.

The tool reads the MariaDB and PHP OPcache configuration for a given LSPHP
release, works out how many kernel huge pages are needed to back the InnoDB
buffer pool, the OPcache shared memory and the JIT buffer, and then:

* writes ``/etc/sysctl.d/98-hugepages.conf`` reserving those pages,
* enables ``large-pages=1`` in the ``[mysqld]`` section of ``/etc/my.cnf``,
* enables ``opcache.huge_code_pages=1`` in the OPcache configuration,
* installs a one-shot systemd service disabling Transparent Huge Pages.

Every edit is idempotent: running the tool twice leaves the files untouched
on the second run.  Use ``--dry-run`` to print the computed plan without
changing anything.
"""
from __future__ import annotations

import argparse
import dataclasses
import datetime as _dt
import enum
import json
import logging
import os
import pathlib
import re
import shutil
import subprocess
import sys
import tempfile
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older runtimes
    import tomli as tomllib  # type: ignore[assignment]

LOG = logging.getLogger(__name__)

TOOL_NAME = "hugepages-setup"

INNODB_BUFFER_POOL_KEY = "innodb_buffer_pool_size"
OPCACHE_MEMORY_KEY = "opcache.memory_consumption"
OPCACHE_JIT_BUFFER_KEY = "opcache.jit_buffer_size"
MYSQL_LARGE_PAGES = "large-pages=1"
OPCACHE_HUGE_CODE_PAGES = "opcache.huge_code_pages=1"
THP_SERVICE_NAME = "disable-thp.service"

_MYSQL_LARGE_PAGES_RE = re.compile(r"^large[-_]pages\b")
_OPCACHE_HUGE_CODE_ACTIVE_RE = re.compile(r"^\s*opcache\.huge_code_pages\s*=\s*1\s*(;.*)?$")
_OPCACHE_HUGE_CODE_KEY = "opcache.huge_code_pages"


class SetupError(Exception):
    """Base class for fatal errors; ``exit_code`` is returned by :func:`main`."""

    exit_code = 1


class PermissionDenied(SetupError, PermissionError):
    """Raised when changes are requested without root privileges."""


class MissingArgument(SetupError):
    """Raised when no PHP version was given on the command line."""


class ConfigNotFound(SetupError, FileNotFoundError):
    """Raised when a configuration file the tool must read does not exist."""


class RequiredSettingMissing(SetupError):
    """Raised when a mandatory directive is absent from a configuration file."""


class CommandFailed(SetupError):
    """Raised when an external command exits non-zero or cannot be started."""

    def __init__(self, result: "CommandResult") -> None:
        detail = (result.stderr or result.stdout).strip()
        message = f"Command failed with exit status {result.returncode}: {' '.join(result.args)}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.result = result


class EditOutcome(str, enum.Enum):
    """Result of an idempotent edit applied to one configuration artifact."""

    APPLIED = "applied"
    UPDATED = "updated"
    ALREADY_PRESENT = "already_present"
    UNCHANGED = "unchanged"
    SKIPPED_NO_SECTION_MARKER = "skipped_no_section_marker"

    @property
    def changes_file(self) -> bool:
        return self in (EditOutcome.APPLIED, EditOutcome.UPDATED)


@dataclasses.dataclass(frozen=True)
class CommandResult:
    """Outcome of an external command executed through a host environment."""

    args: Tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandFailed(self)
        return self


# ---------------------------------------------------------------------------
# Host environment
# ---------------------------------------------------------------------------


class HostEnvironment(ABC):
    """Filesystem and process access used by the tuning pipeline."""

    @abstractmethod
    def read_text(self, path: pathlib.Path) -> str:
        """Return the contents of ``path``; raise ``FileNotFoundError`` if absent."""

    @abstractmethod
    def write_text(self, path: pathlib.Path, content: str, mode: Optional[int] = None) -> None:
        """Replace ``path`` with ``content``, creating parent directories."""

    @abstractmethod
    def copy_file(self, source: pathlib.Path, destination: pathlib.Path) -> None:
        ...

    @abstractmethod
    def is_file(self, path: pathlib.Path) -> bool:
        ...

    @abstractmethod
    def is_dir(self, path: pathlib.Path) -> bool:
        ...

    @abstractmethod
    def is_readable(self, path: pathlib.Path) -> bool:
        ...

    @abstractmethod
    def iterdir(self, path: pathlib.Path) -> List[pathlib.Path]:
        """Return the entries of directory ``path`` (empty when it is missing)."""

    @abstractmethod
    def find_files(self, directory: pathlib.Path, pattern: str) -> List[pathlib.Path]:
        """Recursively find files below ``directory`` matching the glob ``pattern``."""

    @abstractmethod
    def run(self, cmd: Sequence[str]) -> CommandResult:
        ...

    @abstractmethod
    def euid(self) -> int:
        ...


class LocalHost(HostEnvironment):
    """The real machine: :mod:`pathlib` for files, :mod:`subprocess` for commands."""

    def read_text(self, path: pathlib.Path) -> str:
        return path.read_text(encoding="utf-8")

    def write_text(self, path: pathlib.Path, content: str, mode: Optional[int] = None) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if mode is None and path.exists():
            mode = path.stat().st_mode & 0o7777
        # Temp file in the same directory, then rename: readers see old or new content.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.chmod(tmp_name, mode if mode is not None else 0o644)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def copy_file(self, source: pathlib.Path, destination: pathlib.Path) -> None:
        shutil.copy2(source, destination)

    def is_file(self, path: pathlib.Path) -> bool:
        return path.is_file()

    def is_dir(self, path: pathlib.Path) -> bool:
        return path.is_dir()

    def is_readable(self, path: pathlib.Path) -> bool:
        return os.access(path, os.R_OK)

    def iterdir(self, path: pathlib.Path) -> List[pathlib.Path]:
        try:
            return list(path.iterdir())
        except (FileNotFoundError, NotADirectoryError):
            return []

    def find_files(self, directory: pathlib.Path, pattern: str) -> List[pathlib.Path]:
        if not directory.is_dir():
            return []
        return sorted(path for path in directory.rglob(pattern) if path.is_file())

    def run(self, cmd: Sequence[str]) -> CommandResult:
        LOG.debug("Executing command: %s", " ".join(cmd))
        try:
            proc = subprocess.run(list(cmd), capture_output=True, text=True, check=False)
        except OSError as exc:
            return CommandResult(args=tuple(cmd), returncode=127, stderr=str(exc))
        if proc.stdout:
            LOG.debug("stdout: %s", proc.stdout.strip())
        if proc.stderr:
            LOG.debug("stderr: %s", proc.stderr.strip())
        return CommandResult(
            args=tuple(cmd),
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )

    def euid(self) -> int:
        return os.geteuid()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class PathSettings:
    """Well-known paths read or written by the tool."""

    lsws_root: pathlib.Path = pathlib.Path("/usr/local/lsws")
    my_cnf: pathlib.Path = pathlib.Path("/etc/my.cnf")
    sysctl_conf: pathlib.Path = pathlib.Path("/etc/sysctl.d/98-hugepages.conf")
    meminfo: pathlib.Path = pathlib.Path("/proc/meminfo")
    nr_hugepages: pathlib.Path = pathlib.Path("/proc/sys/vm/nr_hugepages")
    thp_script: pathlib.Path = pathlib.Path("/usr/local/sbin/disable-thp.sh")
    thp_service: pathlib.Path = pathlib.Path("/etc/systemd/system") / THP_SERVICE_NAME
    thp_controls: Tuple[pathlib.Path, ...] = (
        pathlib.Path("/sys/kernel/mm/transparent_hugepage/enabled"),
        pathlib.Path("/sys/kernel/mm/transparent_hugepage/defrag"),
    )


@dataclasses.dataclass(frozen=True)
class MemorySettings:
    """Constants feeding the huge page calculation."""

    overhead_mb: int = 64
    default_opcache_memory: str = "128M"
    default_jit_buffer: str = "0M"
    default_hugepage_size_kb: int = 2048


@dataclasses.dataclass(frozen=True)
class ThpSettings:
    """Options for the Transparent Huge Pages disable service."""

    enabled: bool = True
    database_service: str = "mysqld.service"


@dataclasses.dataclass(frozen=True)
class SetupConfig:
    """Configuration loaded from a TOML manifest."""

    paths: PathSettings = dataclasses.field(default_factory=PathSettings)
    memory: MemorySettings = dataclasses.field(default_factory=MemorySettings)
    thp: ThpSettings = dataclasses.field(default_factory=ThpSettings)
    backup: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "SetupConfig":
        paths_section = _section(data, "paths")
        memory_section = _section(data, "memory")
        thp_section = _section(data, "thp")
        output_section = _section(data, "output")

        path_defaults = PathSettings()
        path_kwargs: Dict[str, object] = {}
        for field in dataclasses.fields(PathSettings):
            if field.name not in paths_section:
                continue
            value = paths_section[field.name]
            if field.name == "thp_controls":
                if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                    raise TypeError("paths.thp_controls must be a list of strings")
                path_kwargs[field.name] = tuple(pathlib.Path(item) for item in value)
            else:
                if not isinstance(value, str):
                    raise TypeError(f"paths.{field.name} must be a string")
                path_kwargs[field.name] = pathlib.Path(value)
        paths = dataclasses.replace(path_defaults, **path_kwargs)

        memory_defaults = MemorySettings()
        overhead_mb = _typed(memory_section, "overhead_mb", int, memory_defaults.overhead_mb, "memory")
        page_size = _typed(
            memory_section,
            "default_hugepage_size_kb",
            int,
            memory_defaults.default_hugepage_size_kb,
            "memory",
        )
        if overhead_mb < 0:
            raise ValueError("memory.overhead_mb must not be negative")
        if page_size <= 0:
            raise ValueError("memory.default_hugepage_size_kb must be positive")
        memory = MemorySettings(
            overhead_mb=overhead_mb,
            default_opcache_memory=_typed(
                memory_section,
                "default_opcache_memory",
                str,
                memory_defaults.default_opcache_memory,
                "memory",
            ),
            default_jit_buffer=_typed(
                memory_section, "default_jit_buffer", str, memory_defaults.default_jit_buffer, "memory"
            ),
            default_hugepage_size_kb=page_size,
        )

        thp_defaults = ThpSettings()
        thp = ThpSettings(
            enabled=_typed(thp_section, "enabled", bool, thp_defaults.enabled, "thp"),
            database_service=_typed(
                thp_section, "database_service", str, thp_defaults.database_service, "thp"
            ),
        )

        backup = _typed(output_section, "backup", bool, True, "output")
        return cls(paths=paths, memory=memory, thp=thp, backup=backup)


def _section(data: Mapping[str, object], name: str) -> Mapping[str, object]:
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise TypeError(f"[{name}] must be a table")
    return section


def _typed(section: Mapping[str, object], key: str, kind: type, default, section_name: str):
    if key not in section:
        return default
    value = section[key]
    # bool is a subclass of int; reject it where an integer is expected.
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise TypeError(f"{section_name}.{key} must be of type {kind.__name__}")
    return value


DEFAULT_CONFIG_PATH = pathlib.Path(__file__).with_name("hugepages_setup.toml")


def load_setup_config(path: Optional[pathlib.Path] = None) -> SetupConfig:
    """Load a :class:`SetupConfig` from the provided TOML file.

    Without an explicit ``path`` the manifest shipped next to this module is
    used when present, otherwise the built-in defaults apply.
    """

    if path is None:
        if not DEFAULT_CONFIG_PATH.is_file():
            LOG.debug("No configuration file at %s; using defaults", DEFAULT_CONFIG_PATH)
            return SetupConfig()
        path = DEFAULT_CONFIG_PATH
    elif not path.is_file():
        raise ConfigNotFound(f"Configuration file not found: {path}")

    with path.open("rb") as fh:
        data = tomllib.load(fh)
    if not isinstance(data, Mapping):
        raise TypeError("Configuration root must be a table")
    LOG.debug("Loaded configuration from %s", path)
    return SetupConfig.from_mapping(data)


# ---------------------------------------------------------------------------
# Input resolution
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class ResolvedInputs:
    """Configuration files located for a PHP version."""

    php_version: str
    php_ini: pathlib.Path
    opcache_conf: pathlib.Path
    is_main_php_ini: bool
    my_cnf: pathlib.Path


def php_version_suffix(version: str) -> str:
    """Return the numeric part of a version token (``php83`` -> ``83``)."""

    token = version.strip()
    if token.startswith("ls"):
        token = token[2:]
    if token.startswith("php"):
        token = token[3:]
    return token


def php_install_dir(lsws_root: pathlib.Path, version: str) -> pathlib.Path:
    return lsws_root / f"lsphp{php_version_suffix(version)}"


def discover_php_versions(host: HostEnvironment, lsws_root: pathlib.Path) -> List[str]:
    """List installed LSPHP releases as version tokens (``lsphp83`` -> ``php83``)."""

    versions = [
        entry.name[2:]
        for entry in host.iterdir(lsws_root)
        if entry.name.startswith("lsphp") and host.is_dir(entry)
    ]
    return sorted(versions)


def _require_readable(host: HostEnvironment, path: pathlib.Path, message: str) -> None:
    if not host.is_file(path) or not host.is_readable(path):
        raise ConfigNotFound(message)


def resolve_inputs(host: HostEnvironment, version: str, config: SetupConfig) -> ResolvedInputs:
    """Locate the PHP, OPcache and MariaDB configuration files for ``version``."""

    install_dir = php_install_dir(config.paths.lsws_root, version)
    php_ini = install_dir / "etc" / "php.ini"
    _require_readable(
        host,
        php_ini,
        f"PHP configuration file not found at '{php_ini}'. Please check the version name "
        "and ensure it's an OLS PHP version.",
    )

    my_cnf = config.paths.my_cnf
    _require_readable(
        host,
        my_cnf,
        f"MariaDB/MySQL configuration file not found at {my_cnf}. Please ensure MariaDB is installed.",
    )

    LOG.info("Finding OPcache configuration file for %s...", version)
    fragments = host.find_files(install_dir / "etc" / "php.d", "*-opcache.ini")
    if fragments:
        opcache_conf = fragments[0]
        is_main = False
        LOG.info("Using PHP OPcache config file: %s", opcache_conf)
    else:
        opcache_conf = php_ini
        is_main = True
        LOG.warning("No specific opcache.ini file found. Using main php.ini as a fallback.")

    return ResolvedInputs(
        php_version=version,
        php_ini=php_ini,
        opcache_conf=opcache_conf,
        is_main_php_ini=is_main,
        my_cnf=my_cnf,
    )


# ---------------------------------------------------------------------------
# Extraction, conversion and calculation
# ---------------------------------------------------------------------------


def extract_setting(text: str, name: str) -> Optional[str]:
    """Return the value of the first ``name = value`` line, whitespace removed.

    Only lines starting in the first column match, so commented-out and
    indented occurrences are ignored.  ``None`` means the setting is absent.
    """

    for line in text.splitlines():
        if not line.startswith(name) or "=" not in line:
            continue
        key, value = line.split("=", 1)
        if key.strip() != name:
            continue
        return "".join(value.split())
    return None


def parse_memory_to_mb(value: Optional[str]) -> int:
    """Convert a size such as ``8G``, ``8192M`` or ``1024K`` to megabytes.

    Bare numbers are already megabytes.  Unknown suffixes fall through to the
    same identity conversion.
    """

    if not value or re.fullmatch(r"[a-zA-Z]+", value):
        return 0
    digits = re.sub(r"[^0-9]", "", value)
    magnitude = int(digits) if digits else 0
    unit = re.sub(r"[0-9]", "", value).upper()

    if unit in ("G", "GB"):
        return magnitude * 1024
    if unit in ("M", "MB"):
        return magnitude
    if unit in ("K", "KB"):
        return magnitude // 1024
    if unit:
        LOG.warning("Unrecognised unit %r in %r; treating the value as megabytes", unit, value)
    return magnitude


@dataclasses.dataclass(frozen=True)
class MemoryBudget:
    """Memory (in MB) that must be backed by huge pages."""

    buffer_pool_mb: int
    opcache_mb: int
    jit_mb: int
    overhead_mb: int

    @property
    def total_mb(self) -> int:
        return self.buffer_pool_mb + self.opcache_mb + self.jit_mb + self.overhead_mb


@dataclasses.dataclass(frozen=True)
class RawSettings:
    """Setting values as written in the configuration files."""

    buffer_pool: str
    opcache_memory: str
    jit_buffer: str


def read_memory_budget(
    host: HostEnvironment, inputs: ResolvedInputs, memory: MemorySettings
) -> Tuple[RawSettings, MemoryBudget]:
    LOG.info("Reading MariaDB configuration from %s...", inputs.my_cnf)
    buffer_pool_raw = extract_setting(host.read_text(inputs.my_cnf), INNODB_BUFFER_POOL_KEY)
    if not buffer_pool_raw:
        raise RequiredSettingMissing(f"Could not find '{INNODB_BUFFER_POOL_KEY}' in {inputs.my_cnf}.")
    buffer_pool_mb = parse_memory_to_mb(buffer_pool_raw)
    LOG.info("Detected InnoDB Buffer Pool Size: %s (~%s MB)", buffer_pool_raw, buffer_pool_mb)

    LOG.info("Reading PHP OPcache configuration from %s...", inputs.opcache_conf)
    opcache_text = host.read_text(inputs.opcache_conf)
    opcache_raw = extract_setting(opcache_text, OPCACHE_MEMORY_KEY) or memory.default_opcache_memory
    opcache_mb = parse_memory_to_mb(opcache_raw)
    LOG.info("Detected OPcache Memory Consumption: %s (~%s MB)", opcache_raw, opcache_mb)

    jit_raw = extract_setting(opcache_text, OPCACHE_JIT_BUFFER_KEY) or memory.default_jit_buffer
    jit_mb = parse_memory_to_mb(jit_raw)
    LOG.info("Detected OPcache JIT Buffer Size: %s (~%s MB)", jit_raw, jit_mb)

    raw = RawSettings(buffer_pool=buffer_pool_raw, opcache_memory=opcache_raw, jit_buffer=jit_raw)
    budget = MemoryBudget(
        buffer_pool_mb=buffer_pool_mb,
        opcache_mb=opcache_mb,
        jit_mb=jit_mb,
        overhead_mb=memory.overhead_mb,
    )
    return raw, budget


def _read_meminfo(host: HostEnvironment, path: pathlib.Path) -> Dict[str, int]:
    data: Dict[str, int] = {}
    try:
        contents = host.read_text(path)
    except FileNotFoundError:
        LOG.debug("%s is not available", path)
        return data
    for line in contents.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        fields = value.strip().split()
        if not fields or not fields[0].isdigit():
            continue
        data[key.strip()] = int(fields[0])
    return data


def read_hugepage_size_kb(host: HostEnvironment, meminfo_path: pathlib.Path, default: int = 2048) -> int:
    """Return the kernel huge page size in KB, or ``default`` when unknown."""

    size = _read_meminfo(host, meminfo_path).get("Hugepagesize", 0)
    if size <= 0:
        LOG.debug("Hugepagesize unavailable; defaulting to %s KB", default)
        return default
    return size


def calculate_hugepages(total_mb: int, page_size_kb: int, default_page_size_kb: int = 2048) -> int:
    """Number of huge pages covering ``total_mb``, plus one page of headroom."""

    if page_size_kb <= 0:
        page_size_kb = default_page_size_kb
    return (total_mb * 1024) // page_size_kb + 1


# ---------------------------------------------------------------------------
# Idempotent text edits
# ---------------------------------------------------------------------------


def _split_lines(text: str) -> List[str]:
    return text.splitlines(keepends=True)


def _ensure_trailing_newline(text: str) -> str:
    if text and not text.endswith("\n"):
        return text + "\n"
    return text


def _insert_after(lines: List[str], index: int, new_lines: Iterable[str]) -> str:
    if not lines[index].endswith("\n"):
        lines[index] += "\n"
    block = [line + "\n" for line in new_lines]
    return "".join(lines[: index + 1] + block + lines[index + 1 :])


def _find_section(lines: Sequence[str], section: str) -> Optional[int]:
    marker = f"[{section}]"
    for index, line in enumerate(lines):
        if line.strip().lower() == marker:
            return index
    return None


def ensure_mysql_large_pages(text: str) -> Tuple[str, EditOutcome]:
    """Add ``large-pages=1`` to the ``[mysqld]`` section unless already set."""

    lines = _split_lines(text)
    for line in lines:
        if _MYSQL_LARGE_PAGES_RE.match(line):
            value = line.split("=", 1)[1].strip() if "=" in line else "1"
            if value.lower() not in ("1", "on", "true"):
                LOG.warning("Existing directive %r does not enable large pages; leaving it as is", line.strip())
            return text, EditOutcome.ALREADY_PRESENT

    index = _find_section(lines, "mysqld")
    if index is None:
        return text, EditOutcome.SKIPPED_NO_SECTION_MARKER

    block = (
        f"# Enable Huge Pages for MariaDB (Added by {TOOL_NAME})",
        MYSQL_LARGE_PAGES,
        f"# End of Huge Pages directive (Added by {TOOL_NAME})",
    )
    return _insert_after(lines, index, block), EditOutcome.APPLIED


def _is_comment(line: str) -> bool:
    return line.lstrip().startswith((";", "#"))


def ensure_opcache_huge_code_pages(text: str, is_main_php_ini: bool) -> Tuple[str, EditOutcome]:
    """Enable ``opcache.huge_code_pages`` in a php.ini or an OPcache fragment."""

    lines = _split_lines(text)
    if any(_OPCACHE_HUGE_CODE_ACTIVE_RE.match(line.rstrip("\r\n")) for line in lines):
        return text, EditOutcome.ALREADY_PRESENT

    matches = [index for index, line in enumerate(lines) if _OPCACHE_HUGE_CODE_KEY in line]
    if matches:
        active = [index for index in matches if not _is_comment(lines[index])]
        for index in active or matches[:1]:
            ending = "\n" if lines[index].endswith("\n") else ""
            lines[index] = OPCACHE_HUGE_CODE_PAGES + ending
        return "".join(lines), EditOutcome.UPDATED

    if is_main_php_ini:
        index = _find_section(lines, "opcache")
        if index is not None:
            return _insert_after(lines, index, (OPCACHE_HUGE_CODE_PAGES,)), EditOutcome.APPLIED
        block = f"\n; Added by {TOOL_NAME}\n[opcache]\n{OPCACHE_HUGE_CODE_PAGES}\n"
    else:
        block = f"\n; Added by {TOOL_NAME}\n{OPCACHE_HUGE_CODE_PAGES}\n"
    return _ensure_trailing_newline(text) + block, EditOutcome.APPLIED


# ---------------------------------------------------------------------------
# Rendered artifacts
# ---------------------------------------------------------------------------


def render_sysctl_conf(nr_hugepages: int) -> str:
    return (
        f"# --- Huge Pages Configuration (Generated by {TOOL_NAME}) ---\n"
        f"vm.nr_hugepages = {nr_hugepages}\n"
    )


def render_thp_script(controls: Iterable[pathlib.Path]) -> str:
    body = ["#!/bin/bash"]
    for control in controls:
        body.extend(
            [
                f"if [ -f {control} ]; then",
                f"  echo never > {control}",
                "fi",
            ]
        )
    return "\n".join(body) + "\n"


def render_thp_service(script_path: pathlib.Path, database_service: str) -> str:
    return (
        "[Unit]\n"
        "Description=Disable Transparent Huge Pages (THP)\n"
        "DefaultDependencies=no\n"
        "After=sysinit.target local-fs.target\n"
        f"Before={database_service}\n"
        "\n"
        "[Service]\n"
        "Type=oneshot\n"
        f"ExecStart={script_path}\n"
        "RemainAfterExit=true\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


@dataclasses.dataclass
class PlannedFile:
    """Target content for one file and how it was derived."""

    label: str
    path: pathlib.Path
    content: str
    outcome: EditOutcome
    mode: Optional[int] = None


def _planned_render(
    host: HostEnvironment, label: str, path: pathlib.Path, content: str, mode: Optional[int] = None
) -> PlannedFile:
    try:
        current: Optional[str] = host.read_text(path)
    except FileNotFoundError:
        current = None
    if current is None:
        outcome = EditOutcome.APPLIED
    elif current == content:
        outcome = EditOutcome.UNCHANGED
    else:
        outcome = EditOutcome.UPDATED
    return PlannedFile(label=label, path=path, content=content, outcome=outcome, mode=mode)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class TuningPlan:
    """Everything computed before the host is modified."""

    inputs: ResolvedInputs
    raw: RawSettings
    budget: MemoryBudget
    hugepage_size_kb: int
    nr_hugepages: int
    files: List[PlannedFile]
    manage_thp: bool

    def file(self, label: str) -> PlannedFile:
        for planned in self.files:
            if planned.label == label:
                return planned
        raise KeyError(label)

    def to_dict(self) -> Dict[str, object]:
        return {
            "inputs": {
                key: str(value) if isinstance(value, pathlib.Path) else value
                for key, value in dataclasses.asdict(self.inputs).items()
            },
            "settings": dataclasses.asdict(self.raw),
            "budget": {**dataclasses.asdict(self.budget), "total_mb": self.budget.total_mb},
            "hugepage_size_kb": self.hugepage_size_kb,
            "nr_hugepages": self.nr_hugepages,
            "manage_thp": self.manage_thp,
            "files": [
                {"label": planned.label, "path": str(planned.path), "outcome": planned.outcome.value}
                for planned in self.files
            ],
        }

    def describe(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def build_plan(
    host: HostEnvironment, version: str, config: SetupConfig, manage_thp: Optional[bool] = None
) -> TuningPlan:
    """Resolve inputs, compute the page count and prepare every file edit.

    Nothing is written here; any fatal condition is raised before the host
    is touched.
    """

    if manage_thp is None:
        manage_thp = config.thp.enabled
    inputs = resolve_inputs(host, version, config)
    raw, budget = read_memory_budget(host, inputs, config.memory)

    LOG.info("Calculating total Huge Pages required...")
    LOG.info("Total memory to cover with Huge Pages: %s MB", budget.total_mb)
    page_size = read_hugepage_size_kb(
        host, config.paths.meminfo, default=config.memory.default_hugepage_size_kb
    )
    LOG.info("Detected Kernel Hugepagesize: %s KB", page_size)
    nr_hugepages = calculate_hugepages(budget.total_mb, page_size)
    LOG.info("Calculated number of Huge Pages to reserve: %s", nr_hugepages)

    files = [
        _planned_render(host, "sysctl", config.paths.sysctl_conf, render_sysctl_conf(nr_hugepages), 0o644)
    ]

    my_cnf_text, my_cnf_outcome = ensure_mysql_large_pages(host.read_text(inputs.my_cnf))
    files.append(PlannedFile("mysql", inputs.my_cnf, my_cnf_text, my_cnf_outcome))

    opcache_text, opcache_outcome = ensure_opcache_huge_code_pages(
        host.read_text(inputs.opcache_conf), inputs.is_main_php_ini
    )
    files.append(PlannedFile("opcache", inputs.opcache_conf, opcache_text, opcache_outcome))

    if manage_thp:
        files.append(
            _planned_render(
                host,
                "thp_script",
                config.paths.thp_script,
                render_thp_script(config.paths.thp_controls),
                0o755,
            )
        )
        files.append(
            _planned_render(
                host,
                "thp_service",
                config.paths.thp_service,
                render_thp_service(config.paths.thp_script, config.thp.database_service),
                0o644,
            )
        )

    return TuningPlan(
        inputs=inputs,
        raw=raw,
        budget=budget,
        hugepage_size_kb=page_size,
        nr_hugepages=nr_hugepages,
        files=files,
        manage_thp=manage_thp,
    )


# ---------------------------------------------------------------------------
# Writing and activation
# ---------------------------------------------------------------------------


class PlanWriter:
    """Writes configuration files safely and idempotently."""

    def __init__(self, host: HostEnvironment, dry_run: bool = True, backup: bool = True) -> None:
        self.host = host
        self.dry_run = dry_run
        self.backup = backup

    def write_file(self, path: pathlib.Path, content: str, mode: Optional[int] = None) -> None:
        if self.dry_run:
            LOG.info("[dry-run] Would write %s", path)
            LOG.debug("Content for %s:\n%s", path, content)
            return

        if self.backup and self.host.is_file(path):
            timestamp = _dt.datetime.now().strftime("%Y%m%d%H%M%S")
            backup = path.with_name(f"{path.name}.bak-{timestamp}")
            self.host.copy_file(path, backup)
            LOG.info("Created backup %s", backup)
        self.host.write_text(path, content, mode=mode)
        LOG.debug("Wrote %s", path)

    def apply(self, planned: PlannedFile) -> None:
        if not planned.outcome.changes_file:
            LOG.debug("%s is already up to date", planned.path)
            return
        self.write_file(planned.path, planned.content, mode=planned.mode)


_OUTCOME_MESSAGES = {
    ("mysql", EditOutcome.APPLIED): "Added 'large-pages=1' and comments to the [mysqld] section in %s",
    ("mysql", EditOutcome.ALREADY_PRESENT): "'large-pages' directive already present in %s. No changes made.",
    ("opcache", EditOutcome.APPLIED): "Added 'opcache.huge_code_pages=1' to %s",
    ("opcache", EditOutcome.UPDATED): "Updated existing 'opcache.huge_code_pages' setting to 1 in %s",
    (
        "opcache",
        EditOutcome.ALREADY_PRESENT,
    ): "'opcache.huge_code_pages=1' is already active in %s. No changes made.",
}


class Activator:
    """Loads the kernel setting and enables the THP service on the live host."""

    def __init__(self, host: HostEnvironment, dry_run: bool) -> None:
        self.host = host
        self.dry_run = dry_run

    def _run(self, cmd: List[str]) -> Optional[CommandResult]:
        if self.dry_run:
            LOG.info("[dry-run] Would run: %s", " ".join(cmd))
            return None
        return self.host.run(cmd).check()

    def apply_sysctl(self, sysctl_conf: pathlib.Path) -> None:
        self._run(["sysctl", "-p", str(sysctl_conf)])

    def enable_service(self, unit: str) -> None:
        self._run(["systemctl", "daemon-reload"])
        self._run(["systemctl", "enable", unit])
        self._run(["systemctl", "start", unit])


class HugePagesTuner:
    """Apply a :class:`TuningPlan` to the host."""

    def __init__(self, plan: TuningPlan, writer: PlanWriter, activator: Activator) -> None:
        self.plan = plan
        self.writer = writer
        self.activator = activator

    def apply(self) -> None:
        self.configure_kernel()
        self.configure_mysql()
        self.configure_opcache()
        if self.plan.manage_thp:
            self.configure_thp()
        self.activate()

    def configure_kernel(self) -> None:
        planned = self.plan.file("sysctl")
        LOG.info("Creating sysctl configuration file to reserve Huge Pages...")
        self.writer.apply(planned)
        if planned.outcome is EditOutcome.UNCHANGED:
            LOG.info("%s already reserves %s Huge Pages", planned.path, self.plan.nr_hugepages)

    def configure_mysql(self) -> None:
        planned = self.plan.file("mysql")
        if planned.outcome is EditOutcome.SKIPPED_NO_SECTION_MARKER:
            LOG.warning(
                "No [mysqld] section found in %s; add '%s' manually.", planned.path, MYSQL_LARGE_PAGES
            )
        else:
            LOG.info(_OUTCOME_MESSAGES[("mysql", planned.outcome)], planned.path)
        self.writer.apply(planned)

    def configure_opcache(self) -> None:
        planned = self.plan.file("opcache")
        LOG.info(_OUTCOME_MESSAGES[("opcache", planned.outcome)], planned.path)
        self.writer.apply(planned)

    def configure_thp(self) -> None:
        LOG.info("Configuring Transparent (Anon) Huge Pages to be disabled...")
        script = self.plan.file("thp_script")
        self.writer.apply(script)
        LOG.info("THP disable script at %s (%s)", script.path, script.outcome.value)
        service = self.plan.file("thp_service")
        self.writer.apply(service)
        LOG.info("systemd service at %s (%s)", service.path, service.outcome.value)

    def activate(self) -> None:
        LOG.info("Applying kernel settings and enabling new services...")
        self.activator.apply_sysctl(self.plan.file("sysctl").path)
        if self.plan.manage_thp:
            self.activator.enable_service(self.plan.file("thp_service").path.name)


def ensure_root(host: HostEnvironment) -> None:
    if host.euid() != 0:
        raise PermissionDenied("This script must be run with root privileges. Please use sudo.")


def _read_thp_mode(host: HostEnvironment, path: pathlib.Path) -> Optional[str]:
    try:
        raw = host.read_text(path)
    except FileNotFoundError:
        return None
    match = re.search(r"\[(\w+)\]", raw)
    return match.group(1) if match else raw.strip()


def inspect_current_system(host: HostEnvironment, plan: TuningPlan, config: SetupConfig) -> Dict[str, object]:
    """Compare the live huge page reservation and THP mode with the plan."""

    try:
        current: Optional[int] = int(host.read_text(config.paths.nr_hugepages).strip())
    except (FileNotFoundError, ValueError):
        current = None
    meminfo = _read_meminfo(host, config.paths.meminfo)

    if current is None:
        status = "unknown"
    elif current >= plan.nr_hugepages:
        status = "ok"
    else:
        status = "needs_update"

    thp: Dict[str, Optional[str]] = {}
    for control in config.paths.thp_controls:
        thp[control.name] = _read_thp_mode(host, control)

    return {
        "nr_hugepages": {"current": current, "recommended": plan.nr_hugepages, "status": status},
        "hugepages_free": meminfo.get("HugePages_Free"),
        "transparent_hugepage": thp,
    }


def render_instructions(plan: TuningPlan) -> str:
    rule = "=" * 72
    steps = [f"Configured the kernel to reserve {plan.nr_hugepages} Huge Pages."]
    if plan.manage_thp:
        steps.append("Created and enabled a systemd service to disable Transparent Huge Pages.")
    mysql = plan.file("mysql")
    if mysql.outcome is EditOutcome.SKIPPED_NO_SECTION_MARKER:
        steps.append(f"Could NOT add '{MYSQL_LARGE_PAGES}' (no [mysqld] section); add it manually.")
    else:
        steps.append(f"Ensured '{MYSQL_LARGE_PAGES}' is present in your MariaDB configuration.")
    steps.append(f"Ensured '{OPCACHE_HUGE_CODE_PAGES}' in your PHP OPcache configuration.")

    lines = [
        "",
        rule,
        "    >>> AUTOMATED SERVER TUNING COMPLETE <<<",
        rule,
        "",
        "The following actions were performed:",
    ]
    lines.extend(f"{number}. {step}" for number, step in enumerate(steps, start=1))
    lines.extend(
        [
            "",
            "!! IMPORTANT: PLEASE VERIFY BEFORE REBOOTING !!",
            "",
            "Please manually check the following files to ensure the directives were added correctly:",
            f"  - MariaDB Config: cat {mysql.path} (Look for '{MYSQL_LARGE_PAGES}' under [mysqld])",
            f"  - PHP OPcache Config: cat {plan.inputs.opcache_conf} (Look for '{OPCACHE_HUGE_CODE_PAGES}')",
            "",
            "Once you have verified the settings, a reboot is required to finalize the process.",
            "Run the command: sudo reboot",
            "",
            "After rebooting, you can verify Huge Pages status with:",
            "  grep Huge /proc/meminfo",
            "",
            rule,
        ]
    )
    return "\n".join(lines) + "\n"


def render_usage(prog: str, versions: Sequence[str], lsws_root: pathlib.Path) -> str:
    lines = [
        "",
        f"Usage: sudo {prog} <php_version>",
        f"Example: sudo {prog} php83",
        "",
    ]
    if versions:
        lines.append(f"Detected available PHP versions: {' '.join(versions)}")
    else:
        lines.append(f"No OpenLiteSpeed PHP versions found in {lsws_root}/")
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "php_version",
        nargs="?",
        help="LSPHP release to tune, e.g. php83.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the calculated plan without changing anything (root not required).",
    )
    parser.add_argument(
        "--no-thp",
        action="store_true",
        help="Do not install the service that disables Transparent Huge Pages.",
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help="Path to a TOML configuration file overriding paths and defaults.",
    )
    parser.add_argument(
        "--output",
        type=pathlib.Path,
        help="Optional path to write the computed plan as JSON (dry-run safe).",
    )
    parser.add_argument(
        "--inspect",
        action="store_true",
        help="Compare the live huge page reservation and THP mode with the plan.",
    )
    parser.add_argument(
        "--no-backup",
        action="store_true",
        help="Do not keep .bak copies of files before changing them.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only report warnings and errors.",
    )
    parser.add_argument(
        "--log-file",
        type=pathlib.Path,
        help="Optional path to write logs in addition to the console output.",
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Logging output format (default: text).",
    )
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(None if argv is None else list(argv))


class _JSONLogFormatter(logging.Formatter):
    """Format log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - brief output
        timestamp = _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc)
        payload = {
            "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(
    verbosity: int, log_file: Optional[pathlib.Path], log_format: str, quiet: bool = False
) -> None:
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    elif verbosity >= 1:
        level = logging.DEBUG
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)

    if log_format == "json":
        formatter: logging.Formatter = _JSONLogFormatter()
    else:
        formatter = logging.Formatter("[%(levelname)s] %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def run(args: argparse.Namespace, host: HostEnvironment) -> int:
    if not args.dry_run:
        ensure_root(host)

    config = load_setup_config(args.config)

    if not args.php_version:
        versions = discover_php_versions(host, config.paths.lsws_root)
        sys.stdout.write(render_usage(TOOL_NAME, versions, config.paths.lsws_root))
        raise MissingArgument("Missing PHP version argument.")

    manage_thp = config.thp.enabled and not args.no_thp
    plan = build_plan(host, args.php_version, config, manage_thp=manage_thp)
    LOG.debug("Calculated plan:\n%s", plan.describe())

    if args.output:
        args.output.write_text(plan.describe(), encoding="utf-8")
        LOG.info("Wrote plan JSON to %s", args.output)

    if args.inspect:
        inspection = inspect_current_system(host, plan, config)
        LOG.info("Inspection report:\n%s", json.dumps(inspection, indent=2))

    writer = PlanWriter(host, dry_run=args.dry_run, backup=config.backup and not args.no_backup)
    tuner = HugePagesTuner(plan, writer, Activator(host, dry_run=args.dry_run))
    tuner.apply()

    if args.dry_run:
        LOG.info("Dry-run mode. No changes were made.")
    else:
        sys.stdout.write(render_instructions(plan))
    return 0


def main(argv: Optional[Iterable[str]] = None, host: Optional[HostEnvironment] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file, args.log_format, quiet=args.quiet)
    try:
        return run(args, host or LocalHost())
    except SetupError as exc:
        LOG.error("%s", exc)
        return exc.exit_code


if __name__ == "__main__":
    sys.exit(main())
