"""Artifact parser: raw utility output and config-file text -> Artifacts.

Each grammar is a pure function of its input text and a ParseContext. A
record that does not fit its grammar is dropped (logged at debug level)
and parsing carries on with the next one. Duplicates are kept; removing
them is the orchestrator's job.
"""

import base64
import binascii
import csv
import hashlib
import io
import json
import logging
import ntpath
import posixpath
import re
import shlex
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field

from .exceptions import ParseError
from .models import Artifact, MechanismKind, Platform

logger = logging.getLogger(__name__)


class ParseContext(BaseModel):
    """Where the text came from and what kind of artifact it describes."""

    platform: Platform
    kind: Optional[MechanismKind] = None
    source: str = ""
    include_vendor: bool = False
    extra: Dict[str, Any] = Field(default_factory=dict)


class RegValue(NamedTuple):
    key: str
    name: str
    type: str
    data: str


# ---- Executable extraction ----

_WINDOWS_ENV_DEFAULTS = {
    "%windir%": "C:\\Windows",
    "%systemroot%": "C:\\Windows",
    "%programfiles%": "C:\\Program Files",
    "%programfiles(x86)%": "C:\\Program Files (x86)",
    "%programdata%": "C:\\ProgramData",
    "%systemdrive%": "C:",
    "%temp%": "C:\\Windows\\Temp",
    "%tmp%": "C:\\Windows\\Temp",
}

_WINDOWS_EXE_EXT = r"(?:exe|dll|com|scr|bat|cmd|ps1|vbs|vbe|js|jse|hta|cpl|sys|ocx)"

_INTERPRETERS = {
    "sh", "bash", "zsh", "dash", "ksh", "python", "python2", "python3",
    "perl", "ruby", "node", "php", "osascript",
}


def _expand_windows_env(path: str) -> str:
    lowered = path.lower()
    for var, value in _WINDOWS_ENV_DEFAULTS.items():
        if lowered.startswith(var):
            return value + path[len(var):]
    return path


def extract_executable(command: Optional[str]) -> Optional[str]:
    """Best-effort guess at the file a launch command executes.

    Returns an absolute path or None. For interpreter invocations
    (``/bin/bash /opt/x.sh``) the script is returned, since that is the
    file worth hashing.
    """
    if not command:
        return None
    text = command.strip()
    if not text:
        return None

    # Windows forms
    quoted = re.match(r'^"([^"]+)"', text)
    if quoted and re.match(r"^(?:[A-Za-z]:\\|%\w+%|\\\\)", quoted.group(1)):
        return _expand_windows_env(quoted.group(1))
    unquoted = re.match(
        rf"^((?:[A-Za-z]:|%[\w()]+%)\\.*?\.{_WINDOWS_EXE_EXT})(?=\s|$|,)",
        text,
        re.IGNORECASE,
    )
    if unquoted:
        return _expand_windows_env(unquoted.group(1))
    if re.match(r"^(?:[A-Za-z]:|%[\w()]+%)\\", text):
        return _expand_windows_env(text.split(" ", 1)[0])

    # POSIX forms
    try:
        tokens = shlex.split(text, comments=False, posix=True)
    except ValueError:
        tokens = text.split()
    while tokens and re.match(r"^[A-Za-z_][A-Za-z0-9_]*=", tokens[0]):
        tokens = tokens[1:]
    if tokens and posixpath.basename(tokens[0]) == "env":
        tokens = [t for t in tokens[1:] if not t.startswith("-")]
        while tokens and "=" in tokens[0]:
            tokens = tokens[1:]
    if not tokens:
        return None

    first = tokens[0]
    base = re.sub(r"[\d.]+$", "", posixpath.basename(first))
    if base in _INTERPRETERS or posixpath.basename(first) in _INTERPRETERS:
        for token in tokens[1:]:
            if token.startswith("-"):
                # -c means the payload is inline, nothing to hash but the interpreter
                if token in ("-c", "-e", "-r"):
                    break
                continue
            if token.startswith("/"):
                return token
            break
    if first.startswith("/"):
        return first
    return None


# ---- Shared low-level helpers ----

def _iter_content_lines(text: str, comment: str = "#") -> Iterator[Tuple[int, str]]:
    """Yield (line_number, stripped_line), skipping blanks and comment lines."""
    for number, line in enumerate(text.splitlines(), 1):
        stripped = line.strip()
        if not stripped or stripped.startswith(comment):
            continue
        yield number, stripped


def _join_continuations(text: str) -> List[str]:
    lines: List[str] = []
    pending = ""
    for raw in text.splitlines():
        line = raw.rstrip()
        if line.endswith("\\"):
            pending += line[:-1] + " "
            continue
        lines.append(pending + line)
        pending = ""
    if pending:
        lines.append(pending)
    return lines


_REG_VALUE_RE = re.compile(r"^\s+(.*?)\s+(REG_[A-Z_]+)(?:\s+(.*))?$")


def parse_reg_values(text: str) -> List[RegValue]:
    """Parse ``reg query`` output into (key, name, type, data) records."""
    values: List[RegValue] = []
    current_key = ""
    for line in text.splitlines():
        if not line.strip():
            continue
        if line.startswith("HKEY_") or re.match(r"^HK(LM|CU|CR|U|CC)\\", line):
            current_key = line.strip()
            continue
        match = _REG_VALUE_RE.match(line)
        if not match:
            logger.debug(f"reg: skipping unrecognized line {line!r}")
            continue
        if not current_key:
            logger.debug(f"reg: value outside of any key {line!r}")
            continue
        name, reg_type, data = match.group(1), match.group(2), (match.group(3) or "")
        values.append(RegValue(current_key, name.strip(), reg_type, data.strip()))
    return values


def split_multi_sz(data: str) -> List[str]:
    """Split a REG_MULTI_SZ rendering (``a\\0b\\0c``) into entries."""
    return [p.strip() for p in re.split(r"\\0|\r|\n", data) if p.strip() and p.strip() != '""']


def _key_leaf(key: str) -> str:
    return key.rstrip("\\").rsplit("\\", 1)[-1]


def _require_kind(ctx: ParseContext) -> MechanismKind:
    if ctx.kind is None:
        raise ParseError("grammar requires ParseContext.kind")
    return ctx.kind


def _field(data: Dict[str, Any], key: str, expected: type, default: Any = None) -> Any:
    """``data[key]`` when it has the expected JSON type, else ``default``."""
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, expected):
        logger.debug(f"ignoring {key}: expected {expected.__name__}, got {type(value).__name__}")
        return default
    return value


# ---- The parser ----

Grammar = Callable[[str, ParseContext], List[Artifact]]


class ArtifactParser:
    """Dispatches raw text to the grammar named by ``source_hint``."""

    def __init__(self) -> None:
        self._grammars: Dict[str, Grammar] = {
            "reg_query": self.parse_reg_query,
            "reg_com_inproc": self.parse_reg_com_inproc,
            "reg_ifeo": self.parse_reg_ifeo,
            "reg_winlogon": self.parse_reg_winlogon,
            "reg_multi_sz": self.parse_reg_multi_sz,
            "reg_appinit": self.parse_reg_appinit,
            "reg_print_monitors": self.parse_reg_print_monitors,
            "reg_netsh": self.parse_reg_netsh,
            "schtasks_csv": self.parse_schtasks_csv,
            "wmic_csv": self.parse_wmic_services_csv,
            "wmic_list": self.parse_wmic_consumers_list,
            "systemd_unit": self.parse_systemd_unit,
            "desktop_entry": self.parse_desktop_entry,
            "crontab": self.parse_crontab,
            "systemctl_timers": self.parse_systemctl_timers,
            "atq": self.parse_atq,
            "plist_json": self.parse_plist_json,
            "bundle_info_json": self.parse_bundle_info_json,
            "emond_json": self.parse_emond_json,
            "osascript_list": self.parse_osascript_list,
            "line_list": self.parse_line_list,
            "authorized_keys": self.parse_authorized_keys,
            "udev_rules": self.parse_udev_rules,
            "script_body": self.parse_script_body,
            "sudoers": self.parse_sudoers,
            "extension_manifest": self.parse_extension_manifest,
            "firefox_extensions_json": self.parse_firefox_extensions_json,
        }

    @property
    def source_hints(self) -> List[str]:
        return sorted(self._grammars)

    def parse(
        self,
        raw_output: str,
        source_hint: str,
        ctx: Optional[ParseContext] = None,
        **context: Any,
    ) -> List[Artifact]:
        """Parse ``raw_output`` with the grammar registered for ``source_hint``.

        Context is either a ready ParseContext or its fields as keywords
        (``platform=..., kind=..., source=...``).
        """
        grammar = self._grammars.get(source_hint)
        if grammar is None:
            raise KeyError(f"No grammar registered for '{source_hint}'")
        if ctx is None:
            ctx = ParseContext(**context)
        if not raw_output or not raw_output.strip():
            return []
        try:
            return grammar(raw_output, ctx)
        except ParseError as e:
            logger.debug(f"{source_hint}: unparseable input from {ctx.source or '?'}: {e}")
            return []
        except (TypeError, AttributeError, ValueError) as e:
            logger.warning(f"{source_hint}: malformed record in {ctx.source or '?'} dropped: {e}")
            return []

    # ---- Windows registry ----

    @staticmethod
    def parse_reg_query(text: str, ctx: ParseContext) -> List[Artifact]:
        """Run/RunOnce style keys: each string value is one launch entry."""
        artifacts = []
        for value in parse_reg_values(text):
            if value.type not in ("REG_SZ", "REG_EXPAND_SZ"):
                continue
            if value.name == "(Default)" and not value.data:
                continue
            kind = ctx.kind or MechanismKind.REGISTRY_RUN_KEY
            if kind == MechanismKind.REGISTRY_RUN_KEY and "runonce" in value.key.lower():
                kind = MechanismKind.REGISTRY_RUN_ONCE
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    kind,
                    name=value.name,
                    path=value.key,
                    command=value.data,
                    executable_path=extract_executable(value.data),
                    metadata={"value_type": value.type},
                )
            )
        return artifacts

    @staticmethod
    def parse_reg_com_inproc(text: str, ctx: ParseContext) -> List[Artifact]:
        """InprocServer32 default values under a CLSID tree."""
        artifacts = []
        for value in parse_reg_values(text):
            if not value.key.lower().endswith("\\inprocserver32"):
                continue
            if value.name != "(Default)" or not value.data:
                continue
            clsid = _key_leaf(value.key[: -len("\\InprocServer32")])
            dll = value.data
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.COM_OBJECT,
                    name=clsid,
                    path=value.key,
                    command=dll,
                    executable_path=extract_executable(dll) or _expand_windows_env(dll),
                    metadata={"clsid": clsid},
                )
            )
        return artifacts

    @staticmethod
    def parse_reg_ifeo(text: str, ctx: ParseContext) -> List[Artifact]:
        """Image File Execution Options entries that set a Debugger."""
        artifacts = []
        for value in parse_reg_values(text):
            if value.name.lower() != "debugger" or not value.data:
                continue
            target = _key_leaf(value.key)
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.IMAGE_FILE_EXECUTION,
                    name=f"IFEO: {target}",
                    path=value.key,
                    command=value.data,
                    executable_path=extract_executable(value.data),
                    metadata={"target": target},
                )
            )
        return artifacts

    @staticmethod
    def parse_reg_winlogon(text: str, ctx: ParseContext) -> List[Artifact]:
        interesting = {"shell", "userinit", "taskman", "appsetup"}
        artifacts = []
        for value in parse_reg_values(text):
            if value.name.lower() not in interesting:
                continue
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.WINLOGON,
                    name=f"Winlogon {value.name}",
                    path=value.key,
                    command=value.data,
                    executable_path=extract_executable(value.data),
                    metadata={"value_name": value.name},
                )
            )
        return artifacts

    @staticmethod
    def parse_reg_multi_sz(text: str, ctx: ParseContext) -> List[Artifact]:
        """One artifact per entry of a REG_MULTI_SZ value (LSA, BootExecute)."""
        kind = _require_kind(ctx)
        artifacts = []
        for value in parse_reg_values(text):
            if value.type != "REG_MULTI_SZ":
                continue
            for entry in split_multi_sz(value.data):
                artifacts.append(
                    Artifact.create(
                        ctx.platform,
                        kind,
                        name=entry,
                        path=value.key,
                        command=entry,
                        metadata={"value_name": value.name},
                    )
                )
        return artifacts

    @staticmethod
    def parse_reg_appinit(text: str, ctx: ParseContext) -> List[Artifact]:
        artifacts = []
        for value in parse_reg_values(text):
            if value.name.lower() != "appinit_dlls" or not value.data:
                continue
            for dll in re.split(r"[,\s]+(?=[A-Za-z]:\\|%)", value.data):
                dll = dll.strip().strip(",")
                if not dll:
                    continue
                artifacts.append(
                    Artifact.create(
                        ctx.platform,
                        MechanismKind.APPINIT_DLL,
                        name=ntpath.basename(dll),
                        path=value.key,
                        command=dll,
                        executable_path=_expand_windows_env(dll),
                        metadata={"value_name": value.name},
                    )
                )
        return artifacts

    @staticmethod
    def parse_reg_print_monitors(text: str, ctx: ParseContext) -> List[Artifact]:
        artifacts = []
        for value in parse_reg_values(text):
            if value.name.lower() != "driver" or not value.data:
                continue
            dll = value.data
            full = dll if "\\" in dll else f"C:\\Windows\\System32\\{dll}"
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.PRINT_MONITOR,
                    name=f"Print Monitor: {_key_leaf(value.key)}",
                    path=value.key,
                    command=dll,
                    executable_path=_expand_windows_env(full),
                    metadata={"monitor": _key_leaf(value.key)},
                )
            )
        return artifacts

    @staticmethod
    def parse_reg_netsh(text: str, ctx: ParseContext) -> List[Artifact]:
        artifacts = []
        for value in parse_reg_values(text):
            if not value.data.lower().endswith(".dll"):
                continue
            dll = value.data
            full = dll if "\\" in dll else f"C:\\Windows\\System32\\{dll}"
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.NETSH_HELPER,
                    name=f"Netsh Helper: {ntpath.basename(dll)}",
                    path=value.key,
                    command=dll,
                    executable_path=_expand_windows_env(full),
                    metadata={"value_name": value.name},
                )
            )
        return artifacts

    # ---- Windows CSV / list output ----

    @staticmethod
    def parse_schtasks_csv(text: str, ctx: ParseContext) -> List[Artifact]:
        """``schtasks /query /fo csv /v``. The header repeats per task folder."""
        reader = csv.reader(io.StringIO(text))
        header: Optional[List[str]] = None
        artifacts = []
        for row in reader:
            if not row or not any(cell.strip() for cell in row):
                continue
            if row[0] == "HostName" or (header is None and "TaskName" in row):
                header = row
                continue
            if header is None or len(row) != len(header):
                logger.debug(f"schtasks: skipping malformed row {row[:2]}")
                continue
            record = dict(zip(header, row))
            task_name = record.get("TaskName", "").strip()
            command = record.get("Task To Run", "").strip()
            if not task_name:
                continue
            if task_name.startswith("\\Microsoft\\") and not ctx.include_vendor:
                continue
            metadata = {
                key: record[src].strip()
                for key, src in (
                    ("status", "Status"),
                    ("author", "Author"),
                    ("run_as_user", "Run As User"),
                    ("schedule_type", "Schedule Type"),
                    ("state", "Scheduled Task State"),
                )
                if src in record and record[src].strip()
            }
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.SCHEDULED_TASK,
                    name=task_name.rsplit("\\", 1)[-1],
                    path=task_name,
                    command=command or None,
                    executable_path=extract_executable(command),
                    metadata=metadata,
                )
            )
        return artifacts

    @staticmethod
    def parse_wmic_services_csv(text: str, ctx: ParseContext) -> List[Artifact]:
        """``wmic service get Name,PathName,StartMode,State /format:csv``.

        wmic does not quote fields, so a PathName containing commas spills
        into extra columns; those are glued back together.
        """
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if not lines:
            return []
        header = [h.strip() for h in lines[0].split(",")]
        if "PathName" not in header or "Name" not in header:
            raise ParseError(f"unexpected wmic header: {lines[0]!r}")
        path_idx = header.index("PathName")
        tail = len(header) - path_idx - 1
        artifacts = []
        for line in lines[1:]:
            cells = line.split(",")
            if len(cells) < len(header):
                logger.debug(f"wmic: short row {line!r}")
                continue
            extra = len(cells) - len(header)
            if extra:
                cells = (
                    cells[:path_idx]
                    + [",".join(cells[path_idx : path_idx + extra + 1])]
                    + cells[len(cells) - tail :]
                )
            record = dict(zip(header, cells))
            name = record.get("Name", "").strip()
            path_name = record.get("PathName", "").strip()
            if not name or not path_name:
                continue
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.WINDOWS_SERVICE,
                    name=name,
                    path=extract_executable(path_name) or path_name,
                    command=path_name,
                    executable_path=extract_executable(path_name),
                    metadata={
                        "start_mode": record.get("StartMode", "").strip(),
                        "state": record.get("State", "").strip(),
                    },
                )
            )
        return artifacts

    @staticmethod
    def parse_wmic_consumers_list(text: str, ctx: ParseContext) -> List[Artifact]:
        """``wmic ... __EventConsumer get /format:list``: blank-line separated Key=Value blocks."""
        artifacts = []
        for block in re.split(r"(?:\r?\n\s*){2,}", text.replace("\r\r\n", "\n")):
            record: Dict[str, str] = {}
            for line in block.splitlines():
                if "=" in line:
                    key, value = line.split("=", 1)
                    record[key.strip()] = value.strip()
            command = record.get("CommandLineTemplate") or record.get("ScriptText")
            if not command:
                continue
            consumer_class = record.get("__CLASS", "__EventConsumer")
            name = record.get("Name") or consumer_class
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.WMI_SUBSCRIPTION,
                    name=name,
                    path=f"ROOT\\subscription:{consumer_class}",
                    command=command,
                    executable_path=record.get("ExecutablePath") or extract_executable(command),
                    metadata={
                        "consumer_class": consumer_class,
                        "scripting_engine": record.get("ScriptingEngine", ""),
                    },
                )
            )
        return artifacts

    # ---- Linux unit / desktop / cron ----

    @staticmethod
    def _parse_ini_sections(text: str) -> Dict[str, Dict[str, List[str]]]:
        sections: Dict[str, Dict[str, List[str]]] = {}
        current: Optional[str] = None
        for line in _join_continuations(text):
            stripped = line.strip()
            if not stripped or stripped[0] in "#;":
                continue
            header = re.match(r"^\[([^\]]+)\]$", stripped)
            if header:
                current = header.group(1)
                sections.setdefault(current, {})
                continue
            if current is None or "=" not in stripped:
                continue
            key, value = stripped.split("=", 1)
            sections[current].setdefault(key.strip(), []).append(value.strip())
        return sections

    @classmethod
    def parse_systemd_unit(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        sections = cls._parse_ini_sections(text)
        if not sections:
            raise ParseError("no unit sections")
        unit_name = posixpath.basename(ctx.source) or "unit"
        service = sections.get("Service", {})
        timer = sections.get("Timer", {})
        unit = sections.get("Unit", {})
        install = sections.get("Install", {})

        exec_lines = [v for v in service.get("ExecStart", []) if v]
        # systemd special prefixes: - @ : + !
        command = re.sub(r"^[-@:+!]+", "", exec_lines[-1]) if exec_lines else None
        kind = ctx.kind or (
            MechanismKind.SYSTEMD_TIMER if unit_name.endswith(".timer") else MechanismKind.SYSTEMD_SERVICE
        )
        metadata: Dict[str, Any] = {}
        if unit.get("Description"):
            metadata["description"] = unit["Description"][-1]
        if service.get("User"):
            metadata["user"] = service["User"][-1]
        if service.get("ExecStartPre"):
            metadata["exec_start_pre"] = service["ExecStartPre"]
        if install.get("WantedBy"):
            metadata["wanted_by"] = install["WantedBy"][-1]
        for key in ("OnCalendar", "OnBootSec", "OnUnitActiveSec", "Unit"):
            if timer.get(key):
                metadata[key.lower()] = timer[key][-1]
        return [
            Artifact.create(
                ctx.platform,
                kind,
                name=unit_name,
                path=ctx.source,
                command=command,
                executable_path=extract_executable(command),
                metadata=metadata,
            )
        ]

    @classmethod
    def parse_desktop_entry(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        sections = cls._parse_ini_sections(text)
        entry = sections.get("Desktop Entry")
        if entry is None:
            raise ParseError("missing [Desktop Entry] section")
        exec_line = (entry.get("Exec") or [""])[-1]
        # strip field codes such as %u %F
        command = re.sub(r"\s%[fFuUdDnNickvm]", "", exec_line).strip() or None
        hidden = (entry.get("Hidden") or ["false"])[-1].lower() == "true"
        autostart_enabled = (entry.get("X-GNOME-Autostart-enabled") or ["true"])[-1].lower() != "false"
        return [
            Artifact.create(
                ctx.platform,
                ctx.kind or MechanismKind.XDG_AUTOSTART,
                name=(entry.get("Name") or [posixpath.basename(ctx.source)])[-1],
                path=ctx.source,
                command=command,
                executable_path=extract_executable(command),
                metadata={"enabled": not hidden and autostart_enabled},
            )
        ]

    @staticmethod
    def parse_crontab(text: str, ctx: ParseContext) -> List[Artifact]:
        """Crontab lines. ``ctx.extra['system']`` adds the user column (/etc/crontab, cron.d)."""
        system = bool(ctx.extra.get("system", False))
        kind = ctx.kind or MechanismKind.CRON_USER
        artifacts = []
        for number, line in _iter_content_lines(text):
            if re.match(r"^[A-Za-z_][A-Za-z0-9_]*\s*=", line):
                continue  # environment assignment
            if line.startswith("@"):
                parts = line.split(None, 2 if system else 1)
                schedule, rest = parts[0], parts[1:]
            else:
                parts = line.split(None, 6 if system else 5)
                schedule, rest = " ".join(parts[:5]), parts[5:]
                if len(parts) < 6 or not all(re.match(r"^[\d*/,\-A-Za-z]+$", p) for p in parts[:5]):
                    logger.debug(f"crontab: malformed line {number} in {ctx.source}")
                    continue
            user = None
            if system:
                if len(rest) < 2:
                    logger.debug(f"crontab: missing user/command on line {number} in {ctx.source}")
                    continue
                user, command = rest[0], rest[1]
            else:
                if not rest:
                    continue
                command = rest[0]
            command = command.strip()
            executable = extract_executable(command)
            first = command.split()[0] if command.split() else command
            metadata: Dict[str, Any] = {"schedule": schedule, "line": number}
            if user:
                metadata["user"] = user
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    kind,
                    name=posixpath.basename(executable or first),
                    path=ctx.source,
                    command=command,
                    executable_path=executable,
                    metadata=metadata,
                )
            )
        return artifacts

    @staticmethod
    def parse_systemctl_timers(text: str, ctx: ParseContext) -> List[Artifact]:
        artifacts = []
        for line in text.splitlines():
            match = re.search(r"(\S+\.timer)\s+(\S+)\s*$", line)
            if not match:
                continue
            timer, activates = match.group(1), match.group(2)
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.SYSTEMD_TIMER,
                    name=timer,
                    path=ctx.extra.get("unit_dir", "/etc/systemd/system") + "/" + timer,
                    metadata={"activates": activates, "active": "n/a" not in line[: match.start()]},
                )
            )
        return artifacts

    @staticmethod
    def parse_atq(text: str, ctx: ParseContext) -> List[Artifact]:
        artifacts = []
        for _, line in _iter_content_lines(text):
            match = re.match(r"^(\d+)\s+(.+?)(?:\s+([A-Za-z=])\s+(\S+))?$", line)
            if not match:
                logger.debug(f"atq: skipping {line!r}")
                continue
            job_id, when, queue, user = match.groups()
            metadata = {"job_id": job_id, "scheduled_for": when.strip()}
            if queue:
                metadata["queue"] = queue
            if user:
                metadata["user"] = user
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.AT_JOB,
                    name=f"At Job #{job_id}",
                    path=ctx.extra.get("spool_dir", "/var/spool/cron/atjobs"),
                    metadata=metadata,
                )
            )
        return artifacts

    # ---- macOS property lists (plutil JSON) ----

    @staticmethod
    def _load_json_object(text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"invalid JSON: {e}") from e

    @classmethod
    def parse_plist_json(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        """A launchd job plist rendered by ``plutil -convert json -o -``."""
        data = cls._load_json_object(text)
        if not isinstance(data, dict):
            raise ParseError("launchd plist is not a dictionary")
        label = _field(data, "Label", str) or posixpath.basename(ctx.source)
        program = _field(data, "Program", str)
        args = [str(a) for a in _field(data, "ProgramArguments", list, [])]
        executable = program or (args[0] if args else None)
        if args:
            command = shlex.join(args)
        else:
            command = program
        metadata: Dict[str, Any] = {
            "run_at_load": bool(data.get("RunAtLoad", False)),
            "keep_alive": data.get("KeepAlive") is not None and data.get("KeepAlive") is not False,
            "disabled": bool(data.get("Disabled", False)),
        }
        triggers = [
            key
            for key in ("WatchPaths", "QueueDirectories", "StartInterval", "StartCalendarInterval", "LaunchEvents")
            if key in data
        ]
        if triggers:
            metadata["triggers"] = triggers
        if data.get("UserName"):
            metadata["user"] = data["UserName"]
        return [
            Artifact.create(
                ctx.platform,
                _require_kind(ctx),
                name=str(label),
                path=ctx.source,
                command=command,
                executable_path=executable if executable and executable.startswith("/") else None,
                metadata=metadata,
            )
        ]

    @classmethod
    def parse_bundle_info_json(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        """A bundle's Contents/Info.plist; ``ctx.source`` is the bundle directory."""
        data = cls._load_json_object(text)
        if not isinstance(data, dict):
            raise ParseError("Info.plist is not a dictionary")
        bundle = ctx.source.rstrip("/")
        bundle_id = _field(data, "CFBundleIdentifier", str) or posixpath.basename(bundle)
        executable_name = _field(data, "CFBundleExecutable", str)
        executable = f"{bundle}/Contents/MacOS/{executable_name}" if executable_name else None
        return [
            Artifact.create(
                ctx.platform,
                _require_kind(ctx),
                name=str(data.get("CFBundleName") or bundle_id),
                path=bundle,
                executable_path=executable,
                metadata={
                    "bundle_id": bundle_id,
                    "version": data.get("CFBundleShortVersionString") or data.get("CFBundleVersion"),
                },
            )
        ]

    @classmethod
    def parse_emond_json(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        """emond rule files: a list of rules each carrying RunCommand actions."""
        data = cls._load_json_object(text)
        rules = data if isinstance(data, list) else [data]
        artifacts = []
        for rule in rules:
            if not isinstance(rule, dict):
                continue
            name = str(rule.get("name", posixpath.basename(ctx.source)))
            for action in _field(rule, "actions", list, []):
                if not isinstance(action, dict) or action.get("type") != "RunCommand":
                    continue
                argv = [str(_field(action, "command", str, ""))]
                argv += [str(a) for a in _field(action, "arguments", list, [])]
                command = shlex.join([a for a in argv if a])
                artifacts.append(
                    Artifact.create(
                        ctx.platform,
                        MechanismKind.EMOND_RULE,
                        name=name,
                        path=ctx.source,
                        command=command or None,
                        executable_path=extract_executable(command),
                        metadata={"enabled": bool(rule.get("enabled", True))},
                    )
                )
        return artifacts

    @staticmethod
    def parse_osascript_list(text: str, ctx: ParseContext) -> List[Artifact]:
        """``get the {name, path} of every login item``: names then paths, comma separated."""
        parts = [p.strip() for p in text.strip().split(", ") if p.strip()]
        half = len(parts) // 2
        if parts and len(parts) % 2 == 0 and all(p.startswith("/") for p in parts[half:]):
            pairs = list(zip(parts[:half], parts[half:]))
        else:
            pairs = [(p, "") for p in parts]
        return [
            Artifact.create(
                ctx.platform,
                MechanismKind.LOGIN_ITEM,
                name=name,
                path=path or "Login Items",
                executable_path=path or None,
            )
            for name, path in pairs
        ]

    # ---- Generic line-oriented files ----

    @staticmethod
    def parse_line_list(text: str, ctx: ParseContext) -> List[Artifact]:
        """One entry per line (``/etc/modules``, ``/etc/ld.so.preload``)."""
        kind = _require_kind(ctx)
        artifacts = []
        for number, line in _iter_content_lines(text):
            if kind == MechanismKind.LD_PRELOAD:
                for lib in line.split():
                    artifacts.append(
                        Artifact.create(
                            ctx.platform,
                            kind,
                            name=posixpath.basename(lib),
                            path=ctx.source,
                            command=lib,
                            executable_path=lib if lib.startswith("/") else None,
                            metadata={"line": number},
                        )
                    )
                continue
            fields = line.split()
            metadata: Dict[str, Any] = {"line": number}
            if len(fields) > 1:
                metadata["options"] = " ".join(fields[1:])
            artifacts.append(
                Artifact.create(ctx.platform, kind, name=fields[0], path=ctx.source, metadata=metadata)
            )
        return artifacts

    _SSH_KEY_TYPES = re.compile(
        r"^(ssh-(?:rsa|dss|ed25519)|ecdsa-sha2-nistp\d+|sk-(?:ssh-ed25519|ecdsa-sha2-nistp256)@openssh\.com)$"
    )

    @classmethod
    def parse_authorized_keys(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        artifacts = []
        for number, line in _iter_content_lines(text):
            try:
                tokens = shlex.split(line, posix=True)
            except ValueError:
                logger.debug(f"authorized_keys: unbalanced quotes on line {number}")
                continue
            type_idx = next((i for i, t in enumerate(tokens) if cls._SSH_KEY_TYPES.match(t)), None)
            if type_idx is None or type_idx + 1 >= len(tokens):
                logger.debug(f"authorized_keys: no key on line {number}")
                continue
            key_type, blob = tokens[type_idx], tokens[type_idx + 1]
            try:
                raw = base64.b64decode(blob, validate=True)
            except (binascii.Error, ValueError):
                logger.debug(f"authorized_keys: bad key blob on line {number}")
                continue
            fingerprint = "SHA256:" + base64.b64encode(hashlib.sha256(raw).digest()).decode().rstrip("=")
            options = ",".join(tokens[:type_idx])
            comment = " ".join(tokens[type_idx + 2 :])
            forced = re.search(r'command=(?:"([^"]*)"|([^,]*))', options)
            command = (forced.group(1) or forced.group(2)) if forced else None
            metadata: Dict[str, Any] = {"key_type": key_type, "fingerprint": fingerprint, "line": number}
            if comment:
                metadata["comment"] = comment
            if options:
                metadata["options"] = options
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.SSH_AUTHORIZED_KEY,
                    name=comment or f"SSH key ({key_type})",
                    path=ctx.source,
                    command=command,
                    metadata=metadata,
                )
            )
        return artifacts

    @staticmethod
    def parse_udev_rules(text: str, ctx: ParseContext) -> List[Artifact]:
        """Only rules that execute something (RUN / PROGRAM) are persistence."""
        artifacts = []
        for number, line in _iter_content_lines("\n".join(_join_continuations(text))):
            for match in re.finditer(r'\b(RUN|PROGRAM|IMPORT\{program\})\s*\+?=\s*"([^"]*)"', line):
                directive, command = match.group(1), match.group(2).strip()
                if not command:
                    continue
                artifacts.append(
                    Artifact.create(
                        ctx.platform,
                        MechanismKind.UDEV_RULE,
                        name=posixpath.basename(ctx.source),
                        path=ctx.source,
                        command=command,
                        executable_path=extract_executable(command),
                        metadata={"directive": directive, "line": number},
                    )
                )
        return artifacts

    @staticmethod
    def parse_script_body(text: str, ctx: ParseContext) -> List[Artifact]:
        """One artifact per script file; its executable lines go in metadata['body']."""
        max_lines = int(ctx.extra.get("max_lines", 400))
        lines = [line for _, line in _iter_content_lines(text)]
        metadata: Dict[str, Any] = {"body": "\n".join(lines[:max_lines]), "line_count": len(lines)}
        if len(lines) > max_lines:
            metadata["truncated"] = True
        return [
            Artifact.create(
                ctx.platform,
                _require_kind(ctx),
                name=posixpath.basename(ctx.source),
                path=ctx.source,
                executable_path=ctx.source if ctx.extra.get("executable", False) else None,
                metadata=metadata,
            )
        ]

    @staticmethod
    def parse_sudoers(text: str, ctx: ParseContext) -> List[Artifact]:
        artifacts = []
        for number, line in _iter_content_lines(text):
            if line.startswith(("Defaults", "@include", "#include")):
                continue
            if re.match(r"^(User|Runas|Host|Cmnd)_Alias\b", line):
                continue
            if "=" not in line:
                logger.debug(f"sudoers: not a rule on line {number}")
                continue
            who = line.split(None, 1)[0]
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.SUDOERS_D,
                    name=f"{posixpath.basename(ctx.source)}: {who}",
                    path=ctx.source,
                    command=line,
                    metadata={"principal": who, "line": number},
                )
            )
        return artifacts

    # ---- Browser extensions ----

    @classmethod
    def parse_extension_manifest(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        """Chromium manifest.json; ``ctx.source`` is the extension directory."""
        data = cls._load_json_object(text)
        if not isinstance(data, dict):
            raise ParseError("manifest is not an object")
        extension_id = ctx.extra.get("extension_id") or posixpath.basename(ctx.source.rstrip("/\\"))
        name = data.get("name") or extension_id
        if isinstance(name, str) and name.startswith("__MSG_"):
            name = extension_id
        permissions = [str(p) for p in _field(data, "permissions", list, []) if isinstance(p, (str, int))]
        permissions += [str(p) for p in _field(data, "host_permissions", list, []) if isinstance(p, str)]
        return [
            Artifact.create(
                ctx.platform,
                MechanismKind.BROWSER_EXTENSION,
                name=str(name),
                path=ctx.source,
                metadata={
                    "browser": ctx.extra.get("browser", ""),
                    "extension_id": extension_id,
                    "version": data.get("version"),
                    "permissions": permissions,
                },
            )
        ]

    @classmethod
    def parse_firefox_extensions_json(cls, text: str, ctx: ParseContext) -> List[Artifact]:
        """A Firefox profile's extensions.json (``addons`` array)."""
        data = cls._load_json_object(text)
        addons = data.get("addons") if isinstance(data, dict) else None
        if not isinstance(addons, list):
            raise ParseError("extensions.json has no addons list")
        artifacts = []
        for addon in addons:
            if not isinstance(addon, dict) or not addon.get("id"):
                continue
            if addon.get("location") in ("app-builtin", "app-system-defaults") and not ctx.include_vendor:
                continue
            locale = _field(addon, "defaultLocale", dict, {})
            perms = _field(addon, "userPermissions", dict, {})
            permissions = _field(perms, "permissions", list, []) + _field(perms, "origins", list, [])
            artifacts.append(
                Artifact.create(
                    ctx.platform,
                    MechanismKind.BROWSER_EXTENSION,
                    name=str(locale.get("name") or addon["id"]),
                    path=str(addon.get("path") or ctx.source),
                    metadata={
                        "browser": "Firefox",
                        "extension_id": addon["id"],
                        "version": addon.get("version"),
                        "active": bool(addon.get("active", False)),
                        "permissions": [str(p) for p in permissions],
                    },
                )
            )
        return artifacts
