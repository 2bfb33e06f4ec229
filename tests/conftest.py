"""Shared test fixtures for the persistguard test suite."""

import logging
import ntpath
import posixpath
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Set

import pytest

from persistguard.exceptions import CommandNotFoundError
from persistguard.filesystem import FileInfo
from persistguard.gateway import CommandResult
from persistguard.models import Artifact, MechanismKind, Platform
from persistguard.probe_base import ProbeBase, ProbeContext
from persistguard.threat_intel import ThreatIntelSnapshot


class FakeToolManager:
    """Resolves only the tool names it was given."""

    def __init__(self, available: Optional[Iterable[str]] = None):
        self.available: Set[str] = set(available or [])

    def resolve(self, command: str) -> Optional[str]:
        return f"/usr/bin/{command}" if command in self.available else None


class FakeGateway:
    """Answers commands from a table of canned results.

    An argv with no entry behaves like a utility that exits 1 with no output.
    """

    def __init__(self, available: Optional[Iterable[str]] = None):
        self.tool_manager = FakeToolManager(available)
        self.responses: Dict[tuple, object] = {}
        self.calls = []

    def add(self, argv, stdout: str = "", exit_code: int = 0, stderr: str = "") -> None:
        self.tool_manager.available.add(argv[0])
        self.responses[tuple(argv)] = CommandResult(
            argv=list(argv), exit_code=exit_code, stdout=stdout, stderr=stderr
        )

    def add_error(self, argv, error: Exception) -> None:
        self.tool_manager.available.add(argv[0])
        self.responses[tuple(argv)] = error

    async def run(self, argv, timeout=None, env=None, cancel_token=None) -> CommandResult:
        key = tuple(argv)
        self.calls.append((key, env))
        if argv[0] not in self.tool_manager.available:
            raise CommandNotFoundError(f"{argv[0]} is not installed or not on PATH", argv)
        response = self.responses.get(key)
        if response is None:
            return CommandResult(argv=list(argv), exit_code=1)
        if isinstance(response, Exception):
            raise response
        return response


class MemoryFileSystem:
    """In-memory stand-in for LocalFileSystem. Directories are implied by files."""

    def __init__(self, home: str = "/home/alice"):
        self._home = home
        self.files: Dict[str, str] = {}
        self.dirs: Set[str] = set()
        self.modes: Dict[str, str] = {}
        self.owners: Dict[str, str] = {}
        self.denied: Set[str] = set()

    @staticmethod
    def _mod(path: str):
        return ntpath if "\\" in path else posixpath

    def add_file(self, path: str, content: str = "", permissions: str = "644", owner: str = "root") -> None:
        self.files[path] = content
        self.modes[path] = permissions
        self.owners[path] = owner
        mod = self._mod(path)
        parent = mod.dirname(path)
        while parent and parent not in self.dirs and parent != mod.dirname(parent):
            self.dirs.add(parent)
            parent = mod.dirname(parent)

    def add_dir(self, path: str) -> None:
        self.add_file(self._mod(path).join(path, ".keep"))
        del self.files[self._mod(path).join(path, ".keep")]

    def deny(self, path: str) -> None:
        self.denied.add(path)

    def exists(self, path: str) -> bool:
        return path in self.files or path in self.dirs

    def is_dir(self, path: str) -> bool:
        return path in self.dirs

    def list_dir(self, path: str):
        if path in self.denied:
            raise PermissionError(path)
        if path not in self.dirs:
            return []
        mod = self._mod(path)
        children = {
            entry
            for entry in list(self.files) + list(self.dirs)
            if mod.dirname(entry) == path and entry != path
        }
        return sorted(children)

    def read_text(self, path: str, max_bytes: int = 2 * 1024 * 1024) -> str:
        if path in self.denied:
            raise PermissionError(path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def stat(self, path: str) -> FileInfo:
        if not self.exists(path):
            raise FileNotFoundError(path)
        return FileInfo(
            path=path,
            is_dir=path in self.dirs,
            is_file=path in self.files,
            owner=self.owners.get(path, "root"),
            permissions=self.modes.get(path, "755"),
            size=len(self.files.get(path, "")),
            modified_at=datetime(2024, 1, 2, 3, 4, 5),
            created_at=datetime(2024, 1, 1, 0, 0, 0),
        )

    def home(self) -> str:
        return self._home


@pytest.fixture
def fixtures_dir():
    """Path to the test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def read_fixture(fixtures_dir):
    def _read(name: str) -> str:
        return (fixtures_dir / name).read_text(encoding="utf-8")
    return _read


@pytest.fixture
def memory_fs():
    return MemoryFileSystem()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def make_context(fake_gateway, memory_fs):
    """Factory for a ProbeContext wired to the fake gateway and filesystem."""

    def _make(platform: Platform = Platform.LINUX, **kwargs) -> ProbeContext:
        if platform == Platform.WINDOWS and "home_dir" not in kwargs:
            kwargs["home_dir"] = "C:\\Users\\alice"
        kwargs.setdefault("environ", {})
        return ProbeContext(
            gateway=fake_gateway,
            platform=platform,
            filesystem=memory_fs,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_artifact():
    """Factory for artifacts with sensible defaults."""

    def _make(
        kind: MechanismKind = MechanismKind.SCHEDULED_TASK,
        name: str = "Updater",
        path: str = "\\Acme\\Updater",
        command: Optional[str] = None,
        platform: Platform = Platform.WINDOWS,
        **fields,
    ) -> Artifact:
        return Artifact.create(platform, kind, name=name, path=path, command=command, **fields)

    return _make


@pytest.fixture
def empty_intel():
    return ThreatIntelSnapshot()


class StaticProbe(ProbeBase):
    """Probe that returns a fixed list of artifacts, optionally failing afterwards."""

    platforms = (Platform.LINUX, Platform.MACOS, Platform.WINDOWS)

    def __init__(self, context, name: str, artifacts=(), error: Optional[Exception] = None, on_run=None):
        super().__init__(context)
        self.name = name
        self.artifacts = list(artifacts)
        self.error = error
        self.on_run = on_run
        self.runs = 0

    async def collect(self, found) -> None:
        self.runs += 1
        if self.on_run is not None:
            self.on_run()
        found.extend(self.artifacts)
        if self.error is not None:
            raise self.error


@pytest.fixture
def make_probe(make_context):
    """Factory for StaticProbe instances on a Linux context."""

    def _make(name: str, artifacts=(), error: Optional[Exception] = None, on_run=None) -> StaticProbe:
        return StaticProbe(make_context(), name, artifacts, error, on_run)

    return _make


@pytest.fixture
def reset_logging():
    """Drop handlers installed by configure_logging once the test is done."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(logging.WARNING)
