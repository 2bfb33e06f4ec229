"""Abstract base class for all persistence probes.

Implements the template method pattern: subclasses override collect(),
while scan() handles error wrapping, partial results and logging. The
helpers below are the only way probes touch the outside world.
"""

import logging
import ntpath
import os
import posixpath
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .exceptions import CommandNotFoundError, GatewayError, ProbeError
from .filesystem import LocalFileSystem
from .gateway import DEFAULT_TIMEOUT, CancellationToken, CommandGateway, CommandResult
from .models import Artifact, MechanismKind, Platform
from .parsers import ArtifactParser, ParseContext

logger = logging.getLogger(__name__)


class ProbeContext:
    """Collaborators and settings shared by every probe in a registry."""

    def __init__(
        self,
        gateway: CommandGateway,
        platform: Platform,
        filesystem: Optional[LocalFileSystem] = None,
        parser: Optional[ArtifactParser] = None,
        home_dir: Optional[str] = None,
        command_timeout: float = DEFAULT_TIMEOUT,
        include_vendor: bool = False,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.gateway = gateway
        self.platform = platform
        self.filesystem = filesystem or LocalFileSystem()
        self.parser = parser or ArtifactParser()
        self.home_dir = home_dir or self.filesystem.home()
        self.command_timeout = command_timeout
        self.include_vendor = include_vendor
        self.environ = dict(os.environ if environ is None else environ)

    @property
    def pathmod(self):
        return ntpath if self.platform == Platform.WINDOWS else posixpath

    def join(self, *parts: str) -> str:
        return self.pathmod.join(*parts)

    def home(self, *parts: str) -> str:
        return self.join(self.home_dir, *parts)


class ProbeBase(ABC):
    """Abstract base for persistence probes.

    Subclasses set:
      - name: unique probe name (used in errors and config)
      - platforms: platforms the probe applies to
      - mechanism_kinds: kinds of artifact it can emit
    and implement collect(), appending artifacts to ``found`` as they are
    discovered so a late failure still reports what came before it.
    """

    name: str = ""
    description: str = ""
    platforms: Tuple[Platform, ...] = ()
    mechanism_kinds: Tuple[MechanismKind, ...] = ()

    def __init__(self, context: ProbeContext):
        self.context = context
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._cancel_token: Optional[CancellationToken] = None

    @abstractmethod
    async def collect(self, found: List[Artifact]) -> None:
        """Enumerate the mechanism and append Artifacts to ``found``."""

    def supports(self, platform: Platform) -> bool:
        return platform in self.platforms

    async def scan(self, cancel_token: Optional[CancellationToken] = None) -> List[Artifact]:
        """Run the probe. This is the template method.

        Raises:
            ProbeError: the probe could not finish; ``partial`` carries
                the artifacts gathered before the failure.
        """
        self._cancel_token = cancel_token
        found: List[Artifact] = []
        try:
            await self.collect(found)
        except ProbeError as e:
            e.probe = e.probe or self.name
            if not e.partial:
                e.partial = list(found)
            raise
        except Exception as e:
            raise ProbeError(f"{type(e).__name__}: {e}", self.name, found) from e
        finally:
            self._cancel_token = None

        self.logger.info(f"{self.name}: {len(found)} artifacts")
        return found

    # ---- command helpers ----

    def tool_available(self, tool: str) -> bool:
        return self.context.gateway.tool_manager.resolve(tool) is not None

    async def run_tool(
        self,
        argv: Sequence[str],
        ok_codes: Iterable[int] = (0,),
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Run a utility through the gateway; any failure becomes a ProbeError."""
        try:
            result = await self.context.gateway.run(
                argv,
                timeout=self.context.command_timeout,
                env=env,
                cancel_token=self._cancel_token,
            )
        except CommandNotFoundError as e:
            raise ProbeError(f"Required tool unavailable: {e}", self.name) from e
        except GatewayError as e:
            raise ProbeError(str(e), self.name) from e
        if result.exit_code not in tuple(ok_codes):
            detail = result.stderr.strip().splitlines()[:1]
            raise ProbeError(
                f"{argv[0]} exited with code {result.exit_code}"
                + (f": {detail[0]}" if detail else ""),
                self.name,
            )
        return result

    def parse(
        self,
        raw_output: str,
        source_hint: str,
        source: str = "",
        kind: Optional[MechanismKind] = None,
        **extra: Any,
    ) -> List[Artifact]:
        ctx = ParseContext(
            platform=self.context.platform,
            kind=kind,
            source=source,
            include_vendor=self.context.include_vendor,
            extra=extra,
        )
        return self.context.parser.parse(raw_output, source_hint, ctx)

    # ---- filesystem helpers ----

    def list_dir(self, path: str, suffixes: Optional[Tuple[str, ...]] = None) -> List[str]:
        """Entries of ``path``; a missing or unreadable directory gives []."""
        try:
            entries = self.context.filesystem.list_dir(path)
        except PermissionError:
            self.logger.warning(f"{self.name}: permission denied listing {path}")
            return []
        if suffixes:
            entries = [e for e in entries if e.lower().endswith(suffixes)]
        return entries

    def read_text(self, path: str) -> Optional[str]:
        """File contents, or None when it is missing or unreadable."""
        fs = self.context.filesystem
        if not fs.exists(path) or fs.is_dir(path):
            return None
        try:
            return fs.read_text(path)
        except FileNotFoundError:
            return None
        except PermissionError:
            self.logger.warning(f"{self.name}: permission denied reading {path}")
            return None
        except OSError as e:
            self.logger.warning(f"{self.name}: could not read {path}: {e}")
            return None

    def with_file_info(self, artifact: Artifact, path: Optional[str] = None) -> Artifact:
        """Attach owner, permissions and timestamps of ``path`` (default: artifact.path)."""
        target = path or artifact.path
        try:
            info = self.context.filesystem.stat(target)
        except OSError:
            return artifact
        return artifact.model_copy(
            update={
                "owner": info.owner,
                "permissions": info.permissions,
                "created_at": info.created_at,
                "modified_at": info.modified_at,
            }
        )

    def file_artifact(
        self,
        kind: MechanismKind,
        path: str,
        name: Optional[str] = None,
        command: Optional[str] = None,
        executable: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Artifact:
        """Artifact for a file whose presence is the persistence entry."""
        artifact = Artifact.create(
            self.context.platform,
            kind,
            name=name or self.context.pathmod.basename(path.rstrip("/\\")),
            path=path,
            command=command,
            executable_path=path if executable else None,
            metadata=metadata or {},
        )
        return self.with_file_info(artifact)

    def parse_file(
        self,
        path: str,
        source_hint: str,
        kind: Optional[MechanismKind] = None,
        **extra: Any,
    ) -> List[Artifact]:
        """Read and parse one file, attaching its file info to every artifact."""
        text = self.read_text(path)
        if text is None:
            return []
        return [
            self.with_file_info(a, path)
            for a in self.parse(text, source_hint, source=path, kind=kind, **extra)
        ]
