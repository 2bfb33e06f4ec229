"""The Engine: probe registry, threat-intel store and serialized scans for one host."""

import asyncio
import logging
import sys
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional

from .config import AppConfig, EngineConfig
from .filesystem import LocalFileSystem
from .gateway import CancellationToken, CommandGateway
from .models import Platform, ScanPhase, ScanResult
from .orchestrator import ProgressCallback, ScanOrchestrator
from .probe_base import ProbeBase, ProbeContext
from .probes import default_probes
from .signatures import SignatureOracle
from .threat_intel import ThreatIntelSnapshot, ThreatIntelStore
from .tool_manager import ToolManager

logger = logging.getLogger(__name__)

_DETECT = object()


def detect_platform(sys_platform: Optional[str] = None) -> Optional[Platform]:
    """Map ``sys.platform`` to a supported Platform, or None."""
    value = sys_platform or sys.platform
    if value.startswith("win"):
        return Platform.WINDOWS
    if value == "darwin":
        return Platform.MACOS
    if value.startswith("linux"):
        return Platform.LINUX
    return None


class Engine:
    """One scanning engine per host.

    Scans on the same engine never overlap; threat-intel imports take
    effect on the next scan, since each scan reads a single snapshot.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        platform=_DETECT,
        tool_manager: Optional[ToolManager] = None,
        gateway: Optional[CommandGateway] = None,
        filesystem: Optional[LocalFileSystem] = None,
        oracle: Optional[SignatureOracle] = None,
        intel_store: Optional[ThreatIntelStore] = None,
        probes: Optional[Iterable[ProbeBase]] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.config = config or EngineConfig()
        self.platform: Optional[Platform] = detect_platform() if platform is _DETECT else platform
        self.tool_manager = tool_manager or ToolManager()
        self.gateway = gateway or CommandGateway(self.tool_manager, self.config.command_timeout)
        self.oracle = oracle or SignatureOracle(
            self.gateway, self.platform or Platform.LINUX, timeout=self.config.command_timeout
        )
        self.intel_store = intel_store or ThreatIntelStore()

        self.context: Optional[ProbeContext] = None
        if self.platform is not None:
            self.context = ProbeContext(
                gateway=self.gateway,
                platform=self.platform,
                filesystem=filesystem,
                home_dir=self.config.home_dir,
                command_timeout=self.config.command_timeout,
                include_vendor=self.config.include_vendor_entries,
                environ=environ,
            )

        self._probes: Dict[str, ProbeBase] = {}
        if probes is None and self.context is not None:
            probes = default_probes(self.platform, self.context)
        for probe in probes or []:
            if probe.name in self.config.disabled_probes:
                logger.info(f"Probe '{probe.name}' disabled by configuration")
                continue
            self.register_probe(probe)

        self._lock = asyncio.Lock()
        self._history: Deque[ScanResult] = deque(maxlen=self.config.history_limit)
        self._active: Optional[ScanOrchestrator] = None

    @classmethod
    def from_config(cls, app_config: AppConfig, **kwargs) -> "Engine":
        """Build an engine from a loaded AppConfig, seeding threat intel from it."""
        tool_manager = kwargs.pop("tool_manager", None) or ToolManager(app_config.tools)
        engine = cls(config=app_config.engine, tool_manager=tool_manager, **kwargs)
        intel = app_config.threat_intel
        engine.import_threat_intel(
            hashes=intel.malicious_hashes,
            domains=intel.malicious_domains,
            publishers=intel.trusted_publishers,
            paths=intel.trusted_paths,
        )
        for path in intel.files:
            engine.intel_store.load_file(path)
        return engine

    # ---- probe registry ----

    def register_probe(self, probe: ProbeBase) -> None:
        if not probe.name:
            raise ValueError(f"{type(probe).__name__} has no name")
        if probe.name in self._probes:
            raise ValueError(f"Probe '{probe.name}' is already registered")
        self._probes[probe.name] = probe

    def unregister_probe(self, name: str) -> ProbeBase:
        if name not in self._probes:
            raise KeyError(f"No probe named '{name}'")
        return self._probes.pop(name)

    @property
    def probes(self) -> List[ProbeBase]:
        return list(self._probes.values())

    def get_probe(self, name: str) -> Optional[ProbeBase]:
        return self._probes.get(name)

    # ---- threat intel ----

    def import_threat_intel(
        self,
        hashes: Optional[Iterable[str]] = None,
        domains: Optional[Iterable[str]] = None,
        publishers: Optional[Iterable[str]] = None,
        paths: Optional[Iterable[str]] = None,
    ) -> ThreatIntelSnapshot:
        return self.intel_store.import_threat_intel(hashes, domains, publishers, paths)

    # ---- scanning ----

    @property
    def is_scanning(self) -> bool:
        return self._lock.locked()

    @property
    def phase(self) -> ScanPhase:
        return self._active.phase if self._active is not None else ScanPhase.IDLE

    async def scan(
        self,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        only: Optional[Iterable[str]] = None,
    ) -> ScanResult:
        """Run one full scan. Concurrent callers queue behind the running scan."""
        probes = self.probes
        if only is not None:
            wanted = list(only)
            unknown = [n for n in wanted if n not in self._probes]
            if unknown:
                raise KeyError(f"Unknown probe(s): {', '.join(unknown)}")
            probes = [self._probes[n] for n in wanted]

        if self._lock.locked():
            logger.info("A scan is already running on this engine, waiting for it to finish")
        async with self._lock:
            orchestrator = ScanOrchestrator(
                probes=probes,
                oracle=self.oracle,
                intel=self.intel_store.snapshot,
                platform=self.platform,
                hash_min_risk=self.config.hash_min_risk,
                max_parallel_hashing=self.config.max_parallel_hashing,
                progress=progress,
                cancel_token=cancel_token,
            )
            self._active = orchestrator
            try:
                result = await orchestrator.run()
            finally:
                self._active = None
            self._history.append(result)
            return result

    def recent_results(self, limit: int = 10) -> List[ScanResult]:
        """Most recent sealed results, oldest first."""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def get_result(self, scan_id: str) -> Optional[ScanResult]:
        return next((r for r in self._history if r.scan_id == scan_id), None)
