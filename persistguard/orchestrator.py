"""Scan orchestration: runs probes in sequence, hashes, classifies and seals a ScanResult."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from .classifier import classify_final, classify_initial
from .exceptions import CommandCancelledError, OrchestratorError, ProbeError
from .gateway import CancellationToken
from .models import (
    Artifact,
    Platform,
    ProbeFailure,
    RiskLevel,
    ScanPhase,
    ScanResult,
    ScanStatus,
    SignatureInspection,
)
from .probe_base import ProbeBase
from .signatures import SignatureOracle
from .threat_intel import ThreatIntelSnapshot

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

# Share of the progress range spent in each phase
PROBE_SHARE = 0.8
HASH_SHARE = 0.15


class ScanOrchestrator:
    """Drives one scan: idle -> running_probes -> hashing -> classifying -> completed | failed.

    Progress events are ``(label, fraction)``: the probe name while probes
    run, then ``hashing``, ``classifying`` and finally ``completed`` at 1.0.
    """

    def __init__(
        self,
        probes: Sequence[ProbeBase],
        oracle: SignatureOracle,
        intel: ThreatIntelSnapshot,
        platform: Optional[Platform],
        hash_min_risk: RiskLevel = RiskLevel.MEDIUM,
        max_parallel_hashing: int = 4,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.probes = list(probes)
        self.oracle = oracle
        self.intel = intel
        self.platform = platform
        self.hash_min_risk = hash_min_risk
        self.max_parallel_hashing = max(1, max_parallel_hashing)
        self.progress = progress
        self.cancel_token = cancel_token or CancellationToken()
        self.phase = ScanPhase.IDLE
        self._last_fraction = 0.0

    def _emit(self, label: str, fraction: float) -> None:
        fraction = min(1.0, max(self._last_fraction, fraction))
        self._last_fraction = fraction
        if self.progress is not None:
            self.progress(label, fraction)

    def _check_preconditions(self) -> None:
        if self.platform is None:
            raise OrchestratorError("Unsupported platform: no probes exist for this operating system")
        if not self.probes:
            raise OrchestratorError(f"No probes registered for {self.platform.value}")

    async def run(self) -> ScanResult:
        started = datetime.now()
        try:
            self._check_preconditions()
        except OrchestratorError as e:
            self.phase = ScanPhase.FAILED
            logger.error(f"Scan not started: {e}")
            return ScanResult(
                platform=self.platform,
                status=ScanStatus.FAILED,
                start_time=started,
                end_time=datetime.now(),
                errors=(ProbeFailure(probe="orchestrator", error_type="OrchestratorError", message=str(e)),),
                probes_total=len(self.probes),
            )

        logger.info(f"Starting {self.platform.value} persistence scan with {len(self.probes)} probes")
        items: Dict[str, Artifact] = {}
        errors: List[ProbeFailure] = []
        classified: List[Artifact] = []
        completed = 0

        try:
            completed = await self._run_probes(items, errors)
            classified = [classify_initial(a, self.intel) for a in items.values()]

            if self.cancel_token.cancelled:
                return self._seal_cancelled(started, classified, errors, completed)

            self.phase = ScanPhase.HASHING
            self._emit("hashing", PROBE_SHARE)
            inspections = await self._inspect(classified)

            if self.cancel_token.cancelled:
                return self._seal_cancelled(started, classified, errors, completed)

            self.phase = ScanPhase.CLASSIFYING
            self._emit("classifying", PROBE_SHARE + HASH_SHARE)
            final = [self._finalize(a, inspections) for a in classified]
        except Exception as e:
            logger.exception(f"Scan aborted in phase {self.phase.value}")
            self.phase = ScanPhase.FAILED
            errors.append(ProbeFailure(probe="orchestrator", error_type=type(e).__name__, message=str(e)))
            return ScanResult(
                platform=self.platform,
                status=ScanStatus.FAILED,
                start_time=started,
                end_time=datetime.now(),
                items=tuple(classified or items.values()),
                errors=tuple(errors),
                probes_total=len(self.probes),
                probes_completed=completed,
            )

        self.phase = ScanPhase.COMPLETED
        result = ScanResult(
            platform=self.platform,
            status=ScanStatus.COMPLETED,
            start_time=started,
            end_time=datetime.now(),
            items=tuple(final),
            errors=tuple(errors),
            probes_total=len(self.probes),
            probes_completed=completed,
        )
        self._emit("completed", 1.0)
        logger.info(f"Scan {result.scan_id} completed: {result.summary_line()}")
        return result

    async def _run_probes(self, items: Dict[str, Artifact], errors: List[ProbeFailure]) -> int:
        self.phase = ScanPhase.RUNNING_PROBES
        total = len(self.probes)
        completed = 0
        for i, probe in enumerate(self.probes, 1):
            if self.cancel_token.cancelled:
                logger.info(f"Cancellation requested, skipping remaining {total - i + 1} probes")
                break

            logger.info(f"Probe {i}/{total}: {probe.name}")
            try:
                found = await probe.scan(self.cancel_token)
                completed += 1
            except ProbeError as e:
                found = e.partial
                if isinstance(e.__cause__, CommandCancelledError):
                    logger.info(f"{probe.name}: interrupted by cancellation")
                else:
                    logger.warning(f"{probe.name} failed: {e} ({len(found)} partial items kept)")
                    errors.append(
                        ProbeFailure(
                            probe=probe.name or type(probe).__name__,
                            error_type="ProbeError",
                            message=str(e),
                            partial_items=len(found),
                        )
                    )
            except Exception as e:
                found = []
                logger.warning(f"{probe.name} raised {type(e).__name__}: {e}")
                errors.append(
                    ProbeFailure(probe=probe.name or type(probe).__name__, error_type=type(e).__name__, message=str(e))
                )

            for artifact in found:
                # first occurrence wins
                items.setdefault(artifact.id, artifact)
            self._emit(probe.name, PROBE_SHARE * i / total)
        return completed

    async def _inspect(self, classified: List[Artifact]) -> Dict[str, SignatureInspection]:
        """Hash and signature-check executables of artifacts at or above the threshold."""
        paths = sorted(
            {
                a.executable_path
                for a in classified
                if a.executable_path and a.risk_level.at_least(self.hash_min_risk)
            }
        )
        if not paths:
            return {}

        semaphore = asyncio.Semaphore(self.max_parallel_hashing)
        inspections: Dict[str, SignatureInspection] = {}
        done = 0

        async def inspect_one(path: str) -> None:
            nonlocal done
            async with semaphore:
                if self.cancel_token.cancelled:
                    return
                inspections[path] = await self.oracle.inspect(path, cancel_token=self.cancel_token)
            done += 1
            self._emit("hashing", PROBE_SHARE + HASH_SHARE * done / len(paths))

        logger.info(f"Inspecting {len(paths)} executables")
        await asyncio.gather(*(inspect_one(p) for p in paths))
        return inspections

    def _finalize(self, artifact: Artifact, inspections: Dict[str, SignatureInspection]) -> Artifact:
        # pass 2 evidence only for items that qualified in pass 1
        inspection = None
        if artifact.risk_level.at_least(self.hash_min_risk):
            inspection = inspections.get(artifact.executable_path or "")
        return classify_final(artifact, inspection, self.intel)

    def _seal_cancelled(
        self,
        started: datetime,
        items: List[Artifact],
        errors: List[ProbeFailure],
        completed: int,
    ) -> ScanResult:
        self.phase = ScanPhase.FAILED
        reason = self.cancel_token.reason or "cancelled"
        errors = errors + [ProbeFailure(probe="orchestrator", error_type="Cancelled", message=f"Scan cancelled: {reason}")]
        logger.warning(f"Scan cancelled after {completed}/{len(self.probes)} probes: {reason}")
        return ScanResult(
            platform=self.platform,
            status=ScanStatus.CANCELLED,
            start_time=started,
            end_time=datetime.now(),
            items=tuple(items),
            errors=tuple(errors),
            probes_total=len(self.probes),
            probes_completed=completed,
        )
