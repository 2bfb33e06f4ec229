"""FastAPI routes for persistence scan status, probes, results and threat intel."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from .engine import Engine
from .export import result_to_dict
from .models import RiskLevel

logger = logging.getLogger(__name__)


class ThreatIntelImport(BaseModel):
    hashes: Optional[List[str]] = None
    domains: Optional[List[str]] = None
    publishers: Optional[List[str]] = None
    paths: Optional[List[str]] = None


def create_engine_router(engine: Engine) -> APIRouter:
    """Create FastAPI router exposing an Engine's state."""

    router = APIRouter(prefix="/persistence", tags=["persistence"])

    @router.get("/status")
    async def get_status() -> Dict[str, Any]:
        return {
            "platform": engine.platform.value if engine.platform else None,
            "scanning": engine.is_scanning,
            "phase": engine.phase.value,
            "threat_intel": engine.intel_store.snapshot.sizes(),
        }

    @router.get("/probes")
    async def get_probes() -> Dict[str, Any]:
        """List registered probes."""
        probes = engine.probes
        return {
            "probes": [
                {
                    "name": p.name,
                    "description": p.description,
                    "platforms": [pl.value for pl in p.platforms],
                    "mechanism_kinds": [k.value for k in p.mechanism_kinds],
                }
                for p in probes
            ],
            "count": len(probes),
        }

    @router.get("/tools")
    async def get_tools() -> Dict[str, Any]:
        """Availability of the OS utilities probes rely on."""
        tools = engine.tool_manager.check_all_tools(engine.platform)
        return {
            "tools": {
                name: {
                    "display_name": info.display_name,
                    "installed": info.installed,
                    "path": str(info.path) if info.path else None,
                }
                for name, info in tools.items()
            },
            "installed_count": sum(1 for t in tools.values() if t.installed),
            "total_count": len(tools),
        }

    @router.get("/scans")
    async def get_scans(limit: int = Query(10, ge=1, le=100)) -> Dict[str, Any]:
        """Summaries of recent scans, newest first."""
        results = list(reversed(engine.recent_results(limit)))
        return {
            "scans": [
                {
                    "scan_id": r.scan_id,
                    "status": r.status.value,
                    "start_time": r.start_time.isoformat(),
                    "end_time": r.end_time.isoformat(),
                    "duration_seconds": r.duration_seconds,
                    "total_items": r.total_items,
                    "counts_by_risk": r.counts_by_risk,
                    "summary": r.summary_line(),
                    "error_count": len(r.errors),
                }
                for r in results
            ],
            "count": len(results),
        }

    @router.get("/scans/{scan_id}")
    async def get_scan(
        scan_id: str,
        min_risk: Optional[RiskLevel] = Query(None),
    ) -> Dict[str, Any]:
        """Full result of one scan, optionally filtered by minimum risk."""
        result = engine.get_result(scan_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
        data = result_to_dict(result)
        if min_risk is not None:
            allowed = {level.value for level in RiskLevel if level.at_least(min_risk)}
            data["items"] = [i for i in data["items"] if i["risk"] in allowed]
        return data

    @router.post("/threat-intel")
    async def post_threat_intel(payload: ThreatIntelImport) -> Dict[str, Any]:
        """Union indicators into the engine's threat intel; used from the next scan."""
        snapshot = engine.import_threat_intel(
            hashes=payload.hashes,
            domains=payload.domains,
            publishers=payload.publishers,
            paths=payload.paths,
        )
        return {"threat_intel": snapshot.sizes()}

    return router
