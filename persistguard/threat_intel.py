"""Local threat-intelligence sets: malicious hashes and domains, trusted publishers and paths."""

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

INTEL_KEYS = ("hashes", "domains", "publishers", "paths")


def _normalize(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    return frozenset(str(v).strip().lower() for v in (values or []) if str(v).strip())


class ThreatIntelSnapshot(BaseModel):
    """Immutable view of the intel sets. One snapshot is read per scan."""

    model_config = ConfigDict(frozen=True)

    malicious_hashes: FrozenSet[str] = frozenset()
    malicious_domains: FrozenSet[str] = frozenset()
    trusted_publishers: FrozenSet[str] = frozenset()
    trusted_paths: FrozenSet[str] = frozenset()

    def merged(
        self,
        hashes: Optional[Iterable[str]] = None,
        domains: Optional[Iterable[str]] = None,
        publishers: Optional[Iterable[str]] = None,
        paths: Optional[Iterable[str]] = None,
    ) -> "ThreatIntelSnapshot":
        new_hashes = _normalize(hashes)
        bad = sorted(h for h in new_hashes if not _SHA256_RE.match(h))
        if bad:
            logger.warning(f"Ignoring {len(bad)} malformed SHA-256 value(s), e.g. {bad[0]!r}")
            new_hashes = new_hashes - frozenset(bad)
        return ThreatIntelSnapshot(
            malicious_hashes=self.malicious_hashes | new_hashes,
            malicious_domains=self.malicious_domains | _normalize(domains),
            trusted_publishers=self.trusted_publishers | _normalize(publishers),
            # paths keep their case on disk but compare case-insensitively
            trusted_paths=self.trusted_paths | _normalize(paths),
        )

    def is_malicious_hash(self, content_hash: Optional[str]) -> bool:
        return bool(content_hash) and content_hash.lower() in self.malicious_hashes

    def find_domain(self, text: Optional[str]) -> Optional[str]:
        """First malicious domain referenced in ``text`` (host or subdomain match)."""
        if not text or not self.malicious_domains:
            return None
        lowered = text.lower()
        for host in re.findall(r"(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z]{2,63}", lowered):
            for domain in sorted(self.malicious_domains):
                if host == domain or host.endswith("." + domain):
                    return domain
        return None

    def is_trusted_publisher(self, authority: Optional[str]) -> bool:
        if not authority:
            return False
        lowered = authority.lower()
        return any(p == lowered or p in lowered for p in self.trusted_publishers)

    def is_trusted_path(self, path: Optional[str]) -> bool:
        if not path:
            return False
        lowered = path.lower()
        return any(lowered.startswith(prefix) for prefix in self.trusted_paths)

    def sizes(self) -> Dict[str, int]:
        return {
            "hashes": len(self.malicious_hashes),
            "domains": len(self.malicious_domains),
            "publishers": len(self.trusted_publishers),
            "paths": len(self.trusted_paths),
        }


class ThreatIntelStore:
    """Owns the current snapshot and replaces it atomically on import."""

    def __init__(self, snapshot: Optional[ThreatIntelSnapshot] = None):
        self._snapshot = snapshot or ThreatIntelSnapshot()
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> ThreatIntelSnapshot:
        return self._snapshot

    def import_threat_intel(
        self,
        hashes: Optional[Iterable[str]] = None,
        domains: Optional[Iterable[str]] = None,
        publishers: Optional[Iterable[str]] = None,
        paths: Optional[Iterable[str]] = None,
    ) -> ThreatIntelSnapshot:
        """Union new values into the sets. Takes effect on the next scan."""
        with self._lock:
            self._snapshot = self._snapshot.merged(hashes, domains, publishers, paths)
            snapshot = self._snapshot
        logger.info(f"Threat intel updated: {snapshot.sizes()}")
        return snapshot

    def import_mapping(self, data: Dict[str, Any]) -> ThreatIntelSnapshot:
        unknown = set(data) - set(INTEL_KEYS)
        if unknown:
            raise ConfigError(f"Unknown threat intel keys: {sorted(unknown)}")
        for key in INTEL_KEYS:
            value = data.get(key)
            if value is not None and not isinstance(value, list):
                raise ConfigError(f"Threat intel '{key}' must be a list")
        return self.import_threat_intel(**{k: data.get(k) for k in INTEL_KEYS})

    @staticmethod
    def read_file(path: str) -> Dict[str, Any]:
        """Read a YAML or JSON intel file into a mapping."""
        file_path = Path(path)
        if not file_path.is_file():
            raise ConfigError(f"Threat intel file not found: {path}")
        text = file_path.read_text(encoding="utf-8")
        try:
            if file_path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not parse threat intel file {path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Threat intel file {path} must contain a mapping")
        return data

    def load_file(self, path: str) -> ThreatIntelSnapshot:
        return self.import_mapping(self.read_file(path))
