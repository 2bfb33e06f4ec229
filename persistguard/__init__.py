"""Persistence mechanism scanning and risk classification for Windows, macOS and Linux."""

from .engine import Engine, detect_platform
from .models import (
    Artifact,
    MechanismKind,
    Platform,
    ProbeFailure,
    RiskLevel,
    ScanPhase,
    ScanResult,
    ScanStatus,
    SigningTier,
)

__version__ = "0.1.0"

__all__ = [
    "Artifact",
    "Engine",
    "MechanismKind",
    "Platform",
    "ProbeFailure",
    "RiskLevel",
    "ScanPhase",
    "ScanResult",
    "ScanStatus",
    "SigningTier",
    "detect_platform",
]
