"""Probe catalogue for every supported platform."""

from typing import List, Type

from ..models import Platform
from ..probe_base import ProbeBase, ProbeContext
from .common import SHARED_PROBES
from .linux import LINUX_PROBES
from .macos import MACOS_PROBES
from .windows import WINDOWS_PROBES

ALL_PROBES: List[Type[ProbeBase]] = [*WINDOWS_PROBES, *MACOS_PROBES, *LINUX_PROBES, *SHARED_PROBES]


def default_probes(platform: Platform, context: ProbeContext) -> List[ProbeBase]:
    """Instantiate every probe that applies to ``platform``, in catalogue order."""
    return [cls(context) for cls in ALL_PROBES if platform in cls.platforms]


__all__ = ["ALL_PROBES", "default_probes"]
