"""Pydantic v2 models shared by every platform's probes."""

import hashlib
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field


class Platform(str, Enum):
    WINDOWS = "windows"
    MACOS = "macos"
    LINUX = "linux"


class MechanismKind(str, Enum):
    # Windows
    REGISTRY_RUN_KEY = "registry_run_key"
    REGISTRY_RUN_ONCE = "registry_run_once"
    SCHEDULED_TASK = "scheduled_task"
    WINDOWS_SERVICE = "windows_service"
    STARTUP_FOLDER = "startup_folder"
    WMI_SUBSCRIPTION = "wmi_subscription"
    COM_OBJECT = "com_object"
    APPINIT_DLL = "appinit_dll"
    IMAGE_FILE_EXECUTION = "image_file_execution"
    WINLOGON = "winlogon"
    LSA_PACKAGE = "lsa_package"
    PRINT_MONITOR = "print_monitor"
    BOOT_EXECUTE = "boot_execute"
    NETSH_HELPER = "netsh_helper"
    # macOS
    LAUNCH_AGENT = "launch_agent"
    LAUNCH_DAEMON = "launch_daemon"
    LOGIN_ITEM = "login_item"
    KERNEL_EXTENSION = "kernel_extension"
    AUTH_PLUGIN = "auth_plugin"
    DIRECTORY_PLUGIN = "directory_plugin"
    SPOTLIGHT_IMPORTER = "spotlight_importer"
    SCRIPTING_ADDITION = "scripting_addition"
    STARTUP_ITEM = "startup_item"
    PERIODIC_TASK = "periodic_task"
    EMOND_RULE = "emond_rule"
    QUICKLOOK_PLUGIN = "quicklook_plugin"
    SCREEN_SAVER = "screen_saver"
    INPUT_METHOD = "input_method"
    # Linux
    SYSTEMD_SERVICE = "systemd_service"
    SYSTEMD_TIMER = "systemd_timer"
    INIT_SCRIPT = "init_script"
    CRON_SYSTEM = "cron_system"
    CRON_USER = "cron_user"
    CRON_PERIODIC = "cron_periodic"
    SHELL_PROFILE = "shell_profile"
    XDG_AUTOSTART = "xdg_autostart"
    KERNEL_MODULE = "kernel_module"
    LD_PRELOAD = "ld_preload"
    SSH_AUTHORIZED_KEY = "ssh_authorized_key"
    AT_JOB = "at_job"
    UDEV_RULE = "udev_rule"
    RC_LOCAL = "rc_local"
    PROFILE_D = "profile_d"
    MOTD_SCRIPT = "motd_script"
    SUDOERS_D = "sudoers_d"
    # Shared
    BROWSER_EXTENSION = "browser_extension"


class RiskLevel(str, Enum):
    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def escalate(self, steps: int = 1) -> "RiskLevel":
        """Raise by ``steps`` levels, capped at critical."""
        return _RISK_ORDER[min(self.rank + steps, len(_RISK_ORDER) - 1)]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank

    @classmethod
    def max_of(cls, levels: Iterable["RiskLevel"]) -> "RiskLevel":
        result = cls.SAFE
        for level in levels:
            if level.rank > result.rank:
                result = level
        return result


_RISK_ORDER: Tuple[RiskLevel, ...] = (
    RiskLevel.SAFE,
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
)


class SigningTier(str, Enum):
    PLATFORM_TRUSTED = "platform_trusted"
    THIRD_PARTY_TRUSTED = "third_party_trusted"
    UNSIGNED = "unsigned"
    INVALID = "invalid"
    UNKNOWN = "unknown"


class ScanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScanPhase(str, Enum):
    IDLE = "idle"
    RUNNING_PROBES = "running_probes"
    HASHING = "hashing"
    CLASSIFYING = "classifying"
    COMPLETED = "completed"
    FAILED = "failed"


def artifact_id(
    kind: MechanismKind,
    path: str,
    name: str = "",
    command: Optional[str] = None,
) -> str:
    """Deterministic id: identical records produce identical ids."""
    digest = hashlib.sha1(
        "\x00".join([kind.value, path, name, command or ""]).encode("utf-8", "replace")
    ).hexdigest()[:16]
    return f"{kind.value}_{digest}"


class Artifact(BaseModel):
    """One discovered persistence entry, normalized across platforms."""

    model_config = ConfigDict(frozen=True)

    id: str
    platform: Platform
    mechanism_kind: MechanismKind
    name: str
    path: str
    command: Optional[str] = None
    executable_path: Optional[str] = None
    owner: Optional[str] = None
    permissions: Optional[str] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    signing_tier: SigningTier = SigningTier.UNKNOWN
    signing_authority: Optional[str] = None
    content_hash: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    indicators: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        platform: Platform,
        kind: MechanismKind,
        name: str,
        path: str,
        command: Optional[str] = None,
        **fields: Any,
    ) -> "Artifact":
        return cls(
            id=artifact_id(kind, path, name, command),
            platform=platform,
            mechanism_kind=kind,
            name=name,
            path=path,
            command=command,
            **fields,
        )

    @property
    def is_world_writable(self) -> bool:
        if not self.permissions:
            return False
        try:
            return bool(int(self.permissions, 8) & 0o002)
        except ValueError:
            return False

    def with_indicators(self, *indicators: str) -> "Artifact":
        """Copy with indicators appended, keeping order and dropping repeats."""
        merged = list(self.indicators)
        for indicator in indicators:
            if indicator not in merged:
                merged.append(indicator)
        return self.model_copy(update={"indicators": tuple(merged)})


class ProbeFailure(BaseModel):
    """A recorded, non-fatal failure of one probe (or of the scan itself)."""

    model_config = ConfigDict(frozen=True)

    probe: str
    error_type: str
    message: str
    partial_items: int = 0


class SignatureInspection(BaseModel):
    """What the signature/hash oracle learned about one executable."""

    model_config = ConfigDict(frozen=True)

    path: str
    signing_tier: SigningTier = SigningTier.UNKNOWN
    authority: Optional[str] = None
    content_hash: Optional[str] = None


class ScanResult(BaseModel):
    """One sealed scan run."""

    model_config = ConfigDict(frozen=True)

    scan_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    platform: Optional[Platform] = None
    status: ScanStatus = ScanStatus.COMPLETED
    start_time: datetime
    end_time: datetime
    items: Tuple[Artifact, ...] = ()
    errors: Tuple[ProbeFailure, ...] = ()
    probes_total: int = 0
    probes_completed: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_items(self) -> int:
        return len(self.items)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def counts_by_risk(self) -> Dict[str, int]:
        counts = {level.value: 0 for level in RiskLevel}
        for item in self.items:
            counts[item.risk_level.value] += 1
        return counts

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def items_at_least(self, level: RiskLevel) -> List[Artifact]:
        return [i for i in self.items if i.risk_level.at_least(level)]

    def summary_line(self) -> str:
        counts = self.counts_by_risk
        return (
            f"{self.probes_completed} of {self.probes_total} checks completed: "
            f"{self.total_items} items "
            f"({counts['critical']} critical, {counts['high']} high, "
            f"{counts['medium']} medium)"
        )
