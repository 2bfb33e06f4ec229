"""Linux persistence probes: systemd, init scripts, preload and module lists, udev, rc files."""

from typing import List

from ..models import Artifact, MechanismKind, Platform
from ..probe_base import ProbeBase


class SystemdServicesProbe(ProbeBase):
    name = "systemd_services"
    description = "systemd service units (admin and per-user; packaged units with vendor entries)"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.SYSTEMD_SERVICE,)

    def unit_dirs(self) -> List[str]:
        dirs = ["/etc/systemd/system", self.context.home(".config", "systemd", "user")]
        if self.context.include_vendor:
            dirs += ["/usr/lib/systemd/system", "/lib/systemd/system"]
        return dirs

    async def collect(self, found: List[Artifact]) -> None:
        for directory in self.unit_dirs():
            for path in self.list_dir(directory, suffixes=(".service",)):
                if self.context.filesystem.is_dir(path):
                    continue
                found.extend(self.parse_file(path, "systemd_unit", kind=MechanismKind.SYSTEMD_SERVICE))


class SystemdTimersProbe(ProbeBase):
    name = "systemd_timers"
    description = "Active and inactive systemd timers"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.SYSTEMD_TIMER,)

    async def collect(self, found: List[Artifact]) -> None:
        if not self.tool_available("systemctl"):
            self.logger.info(f"{self.name}: systemctl not available, not a systemd host")
            return
        result = await self.run_tool(["systemctl", "list-timers", "--all", "--no-pager"])
        found.extend(self.parse(result.stdout, "systemctl_timers", source="systemctl"))


class InitScriptsProbe(ProbeBase):
    name = "init_scripts"
    description = "SysV init scripts in /etc/init.d"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.INIT_SCRIPT,)

    async def collect(self, found: List[Artifact]) -> None:
        for path in self.list_dir("/etc/init.d"):
            if self.context.filesystem.is_dir(path):
                continue
            found.extend(self.parse_file(path, "script_body", kind=MechanismKind.INIT_SCRIPT, executable=True))


class XdgAutostartProbe(ProbeBase):
    name = "xdg_autostart"
    description = "Desktop session autostart entries"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.XDG_AUTOSTART,)

    async def collect(self, found: List[Artifact]) -> None:
        for directory in (self.context.home(".config", "autostart"), "/etc/xdg/autostart"):
            for path in self.list_dir(directory, suffixes=(".desktop",)):
                found.extend(self.parse_file(path, "desktop_entry", kind=MechanismKind.XDG_AUTOSTART))


class KernelModulesProbe(ProbeBase):
    name = "kernel_modules"
    description = "Modules loaded at boot from /etc/modules and modules-load.d"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.KERNEL_MODULE,)

    async def collect(self, found: List[Artifact]) -> None:
        sources = ["/etc/modules"] + self.list_dir("/etc/modules-load.d", suffixes=(".conf",))
        for path in sources:
            found.extend(self.parse_file(path, "line_list", kind=MechanismKind.KERNEL_MODULE))


class LdPreloadProbe(ProbeBase):
    name = "ld_preload"
    description = "/etc/ld.so.preload and the LD_PRELOAD environment variable"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.LD_PRELOAD,)

    async def collect(self, found: List[Artifact]) -> None:
        found.extend(self.parse_file("/etc/ld.so.preload", "line_list", kind=MechanismKind.LD_PRELOAD))
        value = self.context.environ.get("LD_PRELOAD", "").strip()
        if value:
            # the variable accepts both colon and space separators
            text = "\n".join(v for v in value.replace(":", " ").split())
            found.extend(
                self.parse(text, "line_list", source="environment:LD_PRELOAD", kind=MechanismKind.LD_PRELOAD)
            )


class UdevRulesProbe(ProbeBase):
    name = "udev_rules"
    description = "udev rules that run programs"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.UDEV_RULE,)

    async def collect(self, found: List[Artifact]) -> None:
        dirs = ["/etc/udev/rules.d"]
        if self.context.include_vendor:
            dirs += ["/usr/lib/udev/rules.d", "/lib/udev/rules.d"]
        for directory in dirs:
            for path in self.list_dir(directory, suffixes=(".rules",)):
                found.extend(self.parse_file(path, "udev_rules"))


class RcLocalProbe(ProbeBase):
    name = "rc_local"
    description = "/etc/rc.local"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.RC_LOCAL,)

    async def collect(self, found: List[Artifact]) -> None:
        for path in ("/etc/rc.local", "/etc/rc.d/rc.local"):
            found.extend(self.parse_file(path, "script_body", kind=MechanismKind.RC_LOCAL, executable=True))


class ProfileDProbe(ProbeBase):
    name = "profile_d"
    description = "Login shell snippets in /etc/profile.d"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.PROFILE_D,)

    async def collect(self, found: List[Artifact]) -> None:
        for path in self.list_dir("/etc/profile.d", suffixes=(".sh", ".csh", ".zsh")):
            found.extend(self.parse_file(path, "script_body", kind=MechanismKind.PROFILE_D))


class MotdScriptsProbe(ProbeBase):
    name = "motd_scripts"
    description = "update-motd.d scripts run at every login"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.MOTD_SCRIPT,)

    async def collect(self, found: List[Artifact]) -> None:
        for path in self.list_dir("/etc/update-motd.d"):
            found.extend(self.parse_file(path, "script_body", kind=MechanismKind.MOTD_SCRIPT, executable=True))


class SudoersProbe(ProbeBase):
    name = "sudoers_d"
    description = "Rules in /etc/sudoers.d"
    platforms = (Platform.LINUX,)
    mechanism_kinds = (MechanismKind.SUDOERS_D,)

    async def collect(self, found: List[Artifact]) -> None:
        for path in self.list_dir("/etc/sudoers.d"):
            # sudo ignores files containing a dot or ending in ~
            base = path.rsplit("/", 1)[-1]
            if "." in base or base.endswith("~"):
                continue
            found.extend(self.parse_file(path, "sudoers"))


LINUX_PROBES = (
    SystemdServicesProbe,
    SystemdTimersProbe,
    InitScriptsProbe,
    XdgAutostartProbe,
    KernelModulesProbe,
    LdPreloadProbe,
    UdevRulesProbe,
    RcLocalProbe,
    ProfileDProbe,
    MotdScriptsProbe,
    SudoersProbe,
)
