"""Windows persistence probes: registry autostarts, tasks, services, WMI and friends."""

from typing import List, Tuple

from ..models import Artifact, MechanismKind, Platform
from ..probe_base import ProbeBase

HKLM = "HKLM"
HKCU = "HKCU"
WINDOWS_NT = "SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion"

# reg.exe exits 1 when the key or value does not exist
REG_OK = (0, 1)


class RegistryQueryProbe(ProbeBase):
    """Queries a fixed list of registry keys and parses each with one grammar.

    Subclasses set ``queries`` as (key, extra reg args) pairs plus
    ``source_hint`` and optionally ``kind``.
    """

    platforms = (Platform.WINDOWS,)
    queries: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    source_hint = "reg_query"
    kind = None

    async def collect(self, found: List[Artifact]) -> None:
        for key, args in self.queries:
            result = await self.run_tool(["reg", "query", key, *args], ok_codes=REG_OK)
            if result.exit_code == 1:
                self.logger.debug(f"{self.name}: {key} not present")
                continue
            found.extend(self.parse(result.stdout, self.source_hint, source=key, kind=self.kind))


class RegistryRunKeysProbe(RegistryQueryProbe):
    name = "registry_run_keys"
    description = "Run and RunOnce registry keys"
    mechanism_kinds = (MechanismKind.REGISTRY_RUN_KEY, MechanismKind.REGISTRY_RUN_ONCE)
    queries = tuple(
        (f"{hive}\\{path}", ())
        for hive in (HKLM, HKCU)
        for path in (
            "Software\\Microsoft\\Windows\\CurrentVersion\\Run",
            "Software\\Microsoft\\Windows\\CurrentVersion\\RunOnce",
            "Software\\Microsoft\\Windows\\CurrentVersion\\Policies\\Explorer\\Run",
            "Software\\WOW6432Node\\Microsoft\\Windows\\CurrentVersion\\Run",
            "Software\\WOW6432Node\\Microsoft\\Windows\\CurrentVersion\\RunOnce",
        )
    )


class ComHijackProbe(RegistryQueryProbe):
    name = "com_hijack"
    description = "Per-user CLSID InprocServer32 overrides"
    mechanism_kinds = (MechanismKind.COM_OBJECT,)
    queries = ((f"{HKCU}\\Software\\Classes\\CLSID", ("/s",)),)
    source_hint = "reg_com_inproc"


class IfeoDebuggerProbe(RegistryQueryProbe):
    name = "ifeo_debuggers"
    description = "Image File Execution Options debugger hijacks"
    mechanism_kinds = (MechanismKind.IMAGE_FILE_EXECUTION,)
    queries = (
        (f"{HKLM}\\{WINDOWS_NT}\\Image File Execution Options", ("/s",)),
        (f"{HKLM}\\SOFTWARE\\WOW6432Node\\Microsoft\\Windows NT\\CurrentVersion\\Image File Execution Options", ("/s",)),
    )
    source_hint = "reg_ifeo"


class WinlogonProbe(RegistryQueryProbe):
    name = "winlogon"
    description = "Winlogon Shell, Userinit, Taskman and AppSetup values"
    mechanism_kinds = (MechanismKind.WINLOGON,)
    queries = (
        (f"{HKLM}\\{WINDOWS_NT}\\Winlogon", ()),
        (f"{HKCU}\\{WINDOWS_NT}\\Winlogon", ()),
    )
    source_hint = "reg_winlogon"


class AppInitDllsProbe(RegistryQueryProbe):
    name = "appinit_dlls"
    description = "AppInit_DLLs injected into every user32 process"
    mechanism_kinds = (MechanismKind.APPINIT_DLL,)
    queries = (
        (f"{HKLM}\\{WINDOWS_NT}\\Windows", ("/v", "AppInit_DLLs")),
        (f"{HKLM}\\SOFTWARE\\WOW6432Node\\Microsoft\\Windows NT\\CurrentVersion\\Windows", ("/v", "AppInit_DLLs")),
    )
    source_hint = "reg_appinit"


class PrintMonitorsProbe(RegistryQueryProbe):
    name = "print_monitors"
    description = "Print spooler monitor DLLs"
    mechanism_kinds = (MechanismKind.PRINT_MONITOR,)
    queries = ((f"{HKLM}\\SYSTEM\\CurrentControlSet\\Control\\Print\\Monitors", ("/s",)),)
    source_hint = "reg_print_monitors"


class LsaPackagesProbe(RegistryQueryProbe):
    name = "lsa_packages"
    description = "LSA security and authentication packages"
    mechanism_kinds = (MechanismKind.LSA_PACKAGE,)
    queries = (
        (f"{HKLM}\\SYSTEM\\CurrentControlSet\\Control\\Lsa", ("/v", "Security Packages")),
        (f"{HKLM}\\SYSTEM\\CurrentControlSet\\Control\\Lsa", ("/v", "Authentication Packages")),
    )
    source_hint = "reg_multi_sz"
    kind = MechanismKind.LSA_PACKAGE


class BootExecuteProbe(RegistryQueryProbe):
    name = "boot_execute"
    description = "Session Manager BootExecute native programs"
    mechanism_kinds = (MechanismKind.BOOT_EXECUTE,)
    queries = (
        (f"{HKLM}\\SYSTEM\\CurrentControlSet\\Control\\Session Manager", ("/v", "BootExecute")),
    )
    source_hint = "reg_multi_sz"
    kind = MechanismKind.BOOT_EXECUTE


class NetshHelpersProbe(RegistryQueryProbe):
    name = "netsh_helpers"
    description = "Netsh helper DLLs"
    mechanism_kinds = (MechanismKind.NETSH_HELPER,)
    queries = ((f"{HKLM}\\SOFTWARE\\Microsoft\\NetSh", ()),)
    source_hint = "reg_netsh"


class ScheduledTasksProbe(ProbeBase):
    name = "scheduled_tasks"
    description = "Task Scheduler entries (Microsoft tasks skipped unless vendor entries are included)"
    platforms = (Platform.WINDOWS,)
    mechanism_kinds = (MechanismKind.SCHEDULED_TASK,)

    async def collect(self, found: List[Artifact]) -> None:
        result = await self.run_tool(["schtasks", "/query", "/fo", "csv", "/v"])
        found.extend(self.parse(result.stdout, "schtasks_csv", source="schtasks"))


class ServicesProbe(ProbeBase):
    name = "services"
    description = "Installed Windows services"
    platforms = (Platform.WINDOWS,)
    mechanism_kinds = (MechanismKind.WINDOWS_SERVICE,)

    async def collect(self, found: List[Artifact]) -> None:
        result = await self.run_tool(
            ["wmic", "service", "get", "Name,PathName,StartMode,State", "/format:csv"]
        )
        for artifact in self.parse(result.stdout, "wmic_csv", source="wmic service"):
            exe = (artifact.executable_path or "").lower()
            if exe.startswith("c:\\windows\\") and not self.context.include_vendor:
                continue
            found.append(artifact)


class StartupFolderProbe(ProbeBase):
    name = "startup_folders"
    description = "Per-user and all-users Startup folders"
    platforms = (Platform.WINDOWS,)
    mechanism_kinds = (MechanismKind.STARTUP_FOLDER,)

    def startup_dirs(self) -> List[str]:
        tail = "Microsoft\\Windows\\Start Menu\\Programs\\Startup"
        appdata = self.context.environ.get("APPDATA") or self.context.home("AppData", "Roaming")
        programdata = self.context.environ.get("PROGRAMDATA") or "C:\\ProgramData"
        return [self.context.join(appdata, tail), self.context.join(programdata, tail)]

    async def collect(self, found: List[Artifact]) -> None:
        for directory in self.startup_dirs():
            for path in self.list_dir(directory):
                if self.context.pathmod.basename(path).lower() == "desktop.ini":
                    continue
                found.append(
                    self.file_artifact(
                        MechanismKind.STARTUP_FOLDER, path, metadata={"folder": directory}
                    )
                )


class WmiSubscriptionProbe(ProbeBase):
    name = "wmi_subscriptions"
    description = "WMI permanent event consumers"
    platforms = (Platform.WINDOWS,)
    mechanism_kinds = (MechanismKind.WMI_SUBSCRIPTION,)

    async def collect(self, found: List[Artifact]) -> None:
        result = await self.run_tool(
            [
                "wmic",
                "/namespace:\\\\root\\subscription",
                "path",
                "__EventConsumer",
                "get",
                "/format:list",
            ]
        )
        found.extend(self.parse(result.stdout, "wmic_list", source="root\\subscription"))


WINDOWS_PROBES = (
    RegistryRunKeysProbe,
    ScheduledTasksProbe,
    ServicesProbe,
    StartupFolderProbe,
    WmiSubscriptionProbe,
    ComHijackProbe,
    IfeoDebuggerProbe,
    WinlogonProbe,
    AppInitDllsProbe,
    PrintMonitorsProbe,
    LsaPackagesProbe,
    BootExecuteProbe,
    NetshHelpersProbe,
)
