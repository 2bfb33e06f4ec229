"""macOS persistence probes: launchd jobs, login items, kexts and bundle plug-ins."""

from abc import abstractmethod
from typing import List, Optional, Tuple

from ..models import Artifact, MechanismKind, Platform
from ..probe_base import ProbeBase

LOGIN_ITEMS_SCRIPT = 'tell application "System Events" to get the {name, path} of every login item'


class PlistProbeMixin:
    """Reads property lists through ``plutil -convert json``."""

    async def plist_json(self, path: str) -> Optional[str]:
        result = await self.run_tool(["plutil", "-convert", "json", "-o", "-", path], ok_codes=(0, 1))
        if result.exit_code != 0:
            self.logger.debug(f"{self.name}: plutil could not read {path}: {result.stderr.strip()}")
            return None
        return result.stdout


class LaunchdProbe(PlistProbeMixin, ProbeBase):
    """Launch agents or daemons: every ``*.plist`` in the configured directories."""

    platforms = (Platform.MACOS,)
    kind = MechanismKind.LAUNCH_AGENT

    @abstractmethod
    def directories(self) -> List[str]:
        """Directories scanned for job plists."""

    async def collect(self, found: List[Artifact]) -> None:
        for directory in self.directories():
            for path in self.list_dir(directory, suffixes=(".plist",)):
                text = await self.plist_json(path)
                if text is None:
                    continue
                for artifact in self.parse(text, "plist_json", source=path, kind=self.kind):
                    found.append(self.with_file_info(artifact))


class LaunchAgentsProbe(LaunchdProbe):
    name = "launch_agents"
    description = "Per-user and system launch agents"
    mechanism_kinds = (MechanismKind.LAUNCH_AGENT,)
    kind = MechanismKind.LAUNCH_AGENT

    def directories(self) -> List[str]:
        dirs = [self.context.home("Library", "LaunchAgents"), "/Library/LaunchAgents"]
        if self.context.include_vendor:
            dirs.append("/System/Library/LaunchAgents")
        return dirs


class LaunchDaemonsProbe(LaunchdProbe):
    name = "launch_daemons"
    description = "System launch daemons"
    mechanism_kinds = (MechanismKind.LAUNCH_DAEMON,)
    kind = MechanismKind.LAUNCH_DAEMON

    def directories(self) -> List[str]:
        dirs = ["/Library/LaunchDaemons"]
        if self.context.include_vendor:
            dirs.append("/System/Library/LaunchDaemons")
        return dirs


class LoginItemsProbe(ProbeBase):
    name = "login_items"
    description = "Login items registered with System Events"
    platforms = (Platform.MACOS,)
    mechanism_kinds = (MechanismKind.LOGIN_ITEM,)

    async def collect(self, found: List[Artifact]) -> None:
        result = await self.run_tool(["osascript", "-e", LOGIN_ITEMS_SCRIPT])
        found.extend(self.parse(result.stdout, "osascript_list", source="System Events"))


class BundleProbe(PlistProbeMixin, ProbeBase):
    """Bundles dropped into a plug-in directory, identified through their Info.plist.

    Subclasses set ``kind``, ``suffix`` and ``system_dirs``/``user_dirs``.
    """

    platforms = (Platform.MACOS,)
    kind = MechanismKind.KERNEL_EXTENSION
    suffix = ".bundle"
    system_dirs: Tuple[str, ...] = ()
    user_dirs: Tuple[Tuple[str, ...], ...] = ()
    vendor_dirs: Tuple[str, ...] = ()

    def directories(self) -> List[str]:
        dirs = list(self.system_dirs)
        dirs += [self.context.home(*parts) for parts in self.user_dirs]
        if self.context.include_vendor:
            dirs += list(self.vendor_dirs)
        return dirs

    async def collect(self, found: List[Artifact]) -> None:
        for directory in self.directories():
            for bundle in self.list_dir(directory, suffixes=(self.suffix,)):
                info_plist = f"{bundle}/Contents/Info.plist"
                artifacts: List[Artifact] = []
                if self.context.filesystem.exists(info_plist):
                    text = await self.plist_json(info_plist)
                    if text is not None:
                        artifacts = self.parse(text, "bundle_info_json", source=bundle, kind=self.kind)
                if not artifacts:
                    artifacts = [self.file_artifact(self.kind, bundle, executable=False)]
                found.extend(self.with_file_info(a, bundle) for a in artifacts)


class KernelExtensionsProbe(BundleProbe):
    name = "kernel_extensions"
    description = "Third-party kernel extensions"
    mechanism_kinds = (MechanismKind.KERNEL_EXTENSION,)
    kind = MechanismKind.KERNEL_EXTENSION
    suffix = ".kext"
    system_dirs = ("/Library/Extensions",)
    vendor_dirs = ("/System/Library/Extensions",)


class AuthPluginsProbe(BundleProbe):
    name = "auth_plugins"
    description = "Authorization (SecurityAgent) plug-ins"
    mechanism_kinds = (MechanismKind.AUTH_PLUGIN,)
    kind = MechanismKind.AUTH_PLUGIN
    suffix = ".bundle"
    system_dirs = ("/Library/Security/SecurityAgentPlugins",)


class DirectoryPluginsProbe(BundleProbe):
    name = "directory_plugins"
    description = "Directory Services plug-ins"
    mechanism_kinds = (MechanismKind.DIRECTORY_PLUGIN,)
    kind = MechanismKind.DIRECTORY_PLUGIN
    suffix = ".dsplug"
    system_dirs = ("/Library/DirectoryServices/PlugIns",)


class SpotlightImportersProbe(BundleProbe):
    name = "spotlight_importers"
    description = "Spotlight metadata importers"
    mechanism_kinds = (MechanismKind.SPOTLIGHT_IMPORTER,)
    kind = MechanismKind.SPOTLIGHT_IMPORTER
    suffix = ".mdimporter"
    system_dirs = ("/Library/Spotlight",)
    user_dirs = (("Library", "Spotlight"),)


class ScriptingAdditionsProbe(BundleProbe):
    name = "scripting_additions"
    description = "AppleScript scripting additions"
    mechanism_kinds = (MechanismKind.SCRIPTING_ADDITION,)
    kind = MechanismKind.SCRIPTING_ADDITION
    suffix = ".osax"
    system_dirs = ("/Library/ScriptingAdditions",)
    user_dirs = (("Library", "ScriptingAdditions"),)


class QuickLookPluginsProbe(BundleProbe):
    name = "quicklook_plugins"
    description = "Quick Look generators"
    mechanism_kinds = (MechanismKind.QUICKLOOK_PLUGIN,)
    kind = MechanismKind.QUICKLOOK_PLUGIN
    suffix = ".qlgenerator"
    system_dirs = ("/Library/QuickLook",)
    user_dirs = (("Library", "QuickLook"),)


class ScreenSaversProbe(BundleProbe):
    name = "screen_savers"
    description = "Screen saver modules"
    mechanism_kinds = (MechanismKind.SCREEN_SAVER,)
    kind = MechanismKind.SCREEN_SAVER
    suffix = ".saver"
    system_dirs = ("/Library/Screen Savers",)
    user_dirs = (("Library", "Screen Savers"),)


class InputMethodsProbe(BundleProbe):
    name = "input_methods"
    description = "Input method bundles"
    mechanism_kinds = (MechanismKind.INPUT_METHOD,)
    kind = MechanismKind.INPUT_METHOD
    suffix = ".app"
    system_dirs = ("/Library/Input Methods",)
    user_dirs = (("Library", "Input Methods"),)


class StartupItemsProbe(ProbeBase):
    name = "startup_items"
    description = "Legacy StartupItems"
    platforms = (Platform.MACOS,)
    mechanism_kinds = (MechanismKind.STARTUP_ITEM,)

    async def collect(self, found: List[Artifact]) -> None:
        for directory in ("/Library/StartupItems", "/System/Library/StartupItems"):
            for item in self.list_dir(directory):
                if not self.context.filesystem.is_dir(item):
                    continue
                name = item.rstrip("/").rsplit("/", 1)[-1]
                script = f"{item}/{name}"
                artifact = self.file_artifact(MechanismKind.STARTUP_ITEM, item, executable=False)
                if self.context.filesystem.exists(script):
                    artifact = artifact.model_copy(update={"executable_path": script})
                found.append(artifact.with_indicators("deprecated StartupItems mechanism"))


class PeriodicScriptsProbe(ProbeBase):
    name = "periodic_scripts"
    description = "periodic(8) daily, weekly and monthly scripts"
    platforms = (Platform.MACOS,)
    mechanism_kinds = (MechanismKind.PERIODIC_TASK,)

    async def collect(self, found: List[Artifact]) -> None:
        for base in ("/etc/periodic", "/usr/local/etc/periodic"):
            for period in ("daily", "weekly", "monthly"):
                for path in self.list_dir(f"{base}/{period}"):
                    found.extend(
                        self.parse_file(
                            path, "script_body", kind=MechanismKind.PERIODIC_TASK, executable=True
                        )
                    )


class EmondRulesProbe(PlistProbeMixin, ProbeBase):
    name = "emond_rules"
    description = "Event monitor daemon rules with RunCommand actions"
    platforms = (Platform.MACOS,)
    mechanism_kinds = (MechanismKind.EMOND_RULE,)

    async def collect(self, found: List[Artifact]) -> None:
        for path in self.list_dir("/etc/emond.d/rules", suffixes=(".plist",)):
            text = await self.plist_json(path)
            if text is None:
                continue
            found.extend(self.with_file_info(a) for a in self.parse(text, "emond_json", source=path))


MACOS_PROBES = (
    LaunchAgentsProbe,
    LaunchDaemonsProbe,
    LoginItemsProbe,
    KernelExtensionsProbe,
    AuthPluginsProbe,
    DirectoryPluginsProbe,
    SpotlightImportersProbe,
    ScriptingAdditionsProbe,
    QuickLookPluginsProbe,
    ScreenSaversProbe,
    InputMethodsProbe,
    StartupItemsProbe,
    PeriodicScriptsProbe,
    EmondRulesProbe,
)
