"""Probes shared by more than one platform: cron, shell profiles, SSH keys, at jobs, browser extensions."""

import re
from typing import List, Optional, Tuple

from ..models import Artifact, MechanismKind, Platform
from ..probe_base import ProbeBase

UNIX = (Platform.LINUX, Platform.MACOS)


class CronProbe(ProbeBase):
    name = "cron"
    description = "System crontabs, cron.d, user crontabs and periodic cron directories"
    platforms = UNIX
    mechanism_kinds = (MechanismKind.CRON_SYSTEM, MechanismKind.CRON_USER, MechanismKind.CRON_PERIODIC)

    def spool_dirs(self) -> List[str]:
        if self.context.platform == Platform.MACOS:
            return ["/usr/lib/cron/tabs"]
        return ["/var/spool/cron/crontabs", "/var/spool/cron"]

    async def collect(self, found: List[Artifact]) -> None:
        found.extend(self.parse_file("/etc/crontab", "crontab", kind=MechanismKind.CRON_SYSTEM, system=True))
        for path in self.list_dir("/etc/cron.d"):
            found.extend(self.parse_file(path, "crontab", kind=MechanismKind.CRON_SYSTEM, system=True))

        for directory in self.spool_dirs():
            for path in self.list_dir(directory):
                if self.context.filesystem.is_dir(path):
                    continue
                found.extend(self.parse_file(path, "crontab", kind=MechanismKind.CRON_USER))

        if self.tool_available("crontab"):
            # exit 1 means "no crontab for <user>"
            result = await self.run_tool(["crontab", "-l"], ok_codes=(0, 1))
            if result.exit_code == 0:
                found.extend(self.parse(result.stdout, "crontab", source="crontab -l", kind=MechanismKind.CRON_USER))

        if self.context.platform == Platform.LINUX:
            for period in ("hourly", "daily", "weekly", "monthly"):
                for path in self.list_dir(f"/etc/cron.{period}"):
                    if path.endswith(".placeholder"):
                        continue
                    found.extend(
                        self.parse_file(
                            path, "script_body", kind=MechanismKind.CRON_PERIODIC, executable=True, period=period
                        )
                    )


class ShellProfilesProbe(ProbeBase):
    name = "shell_profiles"
    description = "Per-user and system shell startup files"
    platforms = UNIX
    mechanism_kinds = (MechanismKind.SHELL_PROFILE,)

    USER_FILES: Tuple[str, ...] = (
        ".bashrc", ".bash_profile", ".bash_login", ".bash_logout", ".profile",
        ".zshrc", ".zprofile", ".zshenv", ".zlogin",
    )
    SYSTEM_FILES: Tuple[str, ...] = (
        "/etc/profile", "/etc/bash.bashrc", "/etc/bashrc", "/etc/zshrc",
        "/etc/zprofile", "/etc/zsh/zshrc", "/etc/zsh/zprofile",
    )

    async def collect(self, found: List[Artifact]) -> None:
        paths = [self.context.home(f) for f in self.USER_FILES] + list(self.SYSTEM_FILES)
        for path in paths:
            found.extend(self.parse_file(path, "script_body", kind=MechanismKind.SHELL_PROFILE))


class SshAuthorizedKeysProbe(ProbeBase):
    name = "ssh_authorized_keys"
    description = "OpenSSH authorized_keys files"
    platforms = UNIX
    mechanism_kinds = (MechanismKind.SSH_AUTHORIZED_KEY,)

    async def collect(self, found: List[Artifact]) -> None:
        paths = [
            self.context.home(".ssh", "authorized_keys"),
            self.context.home(".ssh", "authorized_keys2"),
        ]
        if self.context.platform == Platform.LINUX and self.context.home_dir != "/root":
            paths.append("/root/.ssh/authorized_keys")
        for path in paths:
            found.extend(self.parse_file(path, "authorized_keys"))


class AtJobsProbe(ProbeBase):
    name = "at_jobs"
    description = "Jobs queued with at(1)"
    platforms = UNIX
    mechanism_kinds = (MechanismKind.AT_JOB,)

    async def collect(self, found: List[Artifact]) -> None:
        if not self.tool_available("atq"):
            self.logger.info(f"{self.name}: atq not installed")
            return
        result = await self.run_tool(["atq"])
        spool = "/usr/lib/cron/jobs" if self.context.platform == Platform.MACOS else "/var/spool/cron/atjobs"
        found.extend(self.parse(result.stdout, "atq", source="atq", spool_dir=spool))


# (browser, path under the per-user data root) for Chromium-family browsers
CHROMIUM_ROOTS = {
    Platform.LINUX: (
        ("Chrome", (".config", "google-chrome")),
        ("Chromium", (".config", "chromium")),
        ("Edge", (".config", "microsoft-edge")),
        ("Brave", (".config", "BraveSoftware", "Brave-Browser")),
    ),
    Platform.MACOS: (
        ("Chrome", ("Library", "Application Support", "Google", "Chrome")),
        ("Chromium", ("Library", "Application Support", "Chromium")),
        ("Edge", ("Library", "Application Support", "Microsoft Edge")),
        ("Brave", ("Library", "Application Support", "BraveSoftware", "Brave-Browser")),
    ),
    Platform.WINDOWS: (
        ("Chrome", ("AppData", "Local", "Google", "Chrome", "User Data")),
        ("Edge", ("AppData", "Local", "Microsoft", "Edge", "User Data")),
        ("Brave", ("AppData", "Local", "BraveSoftware", "Brave-Browser", "User Data")),
    ),
}

FIREFOX_ROOTS = {
    Platform.LINUX: (".mozilla", "firefox"),
    Platform.MACOS: ("Library", "Application Support", "Firefox", "Profiles"),
    Platform.WINDOWS: ("AppData", "Roaming", "Mozilla", "Firefox", "Profiles"),
}


class BrowserExtensionsProbe(ProbeBase):
    name = "browser_extensions"
    description = "Installed Chrome, Edge, Brave, Chromium and Firefox extensions"
    platforms = (Platform.WINDOWS, Platform.MACOS, Platform.LINUX)
    mechanism_kinds = (MechanismKind.BROWSER_EXTENSION,)

    async def collect(self, found: List[Artifact]) -> None:
        for browser, parts in CHROMIUM_ROOTS.get(self.context.platform, ()):
            root = self.context.home(*parts)
            for profile in self.list_dir(root):
                base = self.context.pathmod.basename(profile)
                if base != "Default" and not base.startswith("Profile "):
                    continue
                self._collect_chromium_profile(browser, profile, found)

        firefox_root = self.context.home(*FIREFOX_ROOTS[self.context.platform])
        for profile in self.list_dir(firefox_root):
            manifest = self.context.join(profile, "extensions.json")
            found.extend(self.parse_file(manifest, "firefox_extensions_json"))

    def _version_key(self, path: str) -> Tuple[int, ...]:
        return tuple(int(p) for p in re.findall(r"\d+", self.context.pathmod.basename(path)))

    def _collect_chromium_profile(self, browser: str, profile: str, found: List[Artifact]) -> None:
        extensions_dir = self.context.join(profile, "Extensions")
        for extension_dir in self.list_dir(extensions_dir):
            extension_id = self.context.pathmod.basename(extension_dir)
            if extension_id == "Temp" or not self.context.filesystem.is_dir(extension_dir):
                continue
            versions = [v for v in self.list_dir(extension_dir) if self.context.filesystem.is_dir(v)]
            latest = max(versions, key=self._version_key) if versions else None
            artifacts: List[Artifact] = []
            if latest is not None:
                manifest = self.context.join(latest, "manifest.json")
                text = self.read_text(manifest)
                if text is not None:
                    artifacts = [
                        self.with_file_info(a, manifest)
                        for a in self.parse(
                            text, "extension_manifest", source=extension_dir, browser=browser, extension_id=extension_id
                        )
                    ]
            if not artifacts:
                self.logger.debug(f"{browser}: no readable manifest for extension {extension_id}")
                artifacts = [self._unreadable_extension(browser, extension_dir, extension_id, latest)]
            found.extend(artifacts)

    def _unreadable_extension(
        self, browser: str, extension_dir: str, extension_id: str, version_dir: Optional[str]
    ) -> Artifact:
        artifact = Artifact.create(
            self.context.platform,
            MechanismKind.BROWSER_EXTENSION,
            name=extension_id,
            path=extension_dir,
            metadata={
                "browser": browser,
                "extension_id": extension_id,
                "version": self.context.pathmod.basename(version_dir) if version_dir else None,
                "permissions": [],
                "manifest_missing": True,
            },
        )
        return self.with_file_info(artifact)


SHARED_PROBES = (
    CronProbe,
    ShellProfilesProbe,
    SshAuthorizedKeysProbe,
    AtJobsProbe,
    BrowserExtensionsProbe,
)
