"""Tests for probes against an in-memory filesystem and canned utility output."""

from typing import List

import pytest

from persistguard.exceptions import ProbeError
from persistguard.models import Artifact, MechanismKind, Platform
from persistguard.probe_base import ProbeBase
from persistguard.probes import ALL_PROBES, default_probes
from persistguard.probes.common import (
    BrowserExtensionsProbe,
    CronProbe,
    SshAuthorizedKeysProbe,
)
from persistguard.probes.linux import (
    InitScriptsProbe,
    LdPreloadProbe,
    RcLocalProbe,
    SudoersProbe,
    SystemdServicesProbe,
    SystemdTimersProbe,
)
from persistguard.probes.macos import (
    KernelExtensionsProbe,
    LaunchdProbe,
    LaunchAgentsProbe,
    LoginItemsProbe,
    StartupItemsProbe,
)
from persistguard.probes.windows import (
    LsaPackagesProbe,
    RegistryRunKeysProbe,
    ScheduledTasksProbe,
    ServicesProbe,
    StartupFolderProbe,
    WmiSubscriptionProbe,
)

RUN_KEY = "HKLM\\Software\\Microsoft\\Windows\\CurrentVersion\\Run"
RUNONCE_KEY = "HKLM\\Software\\Microsoft\\Windows\\CurrentVersion\\RunOnce"


class ExplodingProbe(ProbeBase):
    name = "exploding"
    platforms = (Platform.LINUX,)

    async def collect(self, found: List[Artifact]) -> None:
        found.append(Artifact.create(Platform.LINUX, MechanismKind.RC_LOCAL, name="rc.local", path="/etc/rc.local"))
        raise ValueError("boom")


class TestProbeBase:
    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped_with_partial(self, make_context):
        probe = ExplodingProbe(make_context())
        with pytest.raises(ProbeError) as exc_info:
            await probe.scan()
        assert exc_info.value.probe == "exploding"
        assert "ValueError: boom" in str(exc_info.value)
        assert len(exc_info.value.partial) == 1

    def test_supports(self, make_context):
        probe = ExplodingProbe(make_context())
        assert probe.supports(Platform.LINUX)
        assert not probe.supports(Platform.WINDOWS)

    def test_catalogue_names_unique(self):
        names = [cls.name for cls in ALL_PROBES]
        assert len(names) == len(set(names))
        assert all(cls.platforms for cls in ALL_PROBES)

    @pytest.mark.parametrize(
        "platform,expected",
        [(Platform.LINUX, 16), (Platform.MACOS, 19), (Platform.WINDOWS, 14)],
    )
    def test_default_probes(self, make_context, platform, expected):
        probes = default_probes(platform, make_context(platform))
        assert len(probes) == expected
        assert all(p.supports(platform) for p in probes)


class TestWindowsProbes:
    @pytest.mark.asyncio
    async def test_run_keys(self, make_context, fake_gateway, read_fixture):
        fake_gateway.add(["reg", "query", RUN_KEY], stdout=read_fixture("reg_run_keys.txt"))
        items = await RegistryRunKeysProbe(make_context(Platform.WINDOWS)).scan()
        assert len(items) == 4
        assert len(fake_gateway.calls) == len(RegistryRunKeysProbe.queries)

    @pytest.mark.asyncio
    async def test_run_keys_without_reg(self, make_context):
        with pytest.raises(ProbeError, match="Required tool unavailable") as exc_info:
            await RegistryRunKeysProbe(make_context(Platform.WINDOWS)).scan()
        assert exc_info.value.probe == "registry_run_keys"

    @pytest.mark.asyncio
    async def test_run_keys_failure_keeps_partial(self, make_context, fake_gateway, read_fixture):
        fake_gateway.add(["reg", "query", RUN_KEY], stdout=read_fixture("reg_run_keys.txt"))
        fake_gateway.add(["reg", "query", RUNONCE_KEY], exit_code=5, stderr="ERROR: Access is denied.")
        with pytest.raises(ProbeError, match="exited with code 5: ERROR: Access is denied.") as exc_info:
            await RegistryRunKeysProbe(make_context(Platform.WINDOWS)).scan()
        assert len(exc_info.value.partial) == 4

    @pytest.mark.asyncio
    async def test_scheduled_tasks(self, make_context, fake_gateway, read_fixture):
        fake_gateway.add(["schtasks", "/query", "/fo", "csv", "/v"], stdout=read_fixture("schtasks_verbose.csv"))
        items = await ScheduledTasksProbe(make_context(Platform.WINDOWS)).scan()
        assert [a.name for a in items] == ["GoogleUpdateTaskMachineCore", "Sync"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("include_vendor,expected", [(False, {"AcmeAgent", "Odd"}), (True, {"AcmeAgent", "Odd", "Spooler"})])
    async def test_services(self, make_context, fake_gateway, read_fixture, include_vendor, expected):
        fake_gateway.add(
            ["wmic", "service", "get", "Name,PathName,StartMode,State", "/format:csv"],
            stdout=read_fixture("wmic_services.csv"),
        )
        items = await ServicesProbe(make_context(Platform.WINDOWS, include_vendor=include_vendor)).scan()
        assert {a.name for a in items} == expected

    @pytest.mark.asyncio
    async def test_startup_folder(self, make_context, memory_fs):
        folder = "C:\\Users\\alice\\AppData\\Roaming\\Microsoft\\Windows\\Start Menu\\Programs\\Startup"
        memory_fs.add_file(f"{folder}\\evil.lnk", "shortcut")
        memory_fs.add_file(f"{folder}\\desktop.ini", "[.ShellClassInfo]")
        ctx = make_context(Platform.WINDOWS, environ={"APPDATA": "C:\\Users\\alice\\AppData\\Roaming"})
        items = await StartupFolderProbe(ctx).scan()
        assert len(items) == 1
        assert items[0].name == "evil.lnk"
        assert items[0].executable_path == f"{folder}\\evil.lnk"
        assert items[0].metadata["folder"] == folder
        assert items[0].permissions == "644"

    @pytest.mark.asyncio
    async def test_wmi_subscriptions(self, make_context, fake_gateway):
        fake_gateway.add(
            ["wmic", "/namespace:\\\\root\\subscription", "path", "__EventConsumer", "get", "/format:list"],
            stdout="\r\n\r\nCommandLineTemplate=C:\\Tools\\beacon.exe\r\nName=Beacon\r\n"
                   "__CLASS=CommandLineEventConsumer\r\n\r\n",
        )
        items = await WmiSubscriptionProbe(make_context(Platform.WINDOWS)).scan()
        assert [a.name for a in items] == ["Beacon"]
        assert items[0].executable_path == "C:\\Tools\\beacon.exe"

    @pytest.mark.asyncio
    async def test_lsa_packages(self, make_context, fake_gateway):
        key = "HKLM\\SYSTEM\\CurrentControlSet\\Control\\Lsa"
        fake_gateway.add(
            ["reg", "query", key, "/v", "Security Packages"],
            stdout="\nHKEY_LOCAL_MACHINE\\SYSTEM\\CurrentControlSet\\Control\\Lsa\n"
                   "    Security Packages    REG_MULTI_SZ    kerberos\\0msv1_0\\0evilssp\n",
        )
        items = await LsaPackagesProbe(make_context(Platform.WINDOWS)).scan()
        assert [a.name for a in items] == ["kerberos", "msv1_0", "evilssp"]


class TestLinuxProbes:
    @pytest.mark.asyncio
    async def test_systemd_services(self, make_context, memory_fs, read_fixture):
        memory_fs.add_file("/etc/systemd/system/acme-sync.service", read_fixture("acme-sync.service"))
        memory_fs.add_file("/etc/systemd/system/multi-user.target.wants/ssh.service", "[Service]\nExecStart=/usr/sbin/sshd\n")
        memory_fs.add_file("/etc/systemd/system/README", "not a unit")
        items = await SystemdServicesProbe(make_context()).scan()
        assert len(items) == 1
        assert items[0].executable_path == "/opt/acme/bin/sync"
        assert items[0].owner == "root"
        assert items[0].modified_at is not None

    @pytest.mark.asyncio
    async def test_systemd_timers_skipped_without_systemctl(self, make_context, fake_gateway):
        assert await SystemdTimersProbe(make_context()).scan() == []
        assert fake_gateway.calls == []

    @pytest.mark.asyncio
    async def test_systemd_timers(self, make_context, fake_gateway):
        fake_gateway.add(
            ["systemctl", "list-timers", "--all", "--no-pager"],
            stdout="NEXT LEFT LAST PASSED UNIT ACTIVATES\nn/a n/a n/a n/a backdoor.timer backdoor.service\n",
        )
        items = await SystemdTimersProbe(make_context()).scan()
        assert [a.name for a in items] == ["backdoor.timer"]

    @pytest.mark.asyncio
    async def test_cron(self, make_context, memory_fs, read_fixture):
        memory_fs.add_file("/etc/crontab", read_fixture("crontab_system.txt"))
        memory_fs.add_file("/etc/cron.d/acme", "*/10 * * * * root /opt/acme/poll\n")
        memory_fs.add_file("/var/spool/cron/crontabs/alice", "0 1 * * * /home/alice/x.sh\n")
        memory_fs.add_file("/etc/cron.daily/logrotate", "#!/bin/sh\n/usr/sbin/logrotate /etc/logrotate.conf\n")
        memory_fs.add_file("/etc/cron.daily/.placeholder", "# keep\n")
        items = await CronProbe(make_context()).scan()

        kinds = [a.mechanism_kind for a in items]
        assert kinds.count(MechanismKind.CRON_SYSTEM) == 5
        assert kinds.count(MechanismKind.CRON_USER) == 1
        assert kinds.count(MechanismKind.CRON_PERIODIC) == 1
        periodic = items[-1]
        assert periodic.executable_path == "/etc/cron.daily/logrotate"
        assert periodic.metadata["body"] == "/usr/sbin/logrotate /etc/logrotate.conf"

    @pytest.mark.asyncio
    async def test_cron_current_user(self, make_context, fake_gateway):
        fake_gateway.add(["crontab", "-l"], stdout="@reboot /home/alice/.local/bin/agent\n")
        items = await CronProbe(make_context()).scan()
        assert len(items) == 1
        assert items[0].path == "crontab -l"
        assert items[0].metadata["schedule"] == "@reboot"

    @pytest.mark.asyncio
    async def test_cron_no_crontab_for_user(self, make_context, fake_gateway):
        fake_gateway.add(["crontab", "-l"], exit_code=1, stderr="no crontab for alice")
        assert await CronProbe(make_context()).scan() == []

    @pytest.mark.asyncio
    async def test_ld_preload_file_and_environment(self, make_context, memory_fs):
        memory_fs.add_file("/etc/ld.so.preload", "/usr/lib/libhook.so\n")
        ctx = make_context(environ={"LD_PRELOAD": "/tmp/a.so:/tmp/b.so"})
        items = await LdPreloadProbe(ctx).scan()
        assert [a.name for a in items] == ["libhook.so", "a.so", "b.so"]
        assert items[1].path == "environment:LD_PRELOAD"

    @pytest.mark.asyncio
    async def test_sudoers_skips_ignored_names(self, make_context, memory_fs):
        memory_fs.add_file("/etc/sudoers.d/backdoor", "backdoor ALL=(ALL) NOPASSWD: ALL\n")
        memory_fs.add_file("/etc/sudoers.d/README", "# Files in this directory are read by sudo\n")
        memory_fs.add_file("/etc/sudoers.d/old.bak", "old ALL=(ALL) ALL\n")
        memory_fs.add_file("/etc/sudoers.d/edit~", "edit ALL=(ALL) ALL\n")
        items = await SudoersProbe(make_context()).scan()
        assert [a.metadata["principal"] for a in items] == ["backdoor"]

    @pytest.mark.asyncio
    async def test_ssh_keys_include_root(self, make_context, memory_fs, read_fixture):
        memory_fs.add_file("/home/alice/.ssh/authorized_keys", read_fixture("authorized_keys"))
        memory_fs.add_file(
            "/root/.ssh/authorized_keys",
            "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl root@box\n",
        )
        items = await SshAuthorizedKeysProbe(make_context()).scan()
        assert [a.name for a in items] == ["alice@laptop", "backup@server", "root@box"]

    @pytest.mark.asyncio
    async def test_unreadable_directory_is_skipped(self, make_context, memory_fs, caplog):
        memory_fs.add_file("/etc/init.d/acme", "#!/bin/sh\n/opt/acme/start\n")
        memory_fs.deny("/etc/init.d")
        assert await InitScriptsProbe(make_context()).scan() == []
        assert "permission denied listing /etc/init.d" in caplog.text

    @pytest.mark.asyncio
    async def test_unreadable_file_is_skipped(self, make_context, memory_fs):
        memory_fs.add_file("/etc/rc.local", "/opt/x\n")
        memory_fs.deny("/etc/rc.local")
        assert await RcLocalProbe(make_context()).scan() == []


class TestMacProbes:
    def test_launchd_base_requires_directories(self, make_context):
        with pytest.raises(TypeError):
            LaunchdProbe(make_context(Platform.MACOS, home_dir="/Users/alice"))

    @pytest.mark.asyncio
    async def test_launch_agents(self, make_context, memory_fs, fake_gateway, read_fixture):
        good = "/Users/alice/Library/LaunchAgents/com.acme.updater.plist"
        bad = "/Library/LaunchAgents/broken.plist"
        memory_fs.add_file(good, "binary plist", permissions="666", owner="alice")
        memory_fs.add_file(bad, "garbage")
        fake_gateway.add(["plutil", "-convert", "json", "-o", "-", good], stdout=read_fixture("launch_agent.json"))
        items = await LaunchAgentsProbe(make_context(Platform.MACOS, home_dir="/Users/alice")).scan()
        assert len(items) == 1
        assert items[0].name == "com.acme.updater"
        assert items[0].owner == "alice"
        assert items[0].is_world_writable

    @pytest.mark.asyncio
    async def test_malformed_plist_does_not_hide_later_agents(self, make_context, memory_fs, fake_gateway):
        first = "/Library/LaunchAgents/a.plist"
        second = "/Library/LaunchAgents/b.plist"
        memory_fs.add_file(first, "plist")
        memory_fs.add_file(second, "plist")
        fake_gateway.add(["plutil", "-convert", "json", "-o", "-", first], stdout='{"Label": "a", "Program": ["x"]}')
        fake_gateway.add(
            ["plutil", "-convert", "json", "-o", "-", second],
            stdout='{"Label": "evil", "ProgramArguments": ["/tmp/.x"]}',
        )
        items = await LaunchAgentsProbe(make_context(Platform.MACOS, home_dir="/Users/alice")).scan()
        assert [a.name for a in items] == ["a", "evil"]
        assert items[1].executable_path == "/tmp/.x"

    @pytest.mark.asyncio
    async def test_kernel_extensions(self, make_context, memory_fs, fake_gateway):
        info = "/Library/Extensions/Acme.kext/Contents/Info.plist"
        memory_fs.add_file(info, "plist")
        memory_fs.add_file("/Library/Extensions/NoInfo.kext/Contents/MacOS/NoInfo", "binary")
        fake_gateway.add(
            ["plutil", "-convert", "json", "-o", "-", info],
            stdout='{"CFBundleIdentifier": "com.acme.kext", "CFBundleExecutable": "Acme"}',
        )
        items = await KernelExtensionsProbe(make_context(Platform.MACOS, home_dir="/Users/alice")).scan()
        assert [a.path for a in items] == ["/Library/Extensions/Acme.kext", "/Library/Extensions/NoInfo.kext"]
        assert items[0].executable_path == "/Library/Extensions/Acme.kext/Contents/MacOS/Acme"
        assert items[1].executable_path is None
        assert items[1].name == "NoInfo.kext"

    @pytest.mark.asyncio
    async def test_startup_items(self, make_context, memory_fs):
        memory_fs.add_file("/Library/StartupItems/Evil/Evil", "#!/bin/sh\n")
        items = await StartupItemsProbe(make_context(Platform.MACOS, home_dir="/Users/alice")).scan()
        assert len(items) == 1
        assert items[0].executable_path == "/Library/StartupItems/Evil/Evil"
        assert "deprecated StartupItems mechanism" in items[0].indicators

    @pytest.mark.asyncio
    async def test_login_items(self, make_context, fake_gateway):
        from persistguard.probes.macos import LOGIN_ITEMS_SCRIPT

        fake_gateway.add(["osascript", "-e", LOGIN_ITEMS_SCRIPT], stdout="Acme, /Applications/Acme.app\n")
        items = await LoginItemsProbe(make_context(Platform.MACOS, home_dir="/Users/alice")).scan()
        assert [(a.name, a.executable_path) for a in items] == [("Acme", "/Applications/Acme.app")]


class TestBrowserExtensionsProbe:
    @pytest.mark.asyncio
    async def test_chromium_and_firefox(self, make_context, memory_fs):
        chrome = "/home/alice/.config/google-chrome"
        memory_fs.add_file(f"{chrome}/Local State", "{}")
        memory_fs.add_file(f"{chrome}/Default/Extensions/abcdef/1.0_0/manifest.json", '{"name": "Old", "version": "1.0"}')
        memory_fs.add_file(
            f"{chrome}/Default/Extensions/abcdef/1.2_0/manifest.json",
            '{"name": "Helper", "version": "1.2", "permissions": ["<all_urls>"]}',
        )
        memory_fs.add_file(f"{chrome}/System Profile/Extensions/zzz/1.0/manifest.json", '{"name": "Hidden"}')
        memory_fs.add_file(
            "/home/alice/.mozilla/firefox/abc.default/extensions.json",
            '{"addons": [{"id": "tool@x", "location": "app-profile", "defaultLocale": {"name": "Tool"}}]}',
        )
        items = await BrowserExtensionsProbe(make_context()).scan()
        assert [a.name for a in items] == ["Helper", "Tool"]
        assert items[0].metadata["version"] == "1.2"
        assert items[0].metadata["browser"] == "Chrome"
        assert items[0].path == f"{chrome}/Default/Extensions/abcdef"

    @pytest.mark.asyncio
    async def test_newest_version_compared_numerically(self, make_context, memory_fs):
        extension = "/home/alice/.config/google-chrome/Default/Extensions/abcdef"
        memory_fs.add_file(f"{extension}/1.9.0_0/manifest.json", '{"name": "Old", "version": "1.9.0"}')
        memory_fs.add_file(f"{extension}/1.10.0_0/manifest.json", '{"name": "New", "version": "1.10.0"}')
        items = await BrowserExtensionsProbe(make_context()).scan()
        assert [(a.name, a.metadata["version"]) for a in items] == [("New", "1.10.0")]

    @pytest.mark.asyncio
    async def test_extension_without_manifest_still_reported(self, make_context, memory_fs):
        extensions = "/home/alice/.config/google-chrome/Default/Extensions"
        memory_fs.add_file(f"{extensions}/ghijkl/2.0_0/background.js", "")
        memory_fs.add_dir(f"{extensions}/Temp")
        items = await BrowserExtensionsProbe(make_context()).scan()
        assert len(items) == 1
        assert items[0].name == "ghijkl"
        assert items[0].path == f"{extensions}/ghijkl"
        assert items[0].metadata["version"] == "2.0_0"
        assert items[0].metadata["manifest_missing"] is True
