"""Resolves the OS utilities probes and the signature oracle invoke."""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .models import Platform

logger = logging.getLogger(__name__)


class ToolInfo(BaseModel):
    """Metadata and resolved location for an OS utility."""

    name: str
    display_name: str
    exe_names: List[str]
    platforms: List[Platform]
    path: Optional[Path] = None
    installed: bool = False
    requires_admin: bool = False

    model_config = ConfigDict(extra="allow")


# Static registry. config.yaml can override ``path`` per tool.
DEFAULT_TOOLS: list[dict[str, Any]] = [
    {
        "name": "reg",
        "display_name": "Registry query",
        "exe_names": ["reg.exe", "reg"],
        "platforms": [Platform.WINDOWS],
    },
    {
        "name": "schtasks",
        "display_name": "Task Scheduler CLI",
        "exe_names": ["schtasks.exe", "schtasks"],
        "platforms": [Platform.WINDOWS],
    },
    {
        "name": "wmic",
        "display_name": "WMI command-line",
        "exe_names": ["wmic.exe", "wmic"],
        "platforms": [Platform.WINDOWS],
    },
    {
        "name": "powershell",
        "display_name": "Windows PowerShell",
        "exe_names": ["powershell.exe", "pwsh.exe", "powershell", "pwsh"],
        "platforms": [Platform.WINDOWS],
    },
    {
        "name": "plutil",
        "display_name": "Property list utility",
        "exe_names": ["plutil"],
        "platforms": [Platform.MACOS],
    },
    {
        "name": "codesign",
        "display_name": "Code signing utility",
        "exe_names": ["codesign"],
        "platforms": [Platform.MACOS],
    },
    {
        "name": "osascript",
        "display_name": "AppleScript runner",
        "exe_names": ["osascript"],
        "platforms": [Platform.MACOS],
    },
    {
        "name": "systemctl",
        "display_name": "systemd control",
        "exe_names": ["systemctl"],
        "platforms": [Platform.LINUX],
    },
    {
        "name": "crontab",
        "display_name": "Crontab",
        "exe_names": ["crontab"],
        "platforms": [Platform.LINUX, Platform.MACOS],
    },
    {
        "name": "atq",
        "display_name": "At queue",
        "exe_names": ["atq"],
        "platforms": [Platform.LINUX, Platform.MACOS],
    },
    {
        "name": "dpkg",
        "display_name": "Debian package manager",
        "exe_names": ["dpkg"],
        "platforms": [Platform.LINUX],
    },
    {
        "name": "rpm",
        "display_name": "RPM package manager",
        "exe_names": ["rpm"],
        "platforms": [Platform.LINUX],
    },
]


class ToolManager:
    """Finds OS utilities.

    Resolution order:
    1. Explicit path from config (tools.<name>.path)
    2. System PATH, trying each candidate executable name
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self._tools: Dict[str, ToolInfo] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        for tool_def in DEFAULT_TOOLS:
            name = tool_def["name"]
            overrides = self.config.get(name, {})
            merged = {**tool_def, **overrides}
            self._tools[name] = ToolInfo(**merged)

    def register(self, tool: ToolInfo) -> None:
        self._tools[tool.name] = tool

    def check_tool(self, tool_name: str) -> ToolInfo:
        """Resolve a tool's path. Returns ToolInfo with installed set."""
        if tool_name not in self._tools:
            raise KeyError(f"Unknown tool: {tool_name}")

        tool = self._tools[tool_name]

        if tool.path and tool.path.is_file():
            tool.installed = True
            logger.debug(f"{tool.display_name}: found at configured path {tool.path}")
            return tool

        for exe_name in tool.exe_names:
            system_path = shutil.which(exe_name)
            if system_path:
                tool.path = Path(system_path)
                tool.installed = True
                logger.debug(f"{tool.display_name}: found on PATH at {tool.path}")
                return tool

        tool.installed = False
        tool.path = None
        logger.debug(f"{tool.display_name}: not found")
        return tool

    def check_all_tools(self, platform: Optional[Platform] = None) -> Dict[str, ToolInfo]:
        """Check registered tools, optionally only those for one platform."""
        return {
            name: self.check_tool(name)
            for name, info in self._tools.items()
            if platform is None or platform in info.platforms
        }

    def resolve(self, command: str) -> Optional[str]:
        """Map argv[0] to an executable path.

        Registered tool names resolve through the registry; anything else
        (an absolute path, an ad-hoc executable) goes through PATH lookup.
        """
        if command in self._tools:
            tool = self.check_tool(command)
            return str(tool.path) if tool.installed and tool.path else None
        if Path(command).is_absolute():
            return command if Path(command).is_file() else None
        return shutil.which(command)

    def get_tool_info(self, tool_name: str) -> ToolInfo:
        if tool_name not in self._tools:
            raise KeyError(f"Unknown tool: {tool_name}")
        return self._tools[tool_name]
