"""Risk classifier.

Two pure passes over an Artifact:

- ``classify_initial`` uses only what the probe saw (kind, command, path,
  permissions) plus the threat-intel snapshot.
- ``classify_final`` folds in the signature/hash inspection.

Each rule proposes a floor; the artifact ends at the maximum of its
baseline and every floor that fired. Nothing is summed.
"""

import logging
import ntpath
import re
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Pattern, Tuple

from .models import Artifact, MechanismKind, RiskLevel, SignatureInspection, SigningTier
from .threat_intel import ThreatIntelSnapshot

logger = logging.getLogger(__name__)

HASH_MATCH_INDICATOR = "known-malware hash match"
UNSIGNED_INDICATOR = "unsigned binary"
INVALID_SIGNATURE_INDICATOR = "invalid signature"


class TokenRule(NamedTuple):
    indicator: str
    pattern: Pattern[str]
    floor: RiskLevel


def _rule(indicator: str, pattern: str, floor: RiskLevel) -> TokenRule:
    return TokenRule(indicator, re.compile(pattern, re.IGNORECASE), floor)


# Ordered: indicators are reported in this order.
TOKEN_RULES: Tuple[TokenRule, ...] = (
    _rule(
        "download piped to shell",
        r"\b(?:curl|wget|fetch)\b[^\n|]*\|\s*(?:sudo\s+)?(?:\S*/)?(?:ba|z|da|k)?sh\b",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "download piped to interpreter",
        r"\b(?:curl|wget)\b[^\n|]*\|\s*(?:sudo\s+)?(?:\S*/)?(?:python[0-9.]*|perl|ruby|php|node)\b",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "powershell download cradle",
        r"downloadstring|downloadfile|downloaddata|net\.webclient|invoke-webrequest|invoke-restmethod"
        r"|start-bitstransfer|\biwr\s+https?:",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "encoded powershell command",
        r"\b(?:powershell|pwsh)(?:\.exe)?\b[^\n]*\s[-/](?:e|ec|en\w*)\s+[A-Za-z0-9+/=]{8,}",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "base64 payload",
        r"\bbase64\s+(?:-d|--decode|-D)\b|frombase64string|\bb64decode\b|atob\(",
        RiskLevel.CRITICAL,
    ),
    _rule("hidden window", r"-w(?:indowstyle|in)?\s+hidden\b|\bvbhide\b", RiskLevel.CRITICAL),
    _rule(
        "dynamic code invocation",
        r"\biex\b|invoke-expression|reflection\.assembly\]?::load|\[scriptblock\]::create",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "reverse shell",
        r"/dev/(?:tcp|udp)/|\b(?:nc|ncat|netcat)\b[^\n]*\s-\w*[ec]\b|\bbash\s+-i\b|\bmkfifo\b"
        r"|\bsocat\b[^\n]*\bexec:|openssl\s+s_client|xterm\b[^\n]*-display"
        r"|\bpython[0-9.]*\b[^\n]*-c[^\n]*\b(?:socket|pty)\b|\bperl\b[^\n]*-e[^\n]*\bsocket\b",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "LOLBin proxy execution",
        r"\b(?:mshta|regsvr32|rundll32|certutil|bitsadmin|msiexec|cmstp|installutil|regasm|regsvcs)"
        r"(?:\.exe)?\b[^\n]*(?:https?://|\\\\[\w.]+\\|-urlcache|/i:https?|javascript:|vbscript:)",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "offensive tooling",
        r"invoke-(?:mimikatz|shellcode|bloodhound|reflectivepeinjection)|\bmimikatz\b|sekurlsa::",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "shell history wiping",
        r"\bhistory\s+-c\b|unset\s+HISTFILE|export\s+HISTSIZE=0|HISTFILE=/dev/null",
        RiskLevel.CRITICAL,
    ),
    _rule(
        "hidden file in temp directory",
        r"(?:/tmp|/var/tmp|/dev/shm)/\.[^/\s\"']+",
        RiskLevel.CRITICAL,
    ),
    # weaker signals
    _rule("script host invocation", r"\b(?:wscript|cscript|mshta)(?:\.exe)?\b", RiskLevel.HIGH),
    _rule(
        "execution policy bypass",
        r"-(?:executionpolicy|ep|exec)\s+(?:bypass|unrestricted)\b",
        RiskLevel.HIGH,
    ),
    _rule("script file launched", r"\.(?:vbs|vbe|jse?|ps1|hta|wsf)\b", RiskLevel.HIGH),
    _rule(
        "setuid or world-writable chmod",
        r"\bchmod\s+(?:-\w+\s+)*(?:777|[ugo]*\+s|[2-7][0-7]{3})\b",
        RiskLevel.HIGH,
    ),
    _rule("passwordless sudo for all commands", r"NOPASSWD:\s*ALL\b", RiskLevel.HIGH),
    _rule(
        "LOLBin invocation",
        r"\b(?:regsvr32|rundll32|certutil|bitsadmin)(?:\.exe)?\b",
        RiskLevel.MEDIUM,
    ),
    _rule("network tool", r"\b(?:curl|wget|nc|ncat|netcat|socat)\b", RiskLevel.MEDIUM),
    _rule(
        "inline interpreter code",
        r"\b(?:python[0-9.]*|perl|ruby|php|node)\s+(?:-\w+\s+)*-[cer]\b",
        RiskLevel.MEDIUM,
    ),
    _rule("detached background process", r"\bnohup\b[^\n]*&", RiskLevel.MEDIUM),
)

_TEMP_DIR_RE = re.compile(
    r"(?:^|[\s\"'=:])(?:/private/tmp/|/private/var/tmp/|/tmp/|/var/tmp/|/dev/shm/|/users/shared/)"
    r"|\\(?:windows\\)?temp\\|\\appdata\\local\\temp\\|\\users\\public\\"
    r"|%te?mp%\\",
    re.IGNORECASE,
)

BASELINE_RISK: Dict[MechanismKind, RiskLevel] = {
    MechanismKind.KERNEL_MODULE: RiskLevel.MEDIUM,
    MechanismKind.SSH_AUTHORIZED_KEY: RiskLevel.MEDIUM,
    MechanismKind.AT_JOB: RiskLevel.MEDIUM,
    MechanismKind.COM_OBJECT: RiskLevel.MEDIUM,
    MechanismKind.UDEV_RULE: RiskLevel.MEDIUM,
    MechanismKind.SUDOERS_D: RiskLevel.MEDIUM,
    MechanismKind.KERNEL_EXTENSION: RiskLevel.MEDIUM,
    MechanismKind.AUTH_PLUGIN: RiskLevel.MEDIUM,
    MechanismKind.SCRIPTING_ADDITION: RiskLevel.MEDIUM,
    MechanismKind.STARTUP_ITEM: RiskLevel.MEDIUM,
    MechanismKind.EMOND_RULE: RiskLevel.MEDIUM,
    MechanismKind.WMI_SUBSCRIPTION: RiskLevel.HIGH,
    MechanismKind.IMAGE_FILE_EXECUTION: RiskLevel.HIGH,
}

# Mechanisms that hijack a system component: suspicious unless stock.
HIJACK_KINDS: FrozenSet[MechanismKind] = frozenset(
    {
        MechanismKind.LD_PRELOAD,
        MechanismKind.LSA_PACKAGE,
        MechanismKind.BOOT_EXECUTE,
        MechanismKind.APPINIT_DLL,
        MechanismKind.WINLOGON,
        MechanismKind.PRINT_MONITOR,
        MechanismKind.NETSH_HELPER,
    }
)

# Entries that are data rather than code; signing has no meaning for them.
NON_EXECUTABLE_KINDS: FrozenSet[MechanismKind] = frozenset(
    {
        MechanismKind.SSH_AUTHORIZED_KEY,
        MechanismKind.BROWSER_EXTENSION,
        MechanismKind.KERNEL_MODULE,
        MechanismKind.SUDOERS_D,
        MechanismKind.AT_JOB,
    }
)

_DLL_VALUE_KINDS = frozenset(
    {MechanismKind.PRINT_MONITOR, MechanismKind.NETSH_HELPER, MechanismKind.APPINIT_DLL}
)

DOCUMENTED_DEFAULTS: Dict[MechanismKind, FrozenSet[str]] = {
    MechanismKind.LSA_PACKAGE: frozenset(
        {
            "kerberos", "msv1_0", "schannel", "wdigest", "tspkg", "pku2u",
            "livessp", "cloudap", "negoexts", "msoidssp",
        }
    ),
    MechanismKind.BOOT_EXECUTE: frozenset({"autocheck autochk *", "autocheck autochk /q /v *"}),
    MechanismKind.PRINT_MONITOR: frozenset(
        {
            "localspl.dll", "win32spl.dll", "usbmon.dll", "tcpmon.dll", "wsdmon.dll",
            "appmon.dll", "apmon.dll", "fxsmon.dll", "pjlmon.dll", "mfmon.dll",
        }
    ),
    MechanismKind.NETSH_HELPER: frozenset(
        {
            "authfwcfg.dll", "dhcpcmonitor.dll", "dot3cfg.dll", "fwcfg.dll", "hnetmon.dll",
            "ifmon.dll", "netiohlp.dll", "netprofm.dll", "nettrace.dll", "nshhttp.dll",
            "nshipsec.dll", "nshwfp.dll", "p2pnetsh.dll", "peerdistsh.dll", "rasmontr.dll",
            "rpcnsh.dll", "wcnnetsh.dll", "whhelper.dll", "wlancfg.dll", "wshelper.dll",
            "wwancfg.dll",
        }
    ),
}

# Winlogon defaults depend on which value is being read.
WINLOGON_DEFAULTS: Dict[str, FrozenSet[str]] = {
    "shell": frozenset({"explorer.exe"}),
    "userinit": frozenset(
        {"c:\\windows\\system32\\userinit.exe,", "c:\\windows\\system32\\userinit.exe"}
    ),
}

BROAD_EXTENSION_PERMISSIONS: FrozenSet[str] = frozenset(
    {
        "<all_urls>", "*://*/*", "http://*/*", "https://*/*", "nativemessaging",
        "webrequestblocking", "debugger", "proxy", "cookies", "history",
        "clipboardread", "management",
    }
)


def matches_documented_default(artifact: Artifact) -> bool:
    """True when a hijack-prone entry holds the value the OS ships with."""
    value = (artifact.command or artifact.name or "").strip().lower()
    kind = artifact.mechanism_kind
    if kind == MechanismKind.WINLOGON:
        value_name = str(artifact.metadata.get("value_name", "")).lower()
        return value in WINLOGON_DEFAULTS.get(value_name, frozenset())
    if kind in _DLL_VALUE_KINDS:
        value = ntpath.basename(value)
    return value in DOCUMENTED_DEFAULTS.get(kind, frozenset())


def _subject_texts(artifact: Artifact) -> List[str]:
    texts = [t for t in (artifact.command, artifact.executable_path) if t]
    body = artifact.metadata.get("body")
    if isinstance(body, str) and body:
        texts.append(body)
    return texts


def _token_findings(artifact: Artifact) -> List[Tuple[str, RiskLevel]]:
    texts = _subject_texts(artifact)
    findings = []
    for rule in TOKEN_RULES:
        if any(rule.pattern.search(text) for text in texts):
            findings.append((rule.indicator, rule.floor))
    return findings


def _in_temp_directory(artifact: Artifact) -> bool:
    candidates = [artifact.executable_path, artifact.command]
    if artifact.mechanism_kind not in NON_EXECUTABLE_KINDS:
        candidates.append(artifact.path)
    return any(c and _TEMP_DIR_RE.search(c) for c in candidates)


def _baseline(artifact: Artifact, intel: ThreatIntelSnapshot) -> RiskLevel:
    kind = artifact.mechanism_kind
    if kind in HIJACK_KINDS:
        return RiskLevel.SAFE if matches_documented_default(artifact) else RiskLevel.HIGH
    if intel.is_trusted_path(artifact.executable_path or artifact.path):
        return RiskLevel.SAFE
    return BASELINE_RISK.get(kind, RiskLevel.LOW)


def classify_initial(artifact: Artifact, intel: ThreatIntelSnapshot) -> Artifact:
    """Pass 1: structural rules and the suspicious-token grammar."""
    levels = [_baseline(artifact, intel)]
    indicators: List[str] = []

    if artifact.mechanism_kind in HIJACK_KINDS and levels[0] == RiskLevel.HIGH:
        indicators.append("non-default value for a hijack-prone setting")

    for indicator, floor in _token_findings(artifact):
        indicators.append(indicator)
        levels.append(floor)

    for text in _subject_texts(artifact):
        domain = intel.find_domain(text)
        if domain:
            indicators.append(f"known-malicious domain: {domain}")
            levels.append(RiskLevel.CRITICAL)
            break

    if _in_temp_directory(artifact):
        indicators.append("runs from temp directory")
        levels.append(RiskLevel.HIGH)

    if artifact.is_world_writable:
        indicators.append("world-writable file")
        levels.append(RiskLevel.HIGH)

    if artifact.mechanism_kind == MechanismKind.BROWSER_EXTENSION:
        permissions = [str(p).lower() for p in artifact.metadata.get("permissions", []) or []]
        broad = sorted(p for p in set(permissions) if p in BROAD_EXTENSION_PERMISSIONS)
        if broad:
            indicators.append(f"broad browser permissions: {', '.join(broad)}")
            levels.append(RiskLevel.MEDIUM)

    risk = RiskLevel.max_of(levels)
    classified = artifact.with_indicators(*indicators)
    return classified.model_copy(update={"risk_level": risk})


def classify_final(
    artifact: Artifact,
    inspection: Optional[SignatureInspection],
    intel: ThreatIntelSnapshot,
) -> Artifact:
    """Pass 2: hash match override, then signing-based escalation."""
    if inspection is not None:
        updates = {
            "signing_tier": inspection.signing_tier,
            "signing_authority": inspection.authority,
        }
        if inspection.content_hash:
            updates["content_hash"] = inspection.content_hash
        artifact = artifact.model_copy(update=updates)

    if intel.is_malicious_hash(artifact.content_hash):
        flagged = artifact.with_indicators(HASH_MATCH_INDICATOR)
        return flagged.model_copy(update={"risk_level": RiskLevel.CRITICAL})

    risk = artifact.risk_level
    indicators: List[str] = []
    signable = artifact.mechanism_kind not in NON_EXECUTABLE_KINDS
    if signable and risk != RiskLevel.SAFE:
        if artifact.signing_tier == SigningTier.UNSIGNED:
            risk = risk.escalate()
            indicators.append(UNSIGNED_INDICATOR)
        elif artifact.signing_tier == SigningTier.INVALID:
            risk = risk.escalate()
            indicators.append(INVALID_SIGNATURE_INDICATOR)

    if (
        artifact.signing_tier == SigningTier.THIRD_PARTY_TRUSTED
        and artifact.signing_authority
        and not intel.is_trusted_publisher(artifact.signing_authority)
    ):
        indicators.append(f"signed by unrecognized publisher: {artifact.signing_authority}")

    if not indicators and risk == artifact.risk_level:
        return artifact
    return artifact.with_indicators(*indicators).model_copy(update={"risk_level": risk})
