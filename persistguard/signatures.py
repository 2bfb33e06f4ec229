"""Signature & hash oracle.

Answers two questions about an executable: who signed it, and what its
SHA-256 is. Every failure degrades to ``unknown`` / no hash; nothing here
raises into the orchestrator.
"""

import asyncio
import hashlib
import logging
import os
import re
from typing import Optional, Tuple

from .exceptions import GatewayError, HashError, SignatureError
from .gateway import CancellationToken, CommandGateway, CommandResult
from .models import Platform, SignatureInspection, SigningTier

logger = logging.getLogger(__name__)

# Environment variable carrying the target path into PowerShell
AUTHENTICODE_TARGET_ENV = "PERSISTGUARD_TARGET"

_AUTHENTICODE_SCRIPT = (
    "$s = Get-AuthenticodeSignature -LiteralPath $env:PERSISTGUARD_TARGET; "
    "Write-Output (\"{0}|{1}\" -f $s.Status, $s.SignerCertificate.Subject)"
)

_INVALID_CODESIGN_MARKERS = (
    "invalid signature",
    "a sealed resource is missing or invalid",
    "code has no resources but signature indicates they must be present",
    "cssmerr_tp_cert_revoked",
    "cssmerr_tp_cert_expired",
    "code object has been modified",
)


def parse_codesign_output(output: str) -> Tuple[SigningTier, Optional[str]]:
    """Classify ``codesign -dvv`` output (stdout and stderr combined)."""
    lowered = output.lower()
    if "code object is not signed" in lowered:
        return SigningTier.UNSIGNED, None
    if any(marker in lowered for marker in _INVALID_CODESIGN_MARKERS):
        return SigningTier.INVALID, None
    if re.search(r"^Signature=adhoc\s*$", output, re.MULTILINE):
        return SigningTier.UNSIGNED, "ad-hoc"

    authorities = re.findall(r"^Authority=(.+)$", output, re.MULTILINE)
    team = re.search(r"^TeamIdentifier=(.+)$", output, re.MULTILINE)
    team_id = team.group(1).strip() if team else None
    if team_id == "not set":
        team_id = None

    if not authorities:
        return SigningTier.UNKNOWN, None
    leaf = authorities[0].strip()
    if leaf == "Software Signing" or (leaf.startswith("Apple ") and team_id is None):
        return SigningTier.PLATFORM_TRUSTED, "Apple"
    if team_id and f"({team_id})" not in leaf:
        leaf = f"{leaf} ({team_id})"
    return SigningTier.THIRD_PARTY_TRUSTED, leaf


def _subject_field(subject: str, field: str) -> Optional[str]:
    match = re.search(rf"(?:^|,\s*){field}=(\"[^\"]*\"|[^,]*)", subject)
    if not match:
        return None
    return match.group(1).strip().strip('"')


def parse_authenticode_output(output: str) -> Tuple[SigningTier, Optional[str]]:
    """Classify the ``Status|Subject`` line printed by the Authenticode script."""
    line = next((l.strip() for l in output.splitlines() if "|" in l), "")
    if not line:
        return SigningTier.UNKNOWN, None
    status, subject = line.split("|", 1)
    status = status.strip()
    subject = subject.strip()
    authority = _subject_field(subject, "CN") or _subject_field(subject, "O") or (subject or None)

    if status == "Valid":
        organization = (_subject_field(subject, "O") or "").lower()
        if organization == "microsoft corporation" or organization == "microsoft windows":
            return SigningTier.PLATFORM_TRUSTED, authority
        return SigningTier.THIRD_PARTY_TRUSTED, authority
    if status == "NotSigned":
        return SigningTier.UNSIGNED, None
    if status in ("HashMismatch", "NotTrusted", "Invalid", "Incompatible"):
        return SigningTier.INVALID, authority
    return SigningTier.UNKNOWN, None


def parse_package_owner(tool: str, result: CommandResult) -> Optional[str]:
    """Package owning a file, from ``dpkg -S`` or ``rpm -qf`` output."""
    if not result.ok:
        return None
    first = next((l.strip() for l in result.stdout.splitlines() if l.strip()), "")
    if not first:
        return None
    if tool == "dpkg":
        # "coreutils: /usr/bin/ls" or "libc6:amd64: /lib/x86_64-linux-gnu/libc.so.6"
        package = first.rsplit(": ", 1)[0] if ": " in first else ""
        return package or None
    if "not owned by any package" in first:
        return None
    return first


class SignatureOracle:
    """Hashes executables and asks the platform's tooling who signed them."""

    def __init__(
        self,
        gateway: CommandGateway,
        platform: Platform,
        timeout: Optional[float] = None,
    ):
        self.gateway = gateway
        self.platform = platform
        self.timeout = timeout

    async def inspect(
        self,
        executable_path: str,
        compute_hash: bool = True,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SignatureInspection:
        content_hash = None
        if compute_hash:
            try:
                content_hash = await self.hash_file(executable_path)
            except HashError as e:
                logger.debug(f"Hash unavailable for {executable_path}: {e}")

        tier, authority = SigningTier.UNKNOWN, None
        if os.path.exists(executable_path):
            try:
                tier, authority = await self.signing_tier(executable_path, cancel_token)
            except SignatureError as e:
                logger.debug(f"Signature check failed for {executable_path}: {e}")

        return SignatureInspection(
            path=executable_path,
            signing_tier=tier,
            authority=authority,
            content_hash=content_hash,
        )

    async def hash_file(self, path: str) -> str:
        """SHA-256 of the file, read in chunks on a worker thread."""
        if not os.path.isfile(path):
            raise HashError(f"not a regular file: {path}")
        try:
            return await asyncio.to_thread(self._sha256, path)
        except OSError as e:
            raise HashError(f"could not read {path}: {e}") from e

    @staticmethod
    def _sha256(file_path: str) -> str:
        h = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                h.update(chunk)
        return h.hexdigest()

    async def signing_tier(
        self,
        path: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[SigningTier, Optional[str]]:
        try:
            if self.platform == Platform.MACOS:
                result = await self.gateway.run(
                    ["codesign", "-dvv", path], timeout=self.timeout, cancel_token=cancel_token
                )
                return parse_codesign_output(f"{result.stdout}\n{result.stderr}")

            if self.platform == Platform.WINDOWS:
                result = await self.gateway.run(
                    ["powershell", "-NoProfile", "-NonInteractive", "-Command", _AUTHENTICODE_SCRIPT],
                    timeout=self.timeout,
                    env={AUTHENTICODE_TARGET_ENV: path},
                    cancel_token=cancel_token,
                )
                return parse_authenticode_output(result.stdout)

            return await self._package_owner(path, cancel_token)
        except GatewayError as e:
            raise SignatureError(str(e)) from e

    async def _package_owner(
        self,
        path: str,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[SigningTier, Optional[str]]:
        """Linux has no universal code signing; package ownership stands in for it."""
        for tool, argv in (("dpkg", ["dpkg", "-S", path]), ("rpm", ["rpm", "-qf", path])):
            if self.gateway.tool_manager.resolve(tool) is None:
                continue
            result = await self.gateway.run(argv, timeout=self.timeout, cancel_token=cancel_token)
            package = parse_package_owner(tool, result)
            if package:
                return SigningTier.PLATFORM_TRUSTED, f"{tool}:{package}"
        return SigningTier.UNKNOWN, None
