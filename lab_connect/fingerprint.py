"""
Machine fingerprinting for non-transferable tokens.

Only the SHA-256 digest of the identity components is ever stored; the raw
hostname/MAC/profile values never leave this module.
"""
import hashlib
import hmac
import logging
import platform as _platform
import re
import socket
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil

from .errors import FingerprintError
from .models import MachineFingerprint

VIRTUAL_INTERFACE_PATTERN = re.compile(
    r"^(lo|docker|veth|br-|virbr|vmnet|vboxnet|tun|tap|utun|awdl|llw|bridge|cni|flannel|podman|zt)",
    re.IGNORECASE,
)
_NULL_MAC = "00:00:00:00:00:00"


class PlatformIdentity:
    """Durable local identifiers. Subclasses only change `platform_id`."""

    def hostname(self) -> str:
        return socket.gethostname()

    def mac_address(self) -> Optional[str]:
        addrs = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
        # Sorted so the same interface wins on every call
        for name in sorted(addrs):
            if VIRTUAL_INTERFACE_PATTERN.match(name):
                continue
            stat = stats.get(name)
            if stat is None or not stat.isup:
                continue
            for addr in addrs[name]:
                if addr.family != psutil.AF_LINK or not addr.address:
                    continue
                mac = addr.address.replace("-", ":").lower()
                if mac != _NULL_MAC:
                    return mac
        return None

    def platform(self) -> str:
        return f"{_platform.system().lower()}-{_platform.machine().lower()}"

    def user_profile(self) -> str:
        return str(Path.home())

    def platform_id(self) -> Optional[str]:
        return None


class LinuxIdentity(PlatformIdentity):
    MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")

    def platform_id(self) -> Optional[str]:
        for path in self.MACHINE_ID_PATHS:
            try:
                value = Path(path).read_text().strip()
            except OSError:
                continue
            if value:
                return value
        return None


class DarwinIdentity(PlatformIdentity):
    def platform_id(self) -> Optional[str]:
        try:
            output = subprocess.run(
                ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                capture_output=True, text=True, check=True, timeout=5,
            ).stdout
        except (OSError, subprocess.SubprocessError):
            return None
        match = re.search(r'"IOPlatformUUID"\s*=\s*"([^"]+)"', output)
        return match.group(1) if match else None


class WindowsIdentity(PlatformIdentity):
    def platform_id(self) -> Optional[str]:
        try:
            import winreg

            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, r"SOFTWARE\Microsoft\Cryptography") as key:
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
        except (ImportError, OSError):
            return None
        return str(value) or None


def current_identity() -> PlatformIdentity:
    if sys.platform.startswith("linux"):
        return LinuxIdentity()
    if sys.platform == "darwin":
        return DarwinIdentity()
    if sys.platform.startswith("win"):
        return WindowsIdentity()
    return PlatformIdentity()


def _required(name: str, getter: Callable[[], Optional[str]]) -> str:
    try:
        value = getter()
    except (OSError, RuntimeError) as e:
        raise FingerprintError(f"cannot read machine {name}: {e}") from e
    if not value:
        raise FingerprintError(f"cannot read machine {name}")
    return value


def collect_components(identity: PlatformIdentity) -> List[Tuple[str, str]]:
    components = [
        ("hostname", _required("hostname", identity.hostname)),
        ("mac", _required("network interface address", identity.mac_address)),
        ("platform", _required("platform", identity.platform)),
        ("user", _required("user profile", identity.user_profile)),
    ]
    platform_id = identity.platform_id()
    if platform_id:
        components.append(("platform-id", platform_id))
    return components


def generate_fingerprint(identity: Optional[PlatformIdentity] = None) -> MachineFingerprint:
    identity = identity or current_identity()
    components = collect_components(identity)
    combined = "|".join(f"{name}:{value}" for name, value in components)
    digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()
    logging.debug(f"[FINGERPRINT] Generated from {len(components)} components")
    values = dict(components)
    return MachineFingerprint(hash=digest, platform=values["platform"], hostname=values["hostname"])


def validate_fingerprint(expected: MachineFingerprint, identity: Optional[PlatformIdentity] = None) -> bool:
    current = generate_fingerprint(identity)
    return hmac.compare_digest(current.hash, expected.hash)
