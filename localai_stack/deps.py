"""Dependency discovery and installation (Docker, ngrok, Ollama, base packages)."""

from __future__ import annotations

import os
import platform
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from . import console
from .errors import ExternalToolMissing, StackError

MIN_VERSIONS = {
    "docker": "20.10.0",
    "ngrok": "3.0.0",
    "ollama": "0.1.0",
}

VERSION_COMMANDS = {
    "docker": ["docker", "--version"],
    "ngrok": ["ngrok", "version"],
    "ollama": ["ollama", "--version"],
}

INSTALL_HINTS = {
    "docker": "https://docs.docker.com/get-docker/",
    "ngrok": "https://ngrok.com/download",
    "ollama": "https://ollama.com/download",
    "lsof": "your system package manager",
}

DEBIAN_FAMILY = ("ubuntu", "debian")
REDHAT_FAMILY = ("centos", "rhel", "fedora")

_VERSION = re.compile(r"(\d+)\.(\d+)\.(\d+)")

Which = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class HostPlatform:
    os: str
    distro: str

    @property
    def is_macos(self) -> bool:
        return self.os == "macos"


@dataclass(frozen=True)
class InstallStep:
    argv: Tuple[str, ...]
    tolerate_failure: bool = False

    @classmethod
    def shell(cls, script: str, *, tolerate_failure: bool = False) -> "InstallStep":
        return cls(("sh", "-c", script), tolerate_failure)

    def __str__(self) -> str:
        if self.argv[:2] == ("sh", "-c"):
            return self.argv[2]
        return " ".join(self.argv)


def parse_os_release(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep and key:
            values[key] = value.strip().strip('"').strip("'")
    return values


def detect_platform(system: Optional[str] = None, os_release: Path = Path("/etc/os-release")) -> HostPlatform:
    system = system or platform.system()
    if system == "Darwin":
        return HostPlatform("macos", "macos")
    if system == "Linux":
        try:
            fields = parse_os_release(os_release.read_text())
        except OSError:
            return HostPlatform("linux", "unknown")
        return HostPlatform("linux", fields.get("ID", "unknown").lower())
    return HostPlatform("unknown", "unknown")


def extract_version(text: str) -> Optional[str]:
    match = _VERSION.search(text or "")
    return ".".join(match.groups()) if match else None


def version_at_least(current: str, minimum: str) -> bool:
    def as_tuple(value: str) -> Tuple[int, ...]:
        found = extract_version(value)
        if not found:
            raise ValueError(f"not a version: {value!r}")
        return tuple(int(part) for part in found.split("."))

    return as_tuple(current) >= as_tuple(minimum)


def redhat_package_manager(which: Which = shutil.which) -> str:
    return "dnf" if which("dnf") else "yum"


def _ngrok_arch(machine: str) -> str:
    arches = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}
    try:
        return arches[machine]
    except KeyError:
        raise StackError(f"unsupported architecture for ngrok: {machine}") from None


def install_plan(
    tool: str,
    host: HostPlatform,
    *,
    which: Which = shutil.which,
    machine: Optional[str] = None,
    user: Optional[str] = None,
) -> List[InstallStep]:
    """Return the commands that install ``tool`` on ``host``."""
    distro = host.distro
    user = user or os.environ.get("USER", "")
    if tool == "system":
        if host.is_macos:
            steps = []
            if not which("brew"):
                steps.append(InstallStep.shell(
                    '/bin/bash -c "$(curl -fsSL https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh)"'
                ))
            else:
                steps.append(InstallStep(("brew", "update")))
            steps.append(InstallStep(("brew", "install", "curl", "wget", "openssl", "lsof")))
            return steps
        if distro in DEBIAN_FAMILY:
            return [
                InstallStep(("sudo", "apt", "update")),
                InstallStep((
                    "sudo", "apt", "install", "-y", "curl", "wget", "apt-transport-https",
                    "ca-certificates", "gnupg", "lsb-release", "openssl", "lsof",
                )),
            ]
        if distro in REDHAT_FAMILY:
            pm = redhat_package_manager(which)
            return [InstallStep(("sudo", pm, "install", "-y", "curl", "wget", "openssl", "lsof"))]
        raise StackError(f"unsupported distribution {distro}; install curl, wget, openssl and lsof manually")

    if tool == "docker":
        if host.is_macos:
            if not which("brew"):
                raise ExternalToolMissing("brew", "Install Docker Desktop manually from https://docker.com")
            return [InstallStep(("brew", "install", "--cask", "docker"))]
        post_install = [
            InstallStep(("sudo", "usermod", "-aG", "docker", user), tolerate_failure=not user),
            InstallStep(("sudo", "systemctl", "start", "docker")),
            InstallStep(("sudo", "systemctl", "enable", "docker"), tolerate_failure=True),
        ]
        if distro in DEBIAN_FAMILY:
            return [
                InstallStep.shell(
                    "sudo apt remove -y docker docker-engine docker.io containerd runc", tolerate_failure=True
                ),
                InstallStep.shell(
                    f"curl -fsSL https://download.docker.com/linux/{distro}/gpg | "
                    "sudo gpg --dearmor --yes -o /usr/share/keyrings/docker-archive-keyring.gpg"
                ),
                InstallStep.shell(
                    'echo "deb [arch=$(dpkg --print-architecture) '
                    "signed-by=/usr/share/keyrings/docker-archive-keyring.gpg] "
                    f'https://download.docker.com/linux/{distro} $(lsb_release -cs) stable" | '
                    "sudo tee /etc/apt/sources.list.d/docker.list > /dev/null"
                ),
                InstallStep(("sudo", "apt", "update")),
                InstallStep((
                    "sudo", "apt", "install", "-y", "docker-ce", "docker-ce-cli", "containerd.io",
                    "docker-compose-plugin",
                )),
                *post_install,
            ]
        if distro in REDHAT_FAMILY:
            pm = redhat_package_manager(which)
            return [
                InstallStep((
                    "sudo", pm, "remove", "-y", "docker", "docker-client", "docker-client-latest",
                    "docker-common", "docker-latest", "docker-latest-logrotate", "docker-logrotate",
                    "docker-engine",
                ), tolerate_failure=True),
                InstallStep(("sudo", pm, "install", "-y", "yum-utils")),
                InstallStep((
                    "sudo", "yum-config-manager", "--add-repo",
                    "https://download.docker.com/linux/centos/docker-ce.repo",
                )),
                InstallStep((
                    "sudo", pm, "install", "-y", "docker-ce", "docker-ce-cli", "containerd.io",
                    "docker-compose-plugin",
                )),
                *post_install,
            ]
        raise StackError(f"automatic Docker installation is not supported on {distro}; see {INSTALL_HINTS['docker']}")

    if tool == "ngrok":
        if host.is_macos:
            if not which("brew"):
                raise ExternalToolMissing("brew", f"Install ngrok manually from {INSTALL_HINTS['ngrok']}")
            return [InstallStep(("brew", "install", "ngrok/ngrok/ngrok"))]
        if distro in DEBIAN_FAMILY:
            return [
                InstallStep.shell(
                    "curl -s https://ngrok-agent.s3.amazonaws.com/ngrok.asc | "
                    "sudo tee /etc/apt/trusted.gpg.d/ngrok.asc >/dev/null"
                ),
                InstallStep.shell(
                    'echo "deb https://ngrok-agent.s3.amazonaws.com buster main" | '
                    "sudo tee /etc/apt/sources.list.d/ngrok.list"
                ),
                InstallStep(("sudo", "apt", "update")),
                InstallStep(("sudo", "apt", "install", "-y", "ngrok")),
            ]
        if distro in REDHAT_FAMILY:
            arch = _ngrok_arch(machine or platform.machine())
            return [
                InstallStep((
                    "wget", "-O", "ngrok.tgz",
                    f"https://bin.equinox.io/c/bNyj1mQVY4c/ngrok-v3-stable-linux-{arch}.tgz",
                )),
                InstallStep(("sudo", "tar", "xzf", "ngrok.tgz", "-C", "/usr/local/bin")),
                InstallStep(("rm", "-f", "ngrok.tgz")),
            ]
        raise StackError(f"automatic ngrok installation is not supported on {distro}; see {INSTALL_HINTS['ngrok']}")

    if tool == "ollama":
        if host.is_macos and which("brew"):
            return [
                InstallStep(("brew", "install", "ollama")),
                InstallStep(("brew", "services", "start", "ollama")),
            ]
        steps = [InstallStep.shell("curl -fsSL https://ollama.com/install.sh | sh")]
        if not host.is_macos and which("systemctl"):
            steps.extend([
                InstallStep(("sudo", "systemctl", "start", "ollama"), tolerate_failure=True),
                InstallStep(("sudo", "systemctl", "enable", "ollama"), tolerate_failure=True),
            ])
        return steps

    raise ValueError(f"unknown tool: {tool}")


class DependencyInstaller:
    """Check versions and run install plans, asking before optional work."""

    def __init__(
        self,
        host: HostPlatform,
        *,
        runner: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run,
        which: Which = shutil.which,
        confirm: Callable[[str], bool] = lambda question: False,
    ) -> None:
        self.host = host
        self._runner = runner
        self._which = which
        self._confirm = confirm

    def installed_version(self, tool: str) -> Optional[str]:
        """Version string of an installed tool, "unknown" if unparsable, None if absent."""
        if not self._which(tool):
            return None
        try:
            result = self._runner(VERSION_COMMANDS[tool], capture_output=True, text=True, check=False, timeout=15)
        except (OSError, subprocess.TimeoutExpired):
            return "unknown"
        return extract_version(result.stdout + result.stderr) or "unknown"

    def needs_install(self, tool: str) -> bool:
        current = self.installed_version(tool)
        if current is None:
            return True
        console.info(f"Found {tool} version: {current}")
        if current == "unknown":
            return False
        minimum = MIN_VERSIONS[tool]
        if version_at_least(current, minimum):
            console.success(f"{tool} version is sufficient")
            return False
        console.warn(f"{tool} version {current} is below minimum required {minimum}")
        return self._confirm(f"Upgrade {tool}?")

    def run_steps(self, steps: List[InstallStep]) -> None:
        for install_step in steps:
            console.info(f"$ {install_step}")
            result = self._runner(list(install_step.argv), check=False)
            if result.returncode != 0 and not install_step.tolerate_failure:
                raise StackError(f"`{install_step}` failed with exit code {result.returncode}")

    def install(self, tool: str) -> bool:
        """Install or upgrade ``tool`` when needed; True when something ran."""
        if tool != "system" and not self.needs_install(tool):
            return False
        console.step(f"Installing {tool}...")
        self.run_steps(install_plan(tool, self.host, which=self._which))
        console.success(f"{tool} installed")
        return True


def free_disk_gb(path: Path) -> float:
    return shutil.disk_usage(path).free / (1024 ** 3)


def check_disk_space(path: Path, minimum_gb: int, *, usage: Callable[[Path], float] = free_disk_gb) -> None:
    available = usage(path)
    if available < minimum_gb:
        raise StackError(f"insufficient disk space: need at least {minimum_gb}GB, found {available:.1f}GB")


def check_dependencies(*, include_optional: bool = True, which: Which = shutil.which) -> Dict[str, str]:
    """Return missing tools mapped to where to get them (empty when all present)."""
    required = ["docker", "lsof"]
    optional = ["ngrok", "ollama"] if include_optional else []
    missing: Dict[str, str] = {}
    for tool in [*required, *optional]:
        if not which(tool):
            missing[tool] = INSTALL_HINTS[tool]
    return missing
