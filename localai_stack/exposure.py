"""Open the local Ollama server to the network, and put it back on localhost.

Ollama binds 127.0.0.1 unless ``OLLAMA_HOST`` says otherwise. On Linux the
variable goes into a systemd drop-in for ``ollama.service``; on macOS a
LaunchAgent runs ``ollama serve`` with it set. Ollama has no authentication,
so callers should confirm with the operator before exposing it.
"""

from __future__ import annotations

import plistlib
import shutil
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

import httpx

from .config import StackConfig
from .deps import DependencyInstaller, HostPlatform, InstallStep, Which
from .errors import ExternalToolMissing, ProcessNotResponding, StackError
from .ollama import OllamaClient

LAUNCH_AGENT_LABEL = "com.ollama.serve"
SYSTEMD_OVERRIDE_DIR = Path("/etc/systemd/system/ollama.service.d")
OLLAMA_INSTALL_HINT = "Install it from https://ollama.com/download or run `stackctl install-deps`."

SECURITY_WARNING = (
    "Ollama has NO built-in authentication!",
    "Anyone with network access can use your Ollama instance, including downloading and running models.",
    "Prefer a reverse proxy with authentication, firewall rules, a VPN, or an ngrok tunnel.",
)


def bind_address(port: int) -> str:
    return f"0.0.0.0:{port}"


def systemd_override(port: int) -> str:
    return f'[Service]\nEnvironment="OLLAMA_HOST={bind_address(port)}"\n'


def launch_agent_path(home: Path) -> Path:
    return home / "Library" / "LaunchAgents" / f"{LAUNCH_AGENT_LABEL}.plist"


def launch_agent_plist(ollama_bin: str, port: int) -> bytes:
    return plistlib.dumps({
        "Label": LAUNCH_AGENT_LABEL,
        "ProgramArguments": [ollama_bin, "serve"],
        "EnvironmentVariables": {"OLLAMA_HOST": bind_address(port)},
        "RunAtLoad": True,
        "KeepAlive": True,
        "StandardOutPath": "/tmp/ollama.log",
        "StandardErrorPath": "/tmp/ollama.error.log",
    })


def stop_plan(host: HostPlatform, *, which: Which = shutil.which) -> List[InstallStep]:
    if host.is_macos:
        steps = []
        if which("brew"):
            steps.append(InstallStep(("brew", "services", "stop", "ollama"), tolerate_failure=True))
    else:
        steps = [InstallStep(("sudo", "systemctl", "stop", "ollama"), tolerate_failure=True)]
    steps.append(InstallStep(("pkill", "-f", "ollama serve"), tolerate_failure=True))
    return steps


def expose_plan(host: HostPlatform, port: int, *, home: Path) -> List[InstallStep]:
    """Commands that restart Ollama bound to all interfaces.

    On macOS the LaunchAgent file itself is written by :class:`OllamaExposure`
    before these run.
    """
    if host.is_macos:
        plist = str(launch_agent_path(home))
        return [
            InstallStep(("launchctl", "unload", plist), tolerate_failure=True),
            InstallStep(("launchctl", "load", plist)),
        ]
    override = SYSTEMD_OVERRIDE_DIR / "override.conf"
    return [
        InstallStep(("sudo", "mkdir", "-p", str(SYSTEMD_OVERRIDE_DIR))),
        InstallStep.shell(f"printf '%s' '{systemd_override(port)}' | sudo tee {override} > /dev/null"),
        InstallStep(("sudo", "systemctl", "daemon-reload")),
        InstallStep(("sudo", "systemctl", "enable", "ollama")),
        InstallStep(("sudo", "systemctl", "start", "ollama")),
    ]


def revert_plan(host: HostPlatform, *, home: Path, which: Which = shutil.which) -> List[InstallStep]:
    if host.is_macos:
        plist = str(launch_agent_path(home))
        steps = [
            InstallStep(("launchctl", "unload", plist), tolerate_failure=True),
            InstallStep(("rm", "-f", plist)),
        ]
        if which("brew"):
            steps.append(InstallStep(("brew", "services", "start", "ollama")))
        else:
            steps.append(InstallStep.shell("nohup ollama serve > /dev/null 2>&1 &"))
        return steps
    return [
        InstallStep(("sudo", "rm", "-rf", str(SYSTEMD_OVERRIDE_DIR))),
        InstallStep(("sudo", "systemctl", "daemon-reload")),
        InstallStep(("sudo", "systemctl", "restart", "ollama")),
    ]


def firewall_plan(host: HostPlatform, port: int, *, which: Which = shutil.which) -> List[InstallStep]:
    """Commands that allow ``port`` through the host firewall; empty when none is managed."""
    if host.is_macos:
        return []
    if which("ufw"):
        return [InstallStep(("sudo", "ufw", "allow", f"{port}/tcp"))]
    if which("firewall-cmd"):
        return [
            InstallStep(("sudo", "firewall-cmd", "--permanent", f"--add-port={port}/tcp")),
            InstallStep(("sudo", "firewall-cmd", "--reload")),
        ]
    return []


def lan_address() -> Optional[str]:
    """This host's address on the default-route interface, if it has one."""
    # Connecting a UDP socket sends nothing; it only selects the outgoing interface.
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("192.0.2.1", 9))
            address = sock.getsockname()[0]
    except OSError:
        return None
    if not address or address.startswith("127.") or address == "0.0.0.0":
        return None
    return address


@dataclass(frozen=True)
class ExposureStatus:
    installed: bool
    local: bool
    external: bool
    lan_url: Optional[str] = None


class OllamaExposure:
    """Expose, revert and check network access to the local Ollama server."""

    def __init__(
        self,
        config: StackConfig,
        host: HostPlatform,
        *,
        runner: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run,
        which: Which = shutil.which,
        home: Optional[Path] = None,
        lan_ip: Callable[[], Optional[str]] = lan_address,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.host = host
        self._which = which
        self._home = home or Path.home()
        self._lan_ip = lan_ip
        self._transport = transport
        self._sleep = sleep
        self._installer = DependencyInstaller(host, runner=runner, which=which)

    @property
    def port(self) -> int:
        return self.config.ollama_port

    def require_ollama(self) -> str:
        path = self._which("ollama")
        if not path:
            raise ExternalToolMissing("ollama", OLLAMA_INSTALL_HINT)
        return path

    def _client(self, host: str) -> OllamaClient:
        return OllamaClient(f"http://{host}:{self.port}", timeout=self.config.http_timeout, transport=self._transport)

    def expose(self, *, open_firewall: bool = False) -> ExposureStatus:
        """Restart Ollama on all interfaces and wait for it to answer there.

        Raises ProcessNotResponding when it does not come back on the
        external address within the configured attempts.
        """
        ollama_bin = self.require_ollama()
        self._installer.run_steps(stop_plan(self.host, which=self._which))
        if self.host.is_macos:
            plist = launch_agent_path(self._home)
            plist.parent.mkdir(parents=True, exist_ok=True)
            plist.write_bytes(launch_agent_plist(ollama_bin, self.port))
        self._installer.run_steps(expose_plan(self.host, self.port, home=self._home))

        client = self._client(self._lan_ip() or "0.0.0.0")
        if not client.wait_until_ready(
            attempts=self.config.ollama_poll_attempts,
            interval=self.config.poll_interval,
            sleep=self._sleep,
        ):
            raise ProcessNotResponding(
                "ollama", self.config.ollama_poll_attempts, "check `journalctl -u ollama` or /tmp/ollama.error.log"
            )
        if open_firewall:
            self._installer.run_steps(firewall_plan(self.host, self.port, which=self._which))
        return self.status()

    def revert(self) -> None:
        self.require_ollama()
        self._installer.run_steps(stop_plan(self.host, which=self._which))
        self._installer.run_steps(revert_plan(self.host, home=self._home, which=self._which))

    def status(self) -> ExposureStatus:
        if not self._which("ollama"):
            return ExposureStatus(installed=False, local=False, external=False)
        local = self._client("localhost").is_healthy()
        address = self._lan_ip()
        if not local or not address:
            return ExposureStatus(installed=True, local=local, external=False)
        external = self._client(address).is_healthy()
        return ExposureStatus(installed=True, local=local, external=external, lan_url=f"http://{address}:{self.port}")

    def test(self) -> Any:
        """Fetch ``/api/tags`` through the LAN address; returns the payload."""
        address = self._lan_ip()
        if not address:
            raise StackError("could not determine this host's local network address")
        try:
            return self._client(address).tags()
        except (httpx.HTTPError, ValueError) as err:
            raise StackError(
                f"Ollama is not accessible from the local network at http://{address}:{self.port} ({err}); "
                "run `stackctl ollama expose`"
            ) from err
