"""ngrok tunnel lifecycle: start, stop, status and reachability test.

Each tunnel target has its own marker label, so the Open WebUI tunnel and the
Ollama tunnel can be managed independently. The public URL is read from the
ngrok agent's local API and cached next to the marker for quick ``status``.
"""

from __future__ import annotations

import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import StackConfig
from .errors import ExternalToolMissing, StackError
from .markers import ProcessMarkerStore, StopOutcome, StopResult
from .httpcheck import get_json, is_reachable
from .process import ManagedProcess

NGROK_INSTALL_HINT = (
    "Install it from https://ngrok.com/download "
    "(macOS: `brew install ngrok/ngrok/ngrok`) or run `stackctl install-deps`."
)


@dataclass(frozen=True)
class TunnelTarget:
    name: str
    label: str
    log_name: str
    health_path: str


TARGETS: Dict[str, TunnelTarget] = {
    "webui": TunnelTarget(name="webui", label="ngrok", log_name="ngrok.log", health_path="/"),
    "ollama": TunnelTarget(name="ollama", label="ollama_ngrok", log_name="ollama_ngrok.log", health_path="/api/tags"),
}


@dataclass(frozen=True)
class TunnelStatus:
    target: TunnelTarget
    active: bool
    pid: Optional[int] = None
    public_url: Optional[str] = None
    reachable: Optional[bool] = None


def extract_public_url(payload: Any, port: Optional[int] = None) -> Optional[str]:
    """Pick the HTTPS public URL out of an ngrok ``/api/tunnels`` payload.

    When ``port`` is given, tunnels whose upstream address names a different
    port are skipped.
    """
    if not isinstance(payload, dict):
        return None
    for tunnel in payload.get("tunnels") or []:
        if not isinstance(tunnel, dict) or tunnel.get("proto") != "https":
            continue
        addr = str((tunnel.get("config") or {}).get("addr") or "")
        if port is not None and addr and not addr.rstrip("/").endswith(f":{port}"):
            continue
        url = tunnel.get("public_url")
        if url:
            return str(url)
    return None


class TunnelManager:
    def __init__(
        self,
        config: StackConfig,
        store: ProcessMarkerStore,
        *,
        ngrok_cmd: Optional[str] = None,
        runner: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run,
        popen: Callable[..., "subprocess.Popen[bytes]"] = subprocess.Popen,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.ngrok_cmd = ngrok_cmd
        self._runner = runner
        self._popen = popen
        self._transport = transport
        self._sleep = sleep

    def resolve_binary(self) -> str:
        if self.ngrok_cmd:
            return self.ngrok_cmd
        path = shutil.which("ngrok")
        if not path:
            raise ExternalToolMissing("ngrok", NGROK_INSTALL_HINT)
        return path

    def is_authenticated(self) -> bool:
        result = self._runner(
            [self.resolve_binary(), "config", "check"],
            capture_output=True,
            text=True,
            check=False,
        )
        return result.returncode == 0

    def add_authtoken(self, token: str) -> None:
        token = token.strip()
        if not token:
            raise StackError("no ngrok authtoken provided")
        result = self._runner(
            [self.resolve_binary(), "config", "add-authtoken", token],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            raise StackError(f"ngrok rejected the authtoken: {(result.stderr or result.stdout).strip()}")

    def target_port(self, target: TunnelTarget) -> int:
        return self.config.ollama_port if target.name == "ollama" else self.config.webui_port

    def build_command(self, binary: str, port: int, domain: Optional[str] = None) -> List[str]:
        command = [binary, "http", str(port)]
        if domain:
            command.append(f"--domain={domain}")
        command.append("--log=stdout")
        return command

    def process_for(self, target: TunnelTarget, port: int, domain: Optional[str] = None) -> ManagedProcess:
        return ManagedProcess(
            label=target.label,
            command=self.build_command(self.resolve_binary(), port, domain),
            cwd=self.config.state_dir,
            log_file=self.config.state_dir / target.log_name,
            store=self.store,
            popen=self._popen,
        )

    def fetch_public_url(self, port: Optional[int] = None) -> Optional[str]:
        try:
            payload = get_json(self.config.ngrok_api_url, timeout=self.config.http_timeout, transport=self._transport)
        except (httpx.HTTPError, ValueError):
            return None
        return extract_public_url(payload, port)

    def start(self, target: TunnelTarget, *, port: Optional[int] = None, domain: Optional[str] = None) -> TunnelStatus:
        """Replace any tunnel tracked for ``target`` with a fresh one.

        Raises ProcessNotResponding when the agent never publishes a URL; the
        process is left running (and tracked) so the operator can inspect it.
        """
        port = port or self.target_port(target)
        with self.store.locked(target.label):
            previous = self.store.stop(target.label)
            if previous.outcome is StopOutcome.STOPPED:
                print(previous.describe())
                self._sleep(self.config.grace_interval)
            process = self.process_for(target, port, domain)
            pid = process.start()
            url = process.wait_for(
                lambda: self.fetch_public_url(port),
                attempts=self.config.tunnel_poll_attempts,
                interval=self.config.poll_interval,
                sleep=self._sleep,
            )
            self.store.save_endpoint(target.label, url)
        return TunnelStatus(target=target, active=True, pid=pid, public_url=url)

    def stop(self, target: TunnelTarget) -> StopResult:
        with self.store.locked(target.label):
            return self.store.stop(target.label)

    def status(self, target: TunnelTarget, *, check_reachable: bool = False) -> TunnelStatus:
        marker = self.store.live_marker(target.label)
        if marker is None:
            return TunnelStatus(target=target, active=False)
        url = self.store.load_endpoint(target.label) or self.fetch_public_url(self.target_port(target))
        reachable = None
        if check_reachable and url:
            reachable = is_reachable(
                url.rstrip("/") + target.health_path,
                timeout=self.config.http_timeout,
                transport=self._transport,
            )
        return TunnelStatus(target=target, active=True, pid=marker.pid, public_url=url, reachable=reachable)

    def test(self, target: TunnelTarget) -> Any:
        """Fetch the target's health path through the public URL.

        Returns the decoded JSON body for JSON endpoints, otherwise None.
        """
        status = self.status(target)
        if not status.active or not status.public_url:
            raise StackError(f"no active {target.name} tunnel found; start one with `stackctl tunnel start`")
        url = status.public_url.rstrip("/") + target.health_path
        try:
            with httpx.Client(timeout=self.config.http_timeout, transport=self._transport, follow_redirects=True) as client:
                response = client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as err:
            raise StackError(f"{target.name} is not accessible via {status.public_url}: {err}") from err
        if "json" in response.headers.get("content-type", ""):
            return response.json()
        return None
