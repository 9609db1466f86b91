"""Thin wrapper over the ``docker`` CLI plus the container specs this stack runs."""

from __future__ import annotations

import secrets
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .config import StackConfig
from .errors import ExternalToolMissing, StackError
from .process import poll_until

DOCKER_INSTALL_HINT = "Install Docker from https://docs.docker.com/get-docker/ or run `stackctl install-deps`."

WEBUI_CONTAINER_PORT = 8080
SEARXNG_CONTAINER_PORT = 8080


@dataclass
class ContainerSpec:
    """Everything needed for one ``docker run -d``."""

    name: str
    image: str
    ports: Dict[int, int] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    volumes: Dict[str, str] = field(default_factory=dict)
    network: Optional[str] = None
    restart: str = "unless-stopped"

    def run_args(self) -> List[str]:
        args: List[str] = ["run", "-d", "--name", self.name]
        if self.network:
            args.append(f"--network={self.network}")
        else:
            for host_port, container_port in self.ports.items():
                args.extend(["-p", f"{host_port}:{container_port}"])
        for volume, mount in self.volumes.items():
            args.extend(["-v", f"{volume}:{mount}"])
        for key, value in self.env.items():
            args.extend(["-e", f"{key}={value}"])
        if self.restart:
            args.extend(["--restart", self.restart])
        args.append(self.image)
        return args


class DockerCli:
    def __init__(
        self,
        binary: Optional[str] = None,
        *,
        runner: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._binary = binary
        self._runner = runner
        self._sleep = sleep

    @property
    def binary(self) -> str:
        if self._binary is None:
            path = shutil.which("docker")
            if not path:
                raise ExternalToolMissing("docker", DOCKER_INSTALL_HINT)
            self._binary = path
        return self._binary

    def _run(self, args: Iterable[str], *, timeout: Optional[float] = None) -> "subprocess.CompletedProcess[str]":
        command = [self.binary, *args]
        try:
            return self._runner(
                command,
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as err:
            raise ExternalToolMissing("docker", DOCKER_INSTALL_HINT) from err

    def _checked(self, args: List[str], action: str) -> "subprocess.CompletedProcess[str]":
        result = self._run(args)
        if result.returncode != 0:
            raise StackError(f"docker {action} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result

    def is_daemon_running(self, timeout: float = 10.0) -> bool:
        try:
            return self._run(["info"], timeout=timeout).returncode == 0
        except subprocess.TimeoutExpired:
            return False

    def require(self) -> None:
        """Fail unless the CLI is installed and the daemon answers."""
        if not self.is_daemon_running():
            raise StackError("Docker is not running. Start Docker (Docker Desktop or `sudo systemctl start docker`).")

    def version(self) -> Optional[str]:
        result = self._run(["--version"])
        return result.stdout.strip() if result.returncode == 0 else None

    def _names(self, include_stopped: bool) -> List[str]:
        args = ["ps", "--format", "{{.Names}}"]
        if include_stopped:
            args.insert(1, "-a")
        result = self._checked(args, "ps")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def exists(self, name: str) -> bool:
        return name in self._names(include_stopped=True)

    def is_running(self, name: str) -> bool:
        return name in self._names(include_stopped=False)

    def stop(self, name: str) -> bool:
        """Stop a running container; returns False if it was not running."""
        if not self.is_running(name):
            return False
        self._checked(["stop", name], "stop")
        return True

    def start(self, name: str) -> bool:
        """Start an existing, stopped container; False when there is none to start."""
        if self.is_running(name):
            return True
        if not self.exists(name):
            return False
        self._checked(["start", name], "start")
        return True

    def remove(self, name: str) -> None:
        if self.exists(name):
            self._run(["stop", name])
            self._checked(["rm", name], "rm")

    def ensure_volume(self, name: str) -> bool:
        """Create the named volume if missing; True when it was created."""
        result = self._checked(["volume", "ls", "--format", "{{.Name}}"], "volume ls")
        if name in result.stdout.split():
            return False
        self._checked(["volume", "create", name], "volume create")
        return True

    def pull(self, image: str) -> None:
        self._checked(["pull", image], "pull")

    def run(self, spec: ContainerSpec) -> str:
        result = self._checked(spec.run_args(), "run")
        return result.stdout.strip()

    def logs(self, name: str, tail: int = 50) -> str:
        result = self._run(["logs", "--tail", str(tail), name])
        return (result.stdout + result.stderr).strip()

    def published_port(self, name: str, container_port: int) -> Optional[int]:
        """Host port mapped to ``container_port``, if the container publishes one."""
        result = self._run(["port", name, str(container_port)])
        if result.returncode != 0:
            return None
        for line in result.stdout.splitlines():
            _, _, port = line.strip().rpartition(":")
            if port.isdigit():
                return int(port)
        return None

    def wait_until_running(self, name: str, *, attempts: int, interval: float) -> bool:
        return bool(poll_until(lambda: self.is_running(name), attempts=attempts, interval=interval, sleep=self._sleep))

    def reset_webui_database(self, volume: str) -> None:
        self._checked(["run", "--rm", "-v", f"{volume}:/data", "alpine", "rm", "-f", "/data/webui.db"], "run")


def searxng_spec(config: StackConfig, secret_key: Optional[str] = None) -> ContainerSpec:
    port = config.searxng_port
    return ContainerSpec(
        name=config.searxng_container,
        image=config.searxng_image,
        ports={port: SEARXNG_CONTAINER_PORT},
        volumes={config.searxng_volume: "/etc/searxng"},
        env={
            "SEARXNG_BASE_URL": f"http://localhost:{port}/",
            "SEARXNG_SECRET_KEY": secret_key or secrets.token_hex(32),
        },
    )


def webui_spec(config: StackConfig, *, ollama_base_url: Optional[str], host_network: bool) -> ContainerSpec:
    """Open WebUI wired to Ollama and to SearXNG for web search.

    With host networking the container reaches host services on localhost and
    listens on its own port 8080; otherwise it publishes ``webui_port`` and
    reaches the host through ``host.docker.internal``.
    """
    search_host = "localhost" if host_network else "host.docker.internal"
    env: Dict[str, str] = {}
    if ollama_base_url:
        env["OLLAMA_BASE_URL"] = ollama_base_url
    env["ENABLE_RAG_WEB_SEARCH"] = "true"
    env["RAG_WEB_SEARCH_ENGINE"] = "searxng"
    env["SEARXNG_QUERY_URL"] = f"http://{search_host}:{config.searxng_port}/search?q={{query}}"
    return ContainerSpec(
        name=config.webui_container,
        image=config.webui_image,
        ports={} if host_network else {config.webui_port: WEBUI_CONTAINER_PORT},
        volumes={config.webui_volume: "/app/backend/data"},
        env=env,
        network="host" if host_network else None,
    )
