"""Runtime configuration for the stack supervisor.

Every port, container name and timeout the tool uses lives on a single
:class:`StackConfig`. Defaults match the stock Open WebUI / SearXNG / ngrok
setup; environment variables override the defaults and CLI flags override
the environment. A relocated port yields a new config via :meth:`with_port`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ConfigError


WEBUI_IMAGE = "ghcr.io/open-webui/open-webui:main"
SEARXNG_IMAGE = "searxng/searxng:latest"

# Service names accepted by with_port()/port_for().
WEBUI = "webui"
SEARXNG = "searxng"
NGROK_API = "ngrok-api"
OLLAMA = "ollama"


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as err:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from err


def _env_port(environ: Mapping[str, str], key: str, default: int) -> int:
    port = _env_int(environ, key, default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{key} must be a port between 1 and 65535, got {port}")
    return port


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as err:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from err


@dataclass(frozen=True)
class StackConfig:
    """Ports, names, images and timing knobs for one invocation."""

    webui_port: int = 3000
    searxng_port: int = 8081
    ngrok_api_port: int = 4040
    ollama_host: str = "localhost"
    ollama_port: int = 11434

    webui_container: str = "open-webui"
    searxng_container: str = "searxng"
    webui_volume: str = "open-webui"
    searxng_volume: str = "searxng-config"
    webui_image: str = WEBUI_IMAGE
    searxng_image: str = SEARXNG_IMAGE

    state_dir: Path = field(default_factory=Path.cwd)

    # Port supervision.
    inspect_timeout: float = 5.0
    grace_interval: float = 2.0
    relocation_window: int = 10

    # Bounded polling for spawned processes and containers.
    poll_interval: float = 2.0
    tunnel_poll_attempts: int = 10
    container_poll_attempts: int = 15
    docker_poll_attempts: int = 30
    ollama_poll_attempts: int = 15
    http_timeout: float = 10.0

    min_free_disk_gb: int = 5

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StackConfig":
        """Build a config from defaults overridden by environment variables."""
        env = os.environ if environ is None else environ
        defaults = cls()
        state_dir = env.get("STACK_STATE_DIR")
        return cls(
            webui_port=_env_port(env, "STACK_WEBUI_PORT", defaults.webui_port),
            searxng_port=_env_port(env, "STACK_SEARXNG_PORT", defaults.searxng_port),
            ngrok_api_port=_env_port(env, "NGROK_API_PORT", defaults.ngrok_api_port),
            ollama_host=env.get("OLLAMA_HOST", defaults.ollama_host) or defaults.ollama_host,
            ollama_port=_env_port(env, "OLLAMA_PORT", defaults.ollama_port),
            webui_container=env.get("STACK_WEBUI_CONTAINER", defaults.webui_container),
            searxng_container=env.get("STACK_SEARXNG_CONTAINER", defaults.searxng_container),
            webui_image=env.get("STACK_WEBUI_IMAGE", defaults.webui_image),
            searxng_image=env.get("STACK_SEARXNG_IMAGE", defaults.searxng_image),
            state_dir=Path(state_dir).expanduser() if state_dir else defaults.state_dir,
            grace_interval=_env_float(env, "STACK_GRACE_INTERVAL", defaults.grace_interval),
            poll_interval=_env_float(env, "STACK_POLL_INTERVAL", defaults.poll_interval),
        )

    def override(self, **changes: object) -> "StackConfig":
        """Return a copy with non-None values from ``changes`` applied."""
        applied: Dict[str, object] = {key: value for key, value in changes.items() if value is not None}
        if "state_dir" in applied:
            applied["state_dir"] = Path(str(applied["state_dir"])).expanduser()
        return replace(self, **applied) if applied else self

    def port_for(self, service: str) -> int:
        return getattr(self, _PORT_FIELDS[service])

    def with_port(self, service: str, port: int) -> "StackConfig":
        """Return a copy with ``service`` bound to ``port``."""
        return replace(self, **{_PORT_FIELDS[service]: port})

    @property
    def ollama_url(self) -> str:
        host = self.ollama_host
        # OLLAMA_HOST may carry a scheme or a port, as the ollama CLI allows.
        if "://" in host:
            return host.rstrip("/")
        if ":" in host:
            return f"http://{host}"
        return f"http://{host}:{self.ollama_port}"

    @property
    def ngrok_api_url(self) -> str:
        return f"http://localhost:{self.ngrok_api_port}/api/tunnels"


_PORT_FIELDS = {
    WEBUI: "webui_port",
    SEARXNG: "searxng_port",
    NGROK_API: "ngrok_api_port",
    OLLAMA: "ollama_port",
}
