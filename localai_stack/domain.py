"""Helpers for exposing Ollama on a custom domain: DNS, nginx, SSL and reachability checks."""

from __future__ import annotations

import shutil
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import httpx

from .deps import DEBIAN_FAMILY, REDHAT_FAMILY, HostPlatform, InstallStep, Which, redhat_package_manager
from .errors import StackError
from .httpcheck import get_json

PUBLIC_IP_SERVICES = (
    "https://ipv4.icanhazip.com/",
    "https://api.ipify.org",
    "https://checkip.amazonaws.com",
)

NGINX_TEMPLATE = """server {{
    listen {listen_port};
    server_name {domain};

    # Security headers
    add_header X-Frame-Options DENY;
    add_header X-Content-Type-Options nosniff;
    add_header X-XSS-Protection "1; mode=block";

    location / {{
        proxy_pass http://127.0.0.1:{target_port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;

        # WebSocket support
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";

        proxy_connect_timeout 60s;
        proxy_send_timeout 60s;
        proxy_read_timeout 60s;
    }}

    location /health {{
        access_log off;
        return 200 "healthy";
        add_header Content-Type text/plain;
    }}
}}
"""


@dataclass(frozen=True)
class DnsCheck:
    domain: str
    resolved_ip: Optional[str]
    public_ip: Optional[str]

    @property
    def matches(self) -> bool:
        return bool(self.resolved_ip and self.public_ip and self.resolved_ip == self.public_ip)


def _check_domain(domain: str) -> None:
    if not domain or any(ch.isspace() for ch in domain) or ";" in domain:
        raise ValueError(f"invalid domain: {domain!r}")


def render_nginx_config(domain: str, listen_port: int, target_port: int = 11434) -> str:
    _check_domain(domain)
    return NGINX_TEMPLATE.format(domain=domain, listen_port=listen_port, target_port=target_port)


def nginx_config_path(host: HostPlatform) -> Path:
    if host.is_macos:
        return Path("/usr/local/etc/nginx/servers/ollama.conf")
    return Path("/etc/nginx/sites-available/ollama")


def public_ip(
    services: Sequence[str] = PUBLIC_IP_SERVICES,
    *,
    timeout: float = 5.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> Optional[str]:
    """Ask each lookup service in turn for this host's public IPv4 address."""
    with httpx.Client(timeout=timeout, transport=transport) as client:
        for url in services:
            try:
                response = client.get(url)
            except httpx.HTTPError:
                continue
            address = response.text.strip()
            if response.status_code == 200 and address:
                return address
    return None


def check_dns(
    domain: str,
    *,
    resolve: Callable[[str], str] = socket.gethostbyname,
    lookup_public_ip: Callable[[], Optional[str]] = public_ip,
) -> DnsCheck:
    try:
        resolved: Optional[str] = resolve(domain)
    except OSError:
        resolved = None
    return DnsCheck(domain=domain, resolved_ip=resolved, public_ip=lookup_public_ip())


def fetch_domain_tags(
    domain: str,
    port: int = 11434,
    *,
    timeout: float = 10.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> Any:
    """Fetch ``/api/tags`` through the domain; raises httpx errors when unreachable."""
    return get_json(f"http://{domain}:{port}/api/tags", timeout=timeout, transport=transport)


def check_port_access(
    domain: str,
    port: int,
    *,
    timeout: float = 10.0,
    connect: Callable[..., socket.socket] = socket.create_connection,
) -> bool:
    """True when a TCP connection to ``domain:port`` succeeds within ``timeout``."""
    try:
        conn = connect((domain, port), timeout=timeout)
    except OSError:
        return False
    conn.close()
    return True


def ssl_plan(host: HostPlatform, domain: str, email: str, *, which: Which = shutil.which) -> List[InstallStep]:
    """Commands that obtain a Let's Encrypt certificate for ``domain`` through nginx.

    certbot is installed first when missing; on Linux the renewal timer is
    enabled afterwards.
    """
    _check_domain(domain)
    if "@" not in email:
        raise ValueError(f"invalid contact email: {email!r}")
    steps: List[InstallStep] = []
    if not which("certbot"):
        if host.is_macos:
            steps.append(InstallStep(("brew", "install", "certbot")))
        elif host.distro in DEBIAN_FAMILY:
            steps.extend([
                InstallStep(("sudo", "apt", "update")),
                InstallStep(("sudo", "apt", "install", "-y", "certbot", "python3-certbot-nginx")),
            ])
        elif host.distro in REDHAT_FAMILY:
            pm = redhat_package_manager(which)
            steps.append(InstallStep(("sudo", pm, "install", "-y", "certbot", "python3-certbot-nginx")))
        else:
            raise StackError(f"install certbot manually on {host.distro}; see https://certbot.eff.org")
    steps.append(InstallStep((
        "sudo", "certbot", "--nginx", "-d", domain, "--non-interactive", "--agree-tos", "--email", email,
    )))
    if not host.is_macos:
        steps.extend([
            InstallStep(("sudo", "systemctl", "enable", "certbot.timer"), tolerate_failure=True),
            InstallStep(("sudo", "systemctl", "start", "certbot.timer"), tolerate_failure=True),
        ])
    return steps
