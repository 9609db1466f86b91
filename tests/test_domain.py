from unittest import mock

import httpx
import pytest

from localai_stack.deps import HostPlatform
from localai_stack.domain import (
    check_dns,
    check_port_access,
    fetch_domain_tags,
    nginx_config_path,
    public_ip,
    render_nginx_config,
    ssl_plan,
)
from localai_stack.errors import StackError


def test_render_nginx_config():
    text = render_nginx_config("chat.example.com", 8080)

    assert "listen 8080;" in text
    assert "server_name chat.example.com;" in text
    assert "proxy_pass http://127.0.0.1:11434;" in text
    assert "location /health {" in text


@pytest.mark.parametrize("domain", ["", "bad domain", "evil;rm"])
def test_render_nginx_config_rejects_bad_domains(domain):
    with pytest.raises(ValueError):
        render_nginx_config(domain, 80)


def test_nginx_config_path():
    assert str(nginx_config_path(HostPlatform("macos", "macos"))).startswith("/usr/local/etc/nginx")
    assert str(nginx_config_path(HostPlatform("linux", "ubuntu"))) == "/etc/nginx/sites-available/ollama"


def test_public_ip_falls_back_between_services():
    def handler(request):
        if request.url.host == "first.example":
            raise httpx.ConnectError("down", request=request)
        if request.url.host == "second.example":
            return httpx.Response(503, text="busy")
        return httpx.Response(200, text="203.0.113.7\n")

    services = ("https://first.example/", "https://second.example/", "https://third.example/")

    assert public_ip(services, transport=httpx.MockTransport(handler)) == "203.0.113.7"


def test_public_ip_unknown():
    handler = lambda request: httpx.Response(500)

    assert public_ip(("https://only.example/",), transport=httpx.MockTransport(handler)) is None


def test_check_dns_matches_public_ip():
    result = check_dns("chat.example.com", resolve=lambda name: "203.0.113.7", lookup_public_ip=lambda: "203.0.113.7")

    assert result.matches


def test_check_dns_unresolvable():
    def resolve(name):
        raise OSError("Name or service not known")

    result = check_dns("nowhere.invalid", resolve=resolve, lookup_public_ip=lambda: "203.0.113.7")

    assert result.resolved_ip is None
    assert not result.matches


def test_fetch_domain_tags():
    def handler(request):
        assert str(request.url) == "http://chat.example.com:11434/api/tags"
        return httpx.Response(200, json={"models": []})

    assert fetch_domain_tags("chat.example.com", transport=httpx.MockTransport(handler)) == {"models": []}


def test_check_port_access():
    conn = mock.Mock()
    connect = mock.Mock(return_value=conn)

    assert check_port_access("chat.example.com", 11434, timeout=3.0, connect=connect)
    connect.assert_called_once_with(("chat.example.com", 11434), timeout=3.0)
    conn.close.assert_called_once_with()

    refused = mock.Mock(side_effect=ConnectionRefusedError)
    assert not check_port_access("chat.example.com", 11434, connect=refused)


def test_ssl_plan_installs_certbot_when_missing():
    host = HostPlatform("linux", "ubuntu")
    steps = [str(step) for step in ssl_plan(host, "chat.example.com", "ops@example.com", which=lambda tool: None)]

    assert steps[:2] == ["sudo apt update", "sudo apt install -y certbot python3-certbot-nginx"]
    assert (
        "sudo certbot --nginx -d chat.example.com --non-interactive --agree-tos --email ops@example.com"
        in steps
    )
    assert steps[-1] == "sudo systemctl start certbot.timer"


def test_ssl_plan_on_macos_with_certbot_present():
    host = HostPlatform("macos", "macos")
    steps = ssl_plan(host, "chat.example.com", "ops@example.com", which=lambda tool: "/usr/local/bin/certbot")

    assert len(steps) == 1
    assert steps[0].argv[:3] == ("sudo", "certbot", "--nginx")


def test_ssl_plan_rejects_bad_input():
    host = HostPlatform("linux", "ubuntu")
    with pytest.raises(ValueError):
        ssl_plan(host, "bad domain", "ops@example.com")
    with pytest.raises(ValueError):
        ssl_plan(host, "chat.example.com", "nobody")
    with pytest.raises(StackError, match="certbot"):
        ssl_plan(HostPlatform("linux", "arch"), "chat.example.com", "ops@example.com", which=lambda tool: None)
