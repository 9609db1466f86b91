"""stackctl: set up, inspect and tear down the local Open WebUI / SearXNG / Ollama stack.

Run ``stackctl --help`` (or ``python tools/stackctl.py --help``) for usage.
"""

# Layout
#
# - Factories: collaborators built from a StackConfig (patched in tests)
# - Shared steps: port supervision reporting, SearXNG / Open WebUI bring-up
# - Commands: one run_* handler per subcommand, each returning an exit code
# - Parser & main: subcommand parsing, error-to-exit-code mapping

from __future__ import annotations

import argparse
import json
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from . import console, prompts
from .config import NGROK_API, SEARXNG, WEBUI, StackConfig
from .containers import (
    SEARXNG_CONTAINER_PORT,
    WEBUI_CONTAINER_PORT,
    DockerCli,
    searxng_spec,
    webui_spec,
)
from .deps import (
    DependencyInstaller,
    check_dependencies,
    check_disk_space,
    detect_platform,
)
from .domain import check_dns, check_port_access, fetch_domain_tags, nginx_config_path, render_nginx_config, ssl_plan
from .errors import (
    ExternalToolMissing,
    MarkerBusy,
    OperatorAbort,
    ProcessNotResponding,
    SignalDenied,
    StackError,
)
from .exposure import SECURITY_WARNING, OllamaExposure
from .markers import ProcessMarkerStore, StopOutcome
from .ollama import OllamaClient
from .orchestration import PortBinding, PortSupervisor
from .ports import ConflictResolver, PortInspector, ResolutionMode, ResolutionOutcome
from .process import poll_until
from .tunnel import TARGETS, TunnelManager, TunnelTarget

EXIT_INTERRUPTED = 130


# Factories ------------------------------------------------------------------


def make_docker() -> DockerCli:
    return DockerCli()


def make_store(config: StackConfig) -> ProcessMarkerStore:
    return ProcessMarkerStore(config.state_dir)


def make_inspector(config: StackConfig) -> PortInspector:
    return PortInspector(timeout=config.inspect_timeout)


def make_resolver(config: StackConfig, inspector: PortInspector) -> ConflictResolver:
    return ConflictResolver.from_config(config, inspector)


def make_tunnels(config: StackConfig, store: ProcessMarkerStore) -> TunnelManager:
    return TunnelManager(config, store)


def make_ollama(config: StackConfig) -> OllamaClient:
    return OllamaClient(config.ollama_url, timeout=config.http_timeout)


def make_exposure(config: StackConfig) -> OllamaExposure:
    return OllamaExposure(config, detect_platform())


def make_supervisor(config: StackConfig, *, force: bool) -> PortSupervisor:
    inspector = make_inspector(config)
    resolver = make_resolver(config, inspector)
    if force:
        return PortSupervisor(inspector, resolver, mode=ResolutionMode.FORCE_KILL)
    return PortSupervisor(inspector, resolver, mode=ResolutionMode.INTERACTIVE, choose=prompts.conflict_prompt())


def port_number(value: str) -> int:
    """argparse type for a TCP port."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a port number: {value!r}") from None
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535, got {port}")
    return port


def build_config(args: argparse.Namespace) -> StackConfig:
    config = StackConfig.from_env()
    return config.override(
        webui_port=getattr(args, "webui_port", None),
        searxng_port=getattr(args, "searxng_port", None),
        ngrok_api_port=getattr(args, "ngrok_api_port", None),
        ollama_host=getattr(args, "ollama_host", None),
        ollama_port=getattr(args, "ollama_port", None),
        state_dir=getattr(args, "state_dir", None),
    )


# Shared steps ---------------------------------------------------------------


def report_binding(binding: PortBinding) -> None:
    name = binding.service_name
    if binding.aborted:
        detail = binding.resolution.detail if binding.resolution else ""
        console.error(f"{name}: could not secure port {binding.requested_port}" + (f" ({detail})" if detail else ""))
    elif binding.relocated:
        console.success(f"{name}: using alternative port {binding.resolved_port}")
    elif binding.resolution is not None:
        console.success(f"{name}: port {binding.requested_port} is now free")
    else:
        console.success(f"{name}: port {binding.requested_port} is available")


def _wait_for_container(docker: DockerCli, name: str, config: StackConfig) -> None:
    if docker.wait_until_running(name, attempts=config.container_poll_attempts, interval=config.poll_interval):
        return
    logs = docker.logs(name)
    if logs:
        print(logs, file=sys.stderr)
    raise ProcessNotResponding(name, config.container_poll_attempts, f"check `docker logs {name}`")


def setup_searxng(config: StackConfig, docker: DockerCli, supervisor: PortSupervisor) -> StackConfig:
    """Replace the SearXNG container, resolving port conflicts first."""
    console.step("Setting up SearXNG search engine...")
    # A previous container of ours holds the port; drop it before inspecting.
    docker.remove(config.searxng_container)

    def launch(port: int) -> None:
        bound = config.with_port(SEARXNG, port)
        if docker.ensure_volume(bound.searxng_volume):
            console.info(f"Created Docker volume {bound.searxng_volume}")
        console.info("Pulling SearXNG image...")
        docker.pull(bound.searxng_image)
        docker.run(searxng_spec(bound))
        _wait_for_container(docker, bound.searxng_container, bound)

    binding = supervisor.launch(SEARXNG, config.searxng_port, launch)
    report_binding(binding)
    binding.raise_if_aborted(required=True)
    assert binding.resolved_port is not None
    config = config.with_port(SEARXNG, binding.resolved_port)
    console.success(f"SearXNG available at: http://localhost:{config.searxng_port}")
    return config


def detect_ollama(config: StackConfig, *, assume_yes: bool = False) -> bool:
    """True when a local Ollama answers, trying to start it once if installed."""
    console.info("Checking for local Ollama installation...")
    client = make_ollama(config)
    if client.is_healthy():
        console.success(f"Ollama is running at {config.ollama_url}")
        return True
    if not shutil.which("ollama"):
        console.warn("Ollama is not installed locally")
        return False

    console.warn("Ollama is installed but not running")
    if shutil.which("brew"):
        subprocess.run(["brew", "services", "start", "ollama"], check=False)
    elif not assume_yes:
        console.info("Please start Ollama manually: 'ollama serve'")
        prompts.ask("Press Enter after starting Ollama")
    if client.wait_until_ready(attempts=config.ollama_poll_attempts, interval=config.poll_interval):
        console.success("Ollama is now running")
        return True
    console.error("Failed to start Ollama. Please start it manually with `ollama serve`.")
    return False


def setup_webui(
    config: StackConfig,
    docker: DockerCli,
    supervisor: PortSupervisor,
    *,
    use_ollama: bool,
    host_network: bool,
) -> Tuple[StackConfig, str]:
    """Replace the Open WebUI container; returns the config and the local URL."""
    console.step("Setting up Open WebUI with search integration...")
    if use_ollama:
        if host_network:
            ollama_base_url: Optional[str] = config.ollama_url
        else:
            ollama_base_url = f"http://host.docker.internal:{config.ollama_port}"
        console.info(f"Will connect to Ollama at: {ollama_base_url}")
    else:
        ollama_base_url = None
        console.warn("Open WebUI will run without Ollama; configure a connection later in its settings.")

    docker.remove(config.webui_container)

    def launch(port: int) -> None:
        bound = config.with_port(WEBUI, port)
        if docker.ensure_volume(bound.webui_volume):
            console.info(f"Created Docker volume {bound.webui_volume}")
        console.info("Pulling Open WebUI image...")
        docker.pull(bound.webui_image)
        docker.run(webui_spec(bound, ollama_base_url=ollama_base_url, host_network=host_network))
        _wait_for_container(docker, bound.webui_container, bound)

    if host_network:
        # Host networking binds the container's own port; there is nothing to relocate.
        launch(config.webui_port)
        url = f"http://localhost:{WEBUI_CONTAINER_PORT}"
        config = config.with_port(WEBUI, WEBUI_CONTAINER_PORT)
    else:
        binding = supervisor.launch(WEBUI, config.webui_port, launch)
        report_binding(binding)
        binding.raise_if_aborted(required=True)
        assert binding.resolved_port is not None
        config = config.with_port(WEBUI, binding.resolved_port)
        url = f"http://localhost:{config.webui_port}"
    console.success(f"Open WebUI is running at: {url}")
    return config, url


def ensure_ngrok_auth(tunnels: TunnelManager, token: Optional[str] = None) -> None:
    if tunnels.is_authenticated():
        return
    console.warn("ngrok is not authenticated")
    console.info("Get your authtoken from https://dashboard.ngrok.com/get-started/your-authtoken")
    tunnels.add_authtoken(token or prompts.ask("Enter your ngrok authtoken"))
    console.success("ngrok authenticated")


def print_tunnel(status_line: str, url: Optional[str], target: TunnelTarget, config: StackConfig) -> None:
    console.success(status_line)
    if url:
        console.detail(f"Public URL: {url}")
        console.detail(f"Test: curl {url.rstrip('/')}{target.health_path}")
    console.detail(f"Logs: tail -f {target.log_name}")
    console.detail(f"Dashboard: http://localhost:{config.ngrok_api_port}")


def start_tunnel(
    config: StackConfig,
    tunnels: TunnelManager,
    target: TunnelTarget,
    *,
    port: Optional[int] = None,
    domain: Optional[str] = None,
    authtoken: Optional[str] = None,
) -> int:
    tunnels.resolve_binary()
    ensure_ngrok_auth(tunnels, authtoken)
    if target.name == "ollama" and not make_ollama(config).is_healthy():
        raise StackError(f"Ollama is not running on {config.ollama_url}; start it with `ollama serve`")
    console.step(f"Starting ngrok tunnel for {target.name}" + (f" on {domain}" if domain else "") + "...")
    try:
        status = tunnels.start(target, port=port, domain=domain)
    except ProcessNotResponding as err:
        console.warn(f"Failed to get ngrok public URL: {err}")
        console.detail(f"Check ngrok logs: tail {target.log_name}")
        console.detail(f"Check ngrok dashboard: http://localhost:{config.ngrok_api_port}")
        return 1
    print_tunnel(f"ngrok tunnel is active (pid {status.pid})", status.public_url, target, config)
    return 0


def webui_port_from_docker(config: StackConfig) -> int:
    try:
        published = make_docker().published_port(config.webui_container, WEBUI_CONTAINER_PORT)
    except StackError:
        published = None
    return published or config.webui_port


# Commands -------------------------------------------------------------------


def run_install_deps(args: argparse.Namespace) -> int:
    config = build_config(args)
    host = detect_platform()
    console.step("Installing system dependencies...")
    console.info(f"Detected OS: {host.os} ({host.distro})")

    if os.geteuid() == 0:
        console.warn("Running as root. This is not recommended for security reasons.")
        if not prompts.confirm("Continue anyway?", assume_yes=args.yes):
            raise OperatorAbort("Please run as a regular user with sudo privileges.", required=True)

    check_disk_space(config.state_dir, config.min_free_disk_gb)
    console.success("System requirements check passed")

    installer = DependencyInstaller(host, confirm=lambda question: prompts.confirm(question, assume_yes=args.yes))
    if not args.skip_system:
        installer.install("system")
    installer.install("docker")

    docker = make_docker()
    console.info("Verifying Docker is accessible...")
    if not poll_until(docker.is_daemon_running, attempts=30, interval=config.poll_interval):
        hint = "start Docker Desktop" if host.is_macos else "log out and back in (docker group), or `sudo systemctl start docker`"
        raise StackError(f"Docker is not running or accessible; {hint}, then run this command again")
    console.success("Docker is ready")

    if prompts.confirm("Install ngrok for public access?", assume_yes=args.yes):
        installer.install("ngrok")
    if prompts.confirm("Install Ollama for local AI models?", assume_yes=args.yes):
        installer.install("ollama")
        client = make_ollama(config)
        console.info("Waiting for Ollama to be ready...")
        if client.wait_until_ready(attempts=config.ollama_poll_attempts, interval=config.poll_interval):
            console.success("Ollama is running and accessible")
            console.detail("Install a model: ollama pull llama3")
        else:
            console.warn("Ollama installed but not responding. Start it manually:")
            console.detail("brew services start ollama" if host.is_macos else "sudo systemctl start ollama")
            console.detail("or run: ollama serve")

    console.success("All dependencies installed")
    for tool in ("docker", "ngrok", "ollama"):
        version = installer.installed_version(tool)
        if version:
            console.detail(f"{tool} ({version})")
    return 0


def run_setup(args: argparse.Namespace) -> int:
    config = build_config(args)
    console.step("Starting complete Open WebUI setup...")
    docker = make_docker()
    docker.require()
    console.success("Docker is installed and running")
    supervisor = make_supervisor(config, force=args.force)

    config = setup_searxng(config, docker, supervisor)
    use_ollama = detect_ollama(config, assume_yes=args.yes)
    host_network = use_ollama and not detect_platform().is_macos
    config, url = setup_webui(config, docker, supervisor, use_ollama=use_ollama, host_network=host_network)

    exit_code = 0
    if shutil.which("ngrok"):
        want_tunnel = args.tunnel
        if want_tunnel is None:
            want_tunnel = prompts.confirm("Setup ngrok tunnel for public access?", assume_yes=args.yes)
        if want_tunnel:
            tunnels = make_tunnels(config, make_store(config))
            exit_code = start_tunnel(config, tunnels, TARGETS["webui"], port=config.webui_port, domain=args.domain)

    console.success("Setup completed")
    print("")
    print("Next steps:")
    print(f"1. Open {url} in your browser")
    print("2. Create your admin account")
    print("3. Configure your AI models")
    print("")
    print("Management commands:")
    print("   stackctl status    # check services")
    print("   stackctl stop      # stop services")
    print("   stackctl reset-db  # reset the Open WebUI database")
    return exit_code


def run_free_ports(args: argparse.Namespace) -> int:
    config = build_config(args)
    mode = "Forcefully freeing" if args.force else "Checking"
    console.step(f"{mode} ports used by Open WebUI, SearXNG and ngrok...")
    supervisor = make_supervisor(config, force=args.force)
    exit_code = 0
    for service in (WEBUI, SEARXNG, NGROK_API):
        port = config.port_for(service)
        binding = supervisor.prepare(service, port)
        supervisor.release(service)
        if binding.aborted:
            resolution = binding.resolution
            if resolution is not None and resolution.outcome is ResolutionOutcome.ABORTED:
                console.info(f"Skipping port {port}: {resolution.detail}")
                continue
            report_binding(binding)
            console.detail(f"Inspect manually: lsof -nP -iTCP:{port} -sTCP:LISTEN")
            exit_code = 1
        elif binding.relocated:
            flag = {WEBUI: "--webui-port", SEARXNG: "--searxng-port", NGROK_API: "--ngrok-api-port"}[service]
            console.success(f"{service}: port {port} stays busy; next free port is {binding.resolved_port}")
            console.detail(f"Use it with: stackctl setup {flag} {binding.resolved_port}")
        else:
            report_binding(binding)
    return exit_code


def run_status(args: argparse.Namespace) -> int:
    config = build_config(args)
    print("=== Stack status ===")
    healthy = True
    docker = make_docker()
    # Fallback ports: a host-networked Open WebUI publishes nothing and listens on 8080.
    containers = (
        ("Open WebUI", config.webui_container, WEBUI_CONTAINER_PORT, WEBUI_CONTAINER_PORT),
        ("SearXNG", config.searxng_container, SEARXNG_CONTAINER_PORT, config.searxng_port),
    )
    try:
        for title, name, container_port, fallback_port in containers:
            if docker.is_running(name):
                port = docker.published_port(name, container_port) or fallback_port
                console.success(f"{title} container: running")
                console.detail(f"Local URL: http://localhost:{port}")
            else:
                console.warn(f"{title} container: not running")
                healthy = False
    except ExternalToolMissing as err:
        console.error(f"docker: {err}")
        healthy = False

    client = make_ollama(config)
    if client.is_healthy():
        models = client.list_models()
        console.success(f"Ollama: running at {config.ollama_url} ({len(models)} models)")
        for model in models:
            console.detail(model)
    else:
        console.warn(f"Ollama: not reachable at {config.ollama_url}")

    tunnels = make_tunnels(config, make_store(config))
    for target in TARGETS.values():
        status = tunnels.status(target, check_reachable=not args.offline)
        if not status.active:
            console.info(f"ngrok tunnel ({target.name}): not active")
            continue
        console.success(f"ngrok tunnel ({target.name}): active (pid {status.pid})")
        if status.public_url:
            console.detail(f"Public URL: {status.public_url}")
        if status.reachable is False:
            console.warn("   tunnel may not be accessible")
    return 0 if healthy else 1


def stop_tracked_processes(config: StackConfig) -> bool:
    """Stop every tracked process; False when some label could not be handled."""
    store = make_store(config)
    labels = sorted({*store.labels(), *(target.label for target in TARGETS.values())})
    handled = True
    for label in labels:
        try:
            with store.locked(label):
                result = store.stop(label)
        except (MarkerBusy, SignalDenied) as err:
            console.warn(str(err))
            handled = False
            continue
        if result.outcome is not StopOutcome.NOT_TRACKED:
            console.info(result.describe())
    return handled


def run_stop(args: argparse.Namespace) -> int:
    config = build_config(args)
    console.step("Cleaning up...")
    handled = stop_tracked_processes(config)
    docker = make_docker()
    try:
        for name in (config.webui_container, config.searxng_container):
            if docker.stop(name):
                console.info(f"Stopped container {name}")
    except ExternalToolMissing as err:
        console.warn(f"skipping containers: {err}")
    if not handled:
        console.warn("Cleanup incomplete; re-run `stackctl stop` once the processes above are dealt with")
        return 1
    console.success("Cleanup completed")
    return 0


def run_tunnel(args: argparse.Namespace) -> int:
    config = build_config(args)
    target = TARGETS[args.target]
    tunnels = make_tunnels(config, make_store(config))
    port = args.port
    if port is None and target.name == "webui" and args.action in ("start", "restart"):
        port = webui_port_from_docker(config)

    if args.action == "start":
        return start_tunnel(config, tunnels, target, port=port, domain=args.domain, authtoken=args.authtoken)
    if args.action == "stop":
        console.info(tunnels.stop(target).describe())
        return 0
    if args.action == "restart":
        console.info(tunnels.stop(target).describe())
        return start_tunnel(config, tunnels, target, port=port, domain=args.domain, authtoken=args.authtoken)
    if args.action == "status":
        status = tunnels.status(target, check_reachable=True)
        if not status.active:
            console.warn(f"ngrok tunnel ({target.name}): not active")
            return 1
        print_tunnel(f"ngrok tunnel ({target.name}) is running (pid {status.pid})", status.public_url, target, config)
        if status.reachable is False:
            console.warn("Tunnel may not be accessible")
        return 0
    # test
    payload = tunnels.test(target)
    console.success(f"{target.name} is accessible via the ngrok tunnel")
    if payload is not None:
        print(json.dumps(payload, indent=2))
    return 0


def run_reset_db(args: argparse.Namespace) -> int:
    config = build_config(args)
    docker = make_docker()
    docker.require()
    console.step("Resetting Open WebUI database...")
    if docker.stop(config.webui_container):
        console.info("Stopped Open WebUI container")
    console.warn("This will delete all existing users, chats, and settings!")
    if not prompts.confirm("Are you sure you want to reset the database?", assume_yes=args.yes):
        console.info("Database reset cancelled")
        return 0
    docker.reset_webui_database(config.webui_volume)
    console.success("Database reset completed")
    console.info("Restarting Open WebUI...")
    supervisor = make_supervisor(config, force=False)
    use_ollama = make_ollama(config).is_healthy()
    host_network = use_ollama and not detect_platform().is_macos
    setup_webui(config, docker, supervisor, use_ollama=use_ollama, host_network=host_network)
    return 0


def run_check(args: argparse.Namespace) -> int:
    """Report missing external tools; non-zero when a required one is absent."""
    missing = check_dependencies(include_optional=True)
    docker_running = "docker" not in missing and make_docker().is_daemon_running()
    if not missing and docker_running:
        console.success("All dependencies satisfied.")
        return 0
    print("Missing or broken dependencies:")
    for tool, hint in missing.items():
        print(f"  - {tool}: install from {hint}")
    if "docker" not in missing and not docker_running:
        print("  - docker: installed but the daemon is not running")
    required_missing = {"docker", "lsof"} & set(missing)
    return 1 if required_missing or not docker_running else 0


def run_ollama(args: argparse.Namespace) -> int:
    config = build_config(args)
    exposure = make_exposure(config)
    port = config.ollama_port
    if args.action == "expose":
        exposure.require_ollama()
        console.warn("SECURITY CONSIDERATIONS:")
        for line in SECURITY_WARNING:
            console.detail(line)
        if not prompts.confirm("Do you understand the security implications?", assume_yes=args.yes):
            raise OperatorAbort("Configuration cancelled for security reasons")
        open_firewall = args.open_firewall or prompts.confirm(f"Allow Ollama port {port} through the firewall?")
        console.step("Configuring Ollama for external access...")
        status = exposure.expose(open_firewall=open_firewall)
        console.success(f"Ollama is now listening on all interfaces (port {port})")
        if status.lan_url:
            console.detail(f"Local network: {status.lan_url}")
            console.detail(f"Test: curl {status.lan_url}/api/tags")
        if exposure.host.is_macos:
            console.info(f"macOS: allow incoming connections on port {port} in the firewall settings if it is enabled")
        console.detail("Revert with: stackctl ollama revert")
        return 0
    if args.action == "revert":
        console.step("Reverting Ollama to localhost-only access...")
        exposure.revert()
        console.success("Ollama reverted to localhost-only access")
        return 0
    if args.action == "status":
        status = exposure.status()
        if not status.installed:
            console.error("Ollama is not installed")
            return 1
        if not status.local:
            console.warn(f"Ollama is not running on localhost:{port}")
            return 1
        console.success(f"Ollama is running on localhost:{port}")
        if status.external:
            console.success("Ollama is accessible externally")
            console.detail(f"External URL: {status.lan_url}")
        else:
            console.warn("Ollama is localhost-only")
        return 0
    # test
    payload = exposure.test()
    console.success(f"Ollama is accessible from the local network on port {port}")
    print(json.dumps(payload, indent=2))
    return 0


def run_start(args: argparse.Namespace) -> int:
    """Start containers created by `setup`, then the tunnel if ngrok is configured.

    Meant for login or boot hooks; nothing is created or pulled.
    """
    config = build_config(args)
    docker = make_docker()
    console.info("Waiting for Docker to be ready...")
    if not poll_until(docker.is_daemon_running, attempts=config.docker_poll_attempts, interval=config.poll_interval):
        raise ProcessNotResponding(
            "docker", config.docker_poll_attempts, "start Docker Desktop or `sudo systemctl start docker`"
        )
    exit_code = 0
    for name in (config.searxng_container, config.webui_container):
        if not docker.start(name):
            console.warn(f"container {name} does not exist; run `stackctl setup` first")
            exit_code = 1
            continue
        _wait_for_container(docker, name, config)
        console.success(f"Container {name} is running")

    if args.tunnel is not False:
        tunnels = make_tunnels(config, make_store(config))
        try:
            configured = tunnels.is_authenticated()
        except ExternalToolMissing:
            configured = False
        if configured:
            port = webui_port_from_docker(config)
            exit_code = max(exit_code, start_tunnel(config, tunnels, TARGETS["webui"], port=port))
        else:
            console.info("No ngrok configuration found, skipping tunnel setup")
    console.detail(f"Open WebUI: http://localhost:{webui_port_from_docker(config)}")
    console.detail(f"SearXNG: http://localhost:{config.searxng_port}")
    return exit_code


def run_domain(args: argparse.Namespace) -> int:
    if args.action == "nginx-config":
        try:
            text = render_nginx_config(args.domain, args.port, args.target_port)
        except ValueError as err:
            console.error(str(err))
            return 1
        if args.output:
            Path(args.output).write_text(text)
            console.success(f"nginx config written to {args.output}")
            console.detail(f"Install to {nginx_config_path(detect_platform())}, then `sudo nginx -t` and reload nginx")
        else:
            print(text, end="")
        return 0
    if args.action == "ssl":
        host = detect_platform()
        email = args.email or prompts.ask("Contact email for Let's Encrypt")
        try:
            steps = ssl_plan(host, args.domain, email)
        except ValueError as err:
            console.error(str(err))
            return 1
        console.step(f"Setting up SSL certificate for {args.domain} with Let's Encrypt...")
        DependencyInstaller(host).run_steps(steps)
        console.success(f"SSL certificate configured for {args.domain}")
        return 0
    if args.action == "port-check":
        console.step(f"Testing port {args.port} accessibility on {args.domain}...")
        if check_port_access(args.domain, args.port):
            console.success(f"Port {args.port} is accessible on {args.domain}")
            return 0
        console.warn(f"Port {args.port} is not accessible on {args.domain}")
        console.detail(f"Check router port forwarding and the firewall for port {args.port}")
        return 1
    if args.action == "dns-check":
        result = check_dns(args.domain)
        if result.matches:
            console.success(f"DNS correctly points to your public IP: {result.public_ip}")
            return 0
        if result.resolved_ip and result.public_ip:
            console.warn(f"DNS points to {result.resolved_ip} but your public IP is {result.public_ip}")
        else:
            console.error("Could not resolve DNS or determine public IP")
        return 1
    # test
    try:
        payload = fetch_domain_tags(args.domain, args.port)
    except (httpx.HTTPError, ValueError) as err:
        console.error(f"Ollama is not accessible via {args.domain}:{args.port} ({err})")
        console.detail("1. Verify DNS points to your public IP (stackctl domain dns-check)")
        console.detail(f"2. Check router port forwarding for port {args.port}")
        console.detail(f"3. Verify the firewall allows incoming connections on port {args.port}")
        return 1
    console.success(f"Ollama is accessible via {args.domain}:{args.port}")
    print(json.dumps(payload, indent=2))
    return 0


# Parser & main --------------------------------------------------------------


def make_parser() -> argparse.ArgumentParser:
    """Create argparse parser with subcommands and common flags."""
    parser = argparse.ArgumentParser(prog="stackctl", description="Local Open WebUI / SearXNG / Ollama stack manager")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common_arguments(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument("--state-dir", help="Directory for pid markers and tunnel logs (default: cwd).")
        subparser.add_argument("--webui-port", type=port_number, help="Host port for Open WebUI (default 3000).")
        subparser.add_argument("--searxng-port", type=port_number, help="Host port for SearXNG (default 8081).")
        subparser.add_argument("--ngrok-api-port", type=port_number, help="ngrok agent API port (default 4040).")
        subparser.add_argument("--ollama-host", help="Ollama host (default localhost, or $OLLAMA_HOST).")
        subparser.add_argument("--ollama-port", type=port_number, help="Ollama port (default 11434).")
        subparser.add_argument("-y", "--yes", action="store_true", help="Answer yes to confirmation prompts.")

    install_parser = subparsers.add_parser("install-deps", help="Install Docker, ngrok and Ollama only")
    add_common_arguments(install_parser)
    install_parser.add_argument("--skip-system", action="store_true", help="Skip base package installation.")

    setup_parser = subparsers.add_parser("setup", help="Bring up SearXNG and Open WebUI (and optionally ngrok)")
    add_common_arguments(setup_parser)
    setup_parser.add_argument("--force", action="store_true", help="Kill processes holding required ports without asking.")
    setup_parser.add_argument("--tunnel", dest="tunnel", action="store_true", default=None, help="Start the ngrok tunnel.")
    setup_parser.add_argument("--no-tunnel", dest="tunnel", action="store_false", help="Do not start the ngrok tunnel.")
    setup_parser.add_argument("--domain", help="Reserved ngrok domain for the tunnel (paid plan).")

    free_parser = subparsers.add_parser("free-ports", help="Resolve conflicts on every managed port")
    add_common_arguments(free_parser)
    free_parser.add_argument("--force", action="store_true", help="Terminate port owners without asking.")

    status_parser = subparsers.add_parser("status", help="Report service and tunnel status")
    add_common_arguments(status_parser)
    status_parser.add_argument("--offline", action="store_true", help="Skip reachability checks against public tunnel URLs.")

    stop_parser = subparsers.add_parser("stop", aliases=["cleanup"], help="Stop tunnels and containers")
    add_common_arguments(stop_parser)

    tunnel_parser = subparsers.add_parser("tunnel", help="Manage the ngrok tunnel")
    add_common_arguments(tunnel_parser)
    tunnel_parser.add_argument("action", choices=["start", "stop", "status", "test", "restart"])
    tunnel_parser.add_argument("--target", choices=sorted(TARGETS), default="webui", help="Service to expose (default webui).")
    tunnel_parser.add_argument("--port", type=port_number, help="Local port to expose (default: the target's port).")
    tunnel_parser.add_argument("--domain", help="Reserved ngrok domain (paid plan).")
    tunnel_parser.add_argument("--authtoken", help="ngrok authtoken to register if the agent is not authenticated.")

    reset_parser = subparsers.add_parser("reset-db", help="Wipe the Open WebUI database and restart it")
    add_common_arguments(reset_parser)

    check_parser = subparsers.add_parser("check", help="Check external tool dependencies")
    add_common_arguments(check_parser)

    domain_parser = subparsers.add_parser("domain", help="Custom domain helpers for Ollama")
    domain_parser.add_argument("action", choices=["test", "dns-check", "nginx-config", "ssl", "port-check"])
    domain_parser.add_argument("domain", help="Domain name, e.g. chat.example.com")
    domain_parser.add_argument("--port", type=port_number, default=11434, help="Public port (default 11434).")
    domain_parser.add_argument("--target-port", type=port_number, default=11434, help="Local Ollama port for nginx (default 11434).")
    domain_parser.add_argument("--output", help="Write the nginx config here instead of stdout.")
    domain_parser.add_argument("--email", help="Contact email for the Let's Encrypt certificate (ssl).")

    ollama_parser = subparsers.add_parser("ollama", help="Expose Ollama on the network or revert to localhost")
    add_common_arguments(ollama_parser)
    ollama_parser.add_argument("action", choices=["expose", "revert", "status", "test"])
    ollama_parser.add_argument("--open-firewall", action="store_true", help="Allow the Ollama port through ufw or firewalld.")

    start_parser = subparsers.add_parser("start", help="Start existing containers and the tunnel (for boot or login hooks)")
    add_common_arguments(start_parser)
    start_parser.add_argument("--no-tunnel", dest="tunnel", action="store_false", default=None, help="Do not start the ngrok tunnel.")

    return parser


COMMANDS: Dict[str, Callable[[argparse.Namespace], int]] = {
    "install-deps": run_install_deps,
    "setup": run_setup,
    "free-ports": run_free_ports,
    "status": run_status,
    "stop": run_stop,
    "cleanup": run_stop,
    "tunnel": run_tunnel,
    "reset-db": run_reset_db,
    "check": run_check,
    "domain": run_domain,
    "ollama": run_ollama,
    "start": run_start,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point: parse args and dispatch to subcommand handlers."""
    parser = make_parser()
    args = parser.parse_args(argv)
    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except OperatorAbort as err:
        (console.error if err.required else console.info)(str(err))
        return err.exit_code
    except ProcessNotResponding as err:
        console.warn(str(err))
        return err.exit_code
    except StackError as err:
        console.error(str(err))
        return err.exit_code
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
