import argparse
import signal
from unittest import mock

import pytest

from localai_stack import cli
from localai_stack.deps import HostPlatform
from localai_stack.domain import DnsCheck
from localai_stack.errors import ExternalToolMissing, OperatorAbort, ProcessNotResponding, StackError
from localai_stack.exposure import ExposureStatus
from localai_stack.markers import UNKNOWN_START_TIME, ProcessMarkerStore
from localai_stack.ports import ConflictResolver


@pytest.fixture
def ports(monkeypatch, stub_inspector):
    """Route port checks through a stub inspector; returns (install, send_signal)."""
    send_signal = mock.Mock()
    state = {}

    def install(busy=None, answers=None):
        inspector = stub_inspector(busy)
        state["inspector"] = inspector
        monkeypatch.setattr(cli, "make_inspector", lambda config: inspector)
        monkeypatch.setattr(
            cli,
            "make_resolver",
            lambda config, insp: ConflictResolver(insp, grace_interval=0, send_signal=send_signal, sleep=lambda s: None),
        )
        replies = list(answers or [])
        monkeypatch.setattr(cli.prompts, "conflict_prompt", lambda: (lambda binding, inspection: replies.pop(0)))
        return inspector

    return install, send_signal


@pytest.fixture
def docker(monkeypatch):
    fake = mock.Mock()
    fake.wait_until_running.return_value = True
    fake.ensure_volume.return_value = False
    fake.is_running.return_value = True
    fake.published_port.return_value = None
    fake.stop.return_value = False
    monkeypatch.setattr(cli, "make_docker", lambda: fake)
    return fake


def _store_factory(monkeypatch, start_times, send_signal):
    def make_store(config):
        return ProcessMarkerStore(config.state_dir, start_time=lambda pid: start_times.get(pid), send_signal=send_signal)

    monkeypatch.setattr(cli, "make_store", make_store)


def test_parser_subcommands():
    parser = cli.make_parser()

    args = parser.parse_args(["tunnel", "start", "--target", "ollama", "--domain", "chat.example.com"])
    assert (args.command, args.action, args.target, args.domain) == ("tunnel", "start", "ollama", "chat.example.com")

    args = parser.parse_args(["cleanup", "--state-dir", "/tmp/stack"])
    assert args.command == "cleanup"
    assert cli.COMMANDS[args.command] is cli.run_stop

    args = parser.parse_args(["setup", "--no-tunnel", "--webui-port", "3100"])
    assert args.tunnel is False
    assert args.webui_port == 3100

    with pytest.raises(SystemExit):
        parser.parse_args(["tunnel", "launch"])


def test_build_config_applies_flags(tmp_path, monkeypatch):
    monkeypatch.setenv("STACK_WEBUI_PORT", "3500")
    args = cli.make_parser().parse_args(["status", "--searxng-port", "9000", "--state-dir", str(tmp_path)])

    config = cli.build_config(args)

    assert config.webui_port == 3500
    assert config.searxng_port == 9000
    assert config.state_dir == tmp_path


@pytest.mark.parametrize(
    "error, expected",
    [
        (StackError("docker exploded"), 1),
        (OperatorAbort("cancelled", required=False), 0),
        (OperatorAbort("webui: aborted", required=True), 1),
        (ProcessNotResponding("ngrok", 10, "check ngrok.log"), 1),
        (KeyboardInterrupt(), 130),
    ],
)
def test_main_maps_errors_to_exit_codes(monkeypatch, capsys, error, expected):
    monkeypatch.setitem(cli.COMMANDS, "status", mock.Mock(side_effect=error))

    assert cli.main(["status"]) == expected


def test_main_reports_stack_errors_on_stderr(monkeypatch, capsys):
    monkeypatch.setitem(cli.COMMANDS, "check", mock.Mock(side_effect=StackError("docker not found.")))

    cli.main(["check"])

    assert "[ERROR] docker not found." in capsys.readouterr().err


def test_free_ports_force_kills_owner(ports, tmp_path, capsys):
    install, send_signal = ports
    install({3000: [[4242], []]})

    code = cli.main(["free-ports", "--force", "--state-dir", str(tmp_path)])

    assert code == 0
    send_signal.assert_called_once_with(4242, signal.SIGTERM)
    out = capsys.readouterr().out
    assert "webui: port 3000 is now free" in out
    assert "searxng: port 8081 is available" in out
    assert "ngrok-api: port 4040 is available" in out


def test_free_ports_reports_unkillable_owner(ports, tmp_path, capsys):
    install, send_signal = ports
    send_signal.side_effect = PermissionError
    install({4040: [[77]]})

    assert cli.main(["free-ports", "--force", "--state-dir", str(tmp_path)]) == 1
    assert "permission denied for pid 77" in capsys.readouterr().err


def test_free_ports_relocation_suggests_flag(ports, tmp_path, capsys):
    install, send_signal = ports
    install({8081: [[90]]}, answers=["2"])

    assert cli.main(["free-ports", "--state-dir", str(tmp_path)]) == 0
    send_signal.assert_not_called()
    out = capsys.readouterr().out
    assert "next free port is 8082" in out
    assert "--searxng-port 8082" in out


def test_free_ports_invalid_choice_exits_nonzero(ports, tmp_path):
    install, _ = ports
    install({3000: [[4242]]}, answers=["maybe"])

    assert cli.main(["free-ports", "--state-dir", str(tmp_path)]) == 1


def test_free_ports_abort_choice_skips_port(ports, tmp_path, capsys):
    install, send_signal = ports
    install({3000: [[4242]]}, answers=["3"])

    assert cli.main(["free-ports", "--state-dir", str(tmp_path)]) == 0
    send_signal.assert_not_called()
    assert "Skipping port 3000" in capsys.readouterr().out


def test_setup_relocates_searxng_and_wires_webui(ports, docker, monkeypatch, tmp_path):
    install, _ = ports
    install({8081: [[90]]}, answers=["2"])
    ollama = mock.Mock()
    ollama.is_healthy.return_value = False
    monkeypatch.setattr(cli, "make_ollama", lambda config: ollama)
    monkeypatch.setattr(cli.shutil, "which", lambda name: None)

    code = cli.main(["setup", "--no-tunnel", "--state-dir", str(tmp_path)])

    assert code == 0
    docker.require.assert_called_once()
    docker.remove.assert_any_call("searxng")
    docker.remove.assert_any_call("open-webui")
    searxng, webui = [call.args[0] for call in docker.run.call_args_list]
    assert searxng.ports == {8082: 8080}
    assert webui.ports == {3000: 8080}
    assert webui.env["SEARXNG_QUERY_URL"] == "http://host.docker.internal:8082/search?q={query}"
    assert "OLLAMA_BASE_URL" not in webui.env


def test_setup_abort_stops_before_webui(ports, docker, tmp_path):
    install, _ = ports
    install({8081: [[90]]}, answers=["3"])

    assert cli.main(["setup", "--no-tunnel", "--state-dir", str(tmp_path)]) == 1
    docker.run.assert_not_called()


def test_setup_container_never_starts(ports, docker, tmp_path, capsys):
    install, _ = ports
    install()
    docker.wait_until_running.return_value = False
    docker.logs.return_value = "searxng: bad settings.yml"

    assert cli.main(["setup", "--no-tunnel", "--state-dir", str(tmp_path)]) == 1
    err = capsys.readouterr().err
    assert "bad settings.yml" in err
    assert "docker logs searxng" in err


def test_stop_clears_tracked_processes(docker, monkeypatch, tmp_path, capsys):
    send_signal = mock.Mock()
    _store_factory(monkeypatch, {1111: 5.0}, send_signal)
    (tmp_path / ".ngrok_pid").write_text("1111\n5.0\n")
    (tmp_path / ".ollama_ngrok_pid").write_text("2222\n")
    docker.stop.side_effect = lambda name: name == "open-webui"

    assert cli.main(["stop", "--state-dir", str(tmp_path)]) == 0

    send_signal.assert_called_once_with(1111, signal.SIGTERM)
    assert not (tmp_path / ".ngrok_pid").exists()
    assert not (tmp_path / ".ollama_ngrok_pid").exists()
    out = capsys.readouterr().out
    assert "Stopped container open-webui" in out
    assert "ollama_ngrok: was already stopped" in out


def test_status_healthy_stack(docker, monkeypatch, tmp_path, capsys):
    docker.published_port.side_effect = lambda name, port: 3000 if name == "open-webui" else 8081
    ollama = mock.Mock()
    ollama.is_healthy.return_value = True
    ollama.list_models.return_value = ["llama3:latest"]
    monkeypatch.setattr(cli, "make_ollama", lambda config: ollama)
    _store_factory(monkeypatch, {}, mock.Mock())

    assert cli.main(["status", "--offline", "--state-dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "http://localhost:3000" in out
    assert "(1 models)" in out
    assert "ngrok tunnel (webui): not active" in out


def test_status_with_stopped_container(docker, monkeypatch, tmp_path):
    docker.is_running.side_effect = lambda name: name == "searxng"
    ollama = mock.Mock()
    ollama.is_healthy.return_value = False
    monkeypatch.setattr(cli, "make_ollama", lambda config: ollama)
    _store_factory(monkeypatch, {}, mock.Mock())

    assert cli.main(["status", "--offline", "--state-dir", str(tmp_path)]) == 1


def test_tunnel_status_when_inactive(monkeypatch, tmp_path, capsys):
    _store_factory(monkeypatch, {}, mock.Mock())
    (tmp_path / ".ngrok_pid").write_text("3333\n")

    assert cli.main(["tunnel", "status", "--state-dir", str(tmp_path)]) == 1
    assert "not active" in capsys.readouterr().err
    assert not (tmp_path / ".ngrok_pid").exists()


def test_tunnel_start_reports_missing_url_as_warning(monkeypatch, tmp_path, capsys):
    tunnels = mock.Mock()
    tunnels.is_authenticated.return_value = True
    tunnels.start.side_effect = ProcessNotResponding("ngrok", 10, "it may still be starting")
    monkeypatch.setattr(cli, "make_tunnels", lambda config, store: tunnels)

    code = cli.main(["tunnel", "start", "--port", "3000", "--state-dir", str(tmp_path)])

    assert code == 1
    tunnels.start.assert_called_once_with(cli.TARGETS["webui"], port=3000, domain=None)
    err = capsys.readouterr().err
    assert "[WARN] Failed to get ngrok public URL" in err


def test_tunnel_start_for_ollama_requires_running_ollama(monkeypatch, tmp_path):
    tunnels = mock.Mock()
    tunnels.is_authenticated.return_value = True
    ollama = mock.Mock()
    ollama.is_healthy.return_value = False
    monkeypatch.setattr(cli, "make_tunnels", lambda config, store: tunnels)
    monkeypatch.setattr(cli, "make_ollama", lambda config: ollama)

    assert cli.main(["tunnel", "start", "--target", "ollama", "--state-dir", str(tmp_path)]) == 1
    tunnels.start.assert_not_called()


def test_tunnel_start_registers_authtoken(monkeypatch, tmp_path):
    tunnels = mock.Mock()
    tunnels.is_authenticated.return_value = False
    tunnels.start.return_value = mock.Mock(pid=42, public_url="https://abc.ngrok.app")
    monkeypatch.setattr(cli, "make_tunnels", lambda config, store: tunnels)

    code = cli.main(["tunnel", "start", "--port", "3000", "--authtoken", "tok_1", "--state-dir", str(tmp_path)])

    assert code == 0
    tunnels.add_authtoken.assert_called_once_with("tok_1")


def test_reset_db_cancelled(docker, monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(cli.prompts, "confirm", lambda question, assume_yes=False: False)

    assert cli.main(["reset-db", "--state-dir", str(tmp_path)]) == 0
    docker.reset_webui_database.assert_not_called()
    assert "cancelled" in capsys.readouterr().out


def test_check_reports_missing_tools(docker, monkeypatch, capsys):
    monkeypatch.setattr(cli, "check_dependencies", lambda include_optional=True: {"ngrok": "https://ngrok.com/download"})
    docker.is_daemon_running.return_value = True

    assert cli.main(["check"]) == 0
    assert "ngrok: install from https://ngrok.com/download" in capsys.readouterr().out

    monkeypatch.setattr(cli, "check_dependencies", lambda include_optional=True: {"lsof": "your system package manager"})
    assert cli.main(["check"]) == 1


def test_domain_nginx_config_to_file(tmp_path):
    target = tmp_path / "ollama.conf"

    assert cli.main(["domain", "nginx-config", "chat.example.com", "--port", "8080", "--output", str(target)]) == 0
    assert "server_name chat.example.com;" in target.read_text()


def test_domain_dns_check(monkeypatch, capsys):
    monkeypatch.setattr(cli, "check_dns", lambda domain: DnsCheck(domain, "198.51.100.1", "203.0.113.7"))
    assert cli.main(["domain", "dns-check", "chat.example.com"]) == 1
    assert "your public IP is 203.0.113.7" in capsys.readouterr().err

    monkeypatch.setattr(cli, "check_dns", lambda domain: DnsCheck(domain, "203.0.113.7", "203.0.113.7"))
    assert cli.main(["domain", "dns-check", "chat.example.com"]) == 0


def test_out_of_range_port_flag_is_a_usage_error(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["free-ports", "--force", "--webui-port", "70000"])

    assert excinfo.value.code == 2
    assert "port must be between 1 and 65535" in capsys.readouterr().err


def test_port_number_type():
    assert cli.port_number("3000") == 3000
    with pytest.raises(argparse.ArgumentTypeError):
        cli.port_number("abc")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.port_number("0")


def test_bad_port_in_environment_is_reported(monkeypatch, capsys):
    monkeypatch.setenv("STACK_WEBUI_PORT", "abc")

    assert cli.main(["status"]) == 1
    assert "[ERROR] STACK_WEBUI_PORT must be an integer, got 'abc'" in capsys.readouterr().err


def test_domain_nginx_config_rejects_bad_domain(capsys):
    assert cli.main(["domain", "nginx-config", "bad domain"]) == 1
    assert "invalid domain: 'bad domain'" in capsys.readouterr().err


def test_tunnel_stop_then_status_reports_not_active(monkeypatch, tmp_path, capsys):
    send_signal = mock.Mock()
    _store_factory(monkeypatch, {7777: 5.0}, send_signal)
    (tmp_path / ".ngrok_pid").write_text("7777\n5.0\n")

    assert cli.main(["tunnel", "stop", "--state-dir", str(tmp_path)]) == 0
    assert "ngrok: sent SIGTERM to pid 7777" in capsys.readouterr().out

    assert cli.main(["tunnel", "status", "--state-dir", str(tmp_path)]) == 1
    assert "ngrok tunnel (webui): not active" in capsys.readouterr().err
    send_signal.assert_called_once_with(7777, signal.SIGTERM)


def test_tunnel_stop_for_process_of_another_user(monkeypatch, tmp_path, capsys):
    _store_factory(monkeypatch, {7777: UNKNOWN_START_TIME}, mock.Mock(side_effect=PermissionError))
    (tmp_path / ".ngrok_pid").write_text("7777\n")

    assert cli.main(["tunnel", "stop", "--state-dir", str(tmp_path)]) == 1
    assert "sudo kill 7777" in capsys.readouterr().err
    assert (tmp_path / ".ngrok_pid").exists()


def test_stop_continues_past_busy_marker(docker, monkeypatch, tmp_path, capsys):
    _store_factory(monkeypatch, {}, mock.Mock())
    (tmp_path / ".ngrok_pid").write_text("1111\n")
    (tmp_path / ".ollama_ngrok_pid").write_text("2222\n")
    docker.stop.return_value = True

    with ProcessMarkerStore(tmp_path).locked("ngrok"):
        code = cli.main(["stop", "--state-dir", str(tmp_path)])

    assert code == 1
    assert [c.args[0] for c in docker.stop.call_args_list] == ["open-webui", "searxng"]
    assert (tmp_path / ".ngrok_pid").exists()
    assert not (tmp_path / ".ollama_ngrok_pid").exists()
    err = capsys.readouterr().err
    assert "managing 'ngrok'" in err
    assert "Cleanup incomplete" in err


@pytest.fixture
def exposure(monkeypatch):
    fake = mock.Mock()
    fake.host = HostPlatform("linux", "ubuntu")
    fake.expose.return_value = ExposureStatus(True, True, True, "http://192.168.1.20:11434")
    monkeypatch.setattr(cli, "make_exposure", lambda config: fake)
    return fake


def test_ollama_expose_declined(exposure, monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(cli.prompts, "confirm", lambda question, assume_yes=False: assume_yes)

    assert cli.main(["ollama", "expose", "--state-dir", str(tmp_path)]) == 1
    exposure.expose.assert_not_called()
    assert "cancelled for security reasons" in capsys.readouterr().err


def test_ollama_expose_with_firewall(exposure, monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(cli.prompts, "confirm", lambda question, assume_yes=False: assume_yes)

    assert cli.main(["ollama", "expose", "-y", "--open-firewall", "--state-dir", str(tmp_path)]) == 0
    exposure.expose.assert_called_once_with(open_firewall=True)
    assert "curl http://192.168.1.20:11434/api/tags" in capsys.readouterr().out


def test_ollama_status_localhost_only(exposure, tmp_path, capsys):
    exposure.status.return_value = ExposureStatus(True, True, False)

    assert cli.main(["ollama", "status", "--state-dir", str(tmp_path)]) == 0
    assert "Ollama is localhost-only" in capsys.readouterr().err

    exposure.status.return_value = ExposureStatus(False, False, False)
    assert cli.main(["ollama", "status", "--state-dir", str(tmp_path)]) == 1


def test_ollama_revert(exposure, tmp_path):
    assert cli.main(["ollama", "revert", "--state-dir", str(tmp_path)]) == 0
    exposure.revert.assert_called_once_with()


def test_domain_ssl_runs_certbot(monkeypatch, capsys):
    installer = mock.Mock()
    monkeypatch.setattr(cli, "detect_platform", lambda: HostPlatform("macos", "macos"))
    monkeypatch.setattr(cli, "DependencyInstaller", lambda host: installer)

    assert cli.main(["domain", "ssl", "chat.example.com", "--email", "ops@example.com"]) == 0
    steps = installer.run_steps.call_args.args[0]
    assert "--email ops@example.com" in str(steps[-1])

    assert cli.main(["domain", "ssl", "chat.example.com", "--email", "nobody"]) == 1


def test_domain_port_check(monkeypatch, capsys):
    monkeypatch.setattr(cli, "check_port_access", lambda domain, port: False)

    assert cli.main(["domain", "port-check", "chat.example.com", "--port", "8443"]) == 1
    assert "Port 8443 is not accessible on chat.example.com" in capsys.readouterr().err

    monkeypatch.setattr(cli, "check_port_access", lambda domain, port: True)
    assert cli.main(["domain", "port-check", "chat.example.com"]) == 0


def test_start_brings_up_existing_containers(docker, monkeypatch, tmp_path, capsys):
    docker.is_daemon_running.return_value = True
    docker.start.side_effect = lambda name: name == "searxng"
    tunnels = mock.Mock()
    tunnels.is_authenticated.side_effect = ExternalToolMissing("ngrok")
    monkeypatch.setattr(cli, "make_tunnels", lambda config, store: tunnels)

    assert cli.main(["start", "--state-dir", str(tmp_path)]) == 1
    tunnels.start.assert_not_called()
    captured = capsys.readouterr()
    assert "Container searxng is running" in captured.out
    assert "container open-webui does not exist" in captured.err
    assert "skipping tunnel setup" in captured.out


def test_start_waits_for_docker(docker, monkeypatch, tmp_path):
    docker.is_daemon_running.return_value = False
    monkeypatch.setattr(cli, "poll_until", lambda check, attempts, interval: check())

    assert cli.main(["start", "--state-dir", str(tmp_path)]) == 1
    docker.start.assert_not_called()
