from pathlib import Path

import pytest

from localai_stack.config import NGROK_API, SEARXNG, WEBUI, StackConfig
from localai_stack.errors import ConfigError, StackError


def test_defaults():
    config = StackConfig()

    assert config.webui_port == 3000
    assert config.searxng_port == 8081
    assert config.port_for(NGROK_API) == 4040
    assert config.ollama_url == "http://localhost:11434"
    assert config.ngrok_api_url == "http://localhost:4040/api/tunnels"


def test_environment_overrides(tmp_path):
    config = StackConfig.from_env(
        {
            "STACK_WEBUI_PORT": "3100",
            "STACK_SEARXNG_PORT": "8181",
            "NGROK_API_PORT": "4141",
            "STACK_STATE_DIR": str(tmp_path),
        }
    )

    assert config.webui_port == 3100
    assert config.searxng_port == 8181
    assert config.ngrok_api_url == "http://localhost:4141/api/tunnels"
    assert config.state_dir == tmp_path


def test_invalid_environment_value():
    with pytest.raises(ConfigError, match="STACK_WEBUI_PORT") as excinfo:
        StackConfig.from_env({"STACK_WEBUI_PORT": "three thousand"})
    assert isinstance(excinfo.value, StackError)
    assert excinfo.value.exit_code == 1


def test_environment_port_out_of_range():
    with pytest.raises(ConfigError, match="OLLAMA_PORT"):
        StackConfig.from_env({"OLLAMA_PORT": "70000"})


def test_invalid_environment_interval():
    with pytest.raises(ConfigError, match="STACK_POLL_INTERVAL"):
        StackConfig.from_env({"STACK_POLL_INTERVAL": "soon"})


def test_override_ignores_unset_flags():
    config = StackConfig().override(webui_port=None, searxng_port=9000, state_dir="~/stack")

    assert config.webui_port == 3000
    assert config.searxng_port == 9000
    assert config.state_dir == Path("~/stack").expanduser()


def test_with_port_returns_new_config():
    config = StackConfig()

    moved = config.with_port(WEBUI, 3002)

    assert moved.webui_port == 3002
    assert config.webui_port == 3000
    assert moved.port_for(SEARXNG) == 8081


@pytest.mark.parametrize(
    "host, expected",
    [
        ("localhost", "http://localhost:11434"),
        ("10.0.0.5:9999", "http://10.0.0.5:9999"),
        ("https://ollama.example.com/", "https://ollama.example.com"),
    ],
)
def test_ollama_url_accepts_ollama_host_forms(host, expected):
    assert StackConfig(ollama_host=host).ollama_url == expected
