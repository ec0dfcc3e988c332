# tests/unit/test_config_loader.py

from __future__ import annotations
from pathlib import Path
import pytest
from textwrap import dedent

import conftest  # noqa: F401  (puts src on sys.path)
from llmrepl.config_loader import load_config, ConfigError


def write_yaml(p: Path, text: str) -> Path:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(dedent(text).lstrip("\n").rstrip() + "\n", encoding="utf-8")
    return p


def test_load_config_ok(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "config" / "default.yaml",
        """
        session: { provider: OLLAMA, model: "llama3:latest", render_mode: LIVE }
        providers:
          Ollama: { base_url: "http://localhost:11434/" }
          echo:
        runtime: { stream: true }
        """,
    )
    data = load_config(cfg)
    assert data["session"]["provider"] == "ollama"   # normalised
    assert data["session"]["render_mode"] == "live"  # normalised
    assert set(data["providers"]) == {"ollama", "echo"}
    assert data["providers"]["echo"] == {}           # bare entry means defaults
    # loader leaves values as provided (bootstrap resolves them)
    assert data["providers"]["ollama"]["base_url"] == "http://localhost:11434/"


def test_load_config_missing_key(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "config" / "default.yaml",
        """
        session: { model: llama3 }         # missing provider
        providers: { ollama: {} }
        runtime: { stream: true }
        """,
    )
    with pytest.raises(ConfigError):
        load_config(cfg)


def test_load_config_type_error(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "config" / "default.yaml",
        """
        session: { provider: ollama, model: llama3 }
        providers: { ollama: {} }
        runtime: { stream: "yes" }   # wrong type
        """,
    )
    with pytest.raises(ConfigError):
        load_config(cfg)


@pytest.mark.parametrize(
    "body",
    [
        # unknown provider name
        "session: { provider: ollama, model: m }\nproviders: { ollama: {}, claude: {} }\nruntime: { stream: true }",
        # selected provider not configured
        "session: { provider: groq, model: m }\nproviders: { ollama: {} }\nruntime: { stream: true }",
        # no providers at all
        "session: { provider: ollama, model: m }\nproviders: {}\nruntime: { stream: true }",
        # bad theme
        "session: { provider: ollama, model: m, theme: neon }\nproviders: { ollama: {} }\nruntime: { stream: true }",
        # negative retries
        "session: { provider: ollama, model: m }\nproviders: { ollama: {} }\nruntime: { stream: true, retries: -1 }",
    ],
)
def test_load_config_rejects(tmp_path: Path, body: str):
    cfg = write_yaml(tmp_path / "config" / "default.yaml", body)
    with pytest.raises(ConfigError):
        load_config(cfg)


def test_load_config_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_shipped_default_config_loads():
    data = load_config(Path(__file__).resolve().parents[2] / "config" / "default.yaml")
    assert data["session"]["provider"] in data["providers"]
