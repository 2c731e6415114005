"""Tests for configuration loading."""

import pytest

import chatforge.persistence as persistence
from chatforge.config import load_config
from chatforge.orchestrator import create_orchestrator
from chatforge.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository, get_repository
from chatforge.scrape import get_fanout
from chatforge.transports import InMemoryTransport, get_transport
from chatforge.transports.redis import RedisTransport


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "CHATFORGE_CONFIG",
        "CHATFORGE_DATABASE_URL",
        "DATABASE_URL",
        "CHATFORGE_TRANSPORT",
        "CHATFORGE_MODEL",
        "FIRECRAWL_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CHATFORGE_CONFIG", str(tmp_path / "missing.yaml"))

    config = load_config()

    assert config.transport.backend == "inmemory"
    assert config.scraper.max_concurrency == 8
    assert config.scraper.formats == ["markdown"]
    assert config.retry.max_attempts == 3
    assert config.retry.base_delay == 1.0
    assert config.retry.max_delay == 30.0
    assert config.generation.model == "google-gla:gemini-2.5-flash"
    assert config.database_url is None
    assert config.worker.lease_seconds == 300.0
    assert config.worker.resume_interval == 60.0
    assert config.transport.redis.visibility_timeout == 300.0


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
scraper:
  max_concurrency: 2
  timeout: 5
retry:
  max_attempts: 5
generation:
  model: openai:gpt-4o-mini
"""
    )
    monkeypatch.setenv("CHATFORGE_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.scraper.max_concurrency == 2
    assert config.scraper.timeout == 5
    assert config.retry.max_attempts == 5
    assert config.generation.model == "openai:gpt-4o-mini"


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("CHATFORGE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/x.db")
    monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-123")
    monkeypatch.setenv("CHATFORGE_MODEL", "test")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/x.db"
    assert config.scraper.api_key == "fc-123"
    assert config.generation.model == "test"


def test_invalid_concurrency_rejected(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("scraper:\n  max_concurrency: 0\n")

    with pytest.raises(ValueError):
        load_config(str(config_path))


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
    visibility_timeout: 45
"""
    )
    monkeypatch.setenv("CHATFORGE_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
    assert transport.visibility_timeout == 45


def test_get_transport_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("CHATFORGE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("CHATFORGE_TRANSPORT", "inmemory")

    assert isinstance(get_transport(), InMemoryTransport)
    with pytest.raises(ValueError):
        get_transport("kafka")


def test_get_repository_backends(tmp_path, monkeypatch):
    monkeypatch.setenv("CHATFORGE_CONFIG", str(tmp_path / "missing.yaml"))

    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    repo = get_repository(f"sqlite://{tmp_path / 'runs.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")


def test_get_fanout_reads_scraper_config(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("scraper:\n  max_concurrency: 3\n  timeout: 2.5\n  dedupe: false\n")

    fanout = get_fanout(object(), load_config(str(config_path)))
    assert fanout.max_concurrency == 3
    assert fanout.timeout == 2.5
    assert fanout.dedupe is False


def test_worker_section_reaches_orchestrator(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("worker:\n  lease_seconds: 20\n  resume_interval: 5\n")

    config = load_config(str(config_path))
    orchestrator = create_orchestrator(
        config, repository=InMemoryWorkflowRepository(), scraper=object()
    )
    assert config.worker.resume_interval == 5
    assert orchestrator.lease_seconds == 20


def test_invalid_lease_rejected(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("worker:\n  lease_seconds: 0\n")

    with pytest.raises(ValueError):
        load_config(str(config_path))
