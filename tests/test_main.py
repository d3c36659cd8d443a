"""Tests for the engine entry point helpers."""

import json
import logging
from pathlib import Path

import pytest

from convergence.config import Config, ConfigurationError
from convergence.main import JsonFormatter, build_client, load_provider_factory, main
from provider_mock import MockProviderClient


def not_a_client() -> object:
    return object()


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord("convergence.engine", logging.INFO, __file__, 1, "Created", (), None)
        record.descriptor = "cluster"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Created"
        assert data["level"] == "INFO"
        assert data["logger"] == "convergence.engine"
        assert data["descriptor"] == "cluster"
        assert "lineno" not in data

    def test_non_serializable_values(self) -> None:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "Failed", (), None)
        record.path = Path("/tmp/specs")

        data = json.loads(JsonFormatter().format(record))

        assert data["path"] == "/tmp/specs"


class TestProviderFactory:
    """Tests for load_provider_factory() and build_client()."""

    def test_load(self) -> None:
        assert load_provider_factory("provider_mock:MockProviderClient") is MockProviderClient

    @pytest.mark.parametrize(
        "reference",
        ["provider_mock", "no_such_module:factory", "provider_mock:missing"],
    )
    def test_invalid_reference(self, reference: str) -> None:
        with pytest.raises(ConfigurationError):
            load_provider_factory(reference)

    def test_build_client(self) -> None:
        client = build_client(Config(provider_factory="provider_mock:MockProviderClient"))

        assert isinstance(client, MockProviderClient)

    def test_build_client_requires_factory(self) -> None:
        with pytest.raises(ConfigurationError, match="PROVIDER_CLIENT is required"):
            build_client(Config())

    def test_build_client_rejects_non_client(self) -> None:
        with pytest.raises(ConfigurationError, match="does not implement ProviderClient"):
            build_client(Config(provider_factory="test_main:not_a_client"))


class TestMain:
    """Tests for main() startup failures."""

    @pytest.mark.asyncio
    async def test_missing_specs_dir(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SPECS_DIR", str(tmp_path / "nowhere"))
        monkeypatch.setenv("PROVIDER_CLIENT", "provider_mock:MockProviderClient")

        assert await main() == 1

    @pytest.mark.asyncio
    async def test_invalid_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("POLL_INTERVAL", "0")

        assert await main() == 1
