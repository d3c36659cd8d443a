"""Tests for descriptor spec loading."""

from pathlib import Path

import pytest

from convergence.config import MAX_SPEC_FILE_SIZE_BYTES
from convergence.models import ResourceKind
from convergence.spec_loader import (
    SpecLoadError,
    build_store,
    load_file,
    load_specs,
    parse_descriptors,
)

FLAT = """
name: data-0
labels:
  web-dv-ri: "0"
spec:
  kind: Volume
  datacenterId: dc-1
  size: 10
"""

KUBERNETES_STYLE = """
apiVersion: convergence/v1
kind: Server
metadata:
  name: web-0
  labels:
    web-server-ri: "0"
spec:
  datacenterId: dc-1
  cores: 2
  ram: 2048
status:
  externalId: srv-0
"""


class TestParseDescriptors:
    """Tests for parse_descriptors()."""

    def test_flat_form(self) -> None:
        [descriptor] = parse_descriptors(FLAT)

        assert descriptor.name == "data-0"
        assert descriptor.kind == ResourceKind.VOLUME
        assert descriptor.labels == {"web-dv-ri": "0"}

    def test_kubernetes_style(self) -> None:
        """Test apiVersion/kind/metadata documents are flattened."""
        [descriptor] = parse_descriptors(KUBERNETES_STYLE)

        assert descriptor.name == "web-0"
        assert descriptor.kind == ResourceKind.SERVER
        assert descriptor.external_id == "srv-0"
        assert descriptor.desired.cores == 2

    def test_multiple_documents(self) -> None:
        descriptors = parse_descriptors(FLAT + "\n---\n" + KUBERNETES_STYLE + "\n---\n")

        assert [d.name for d in descriptors] == ["data-0", "web-0"]

    def test_invalid_yaml(self) -> None:
        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            parse_descriptors("name: [unclosed")

    def test_not_a_mapping(self) -> None:
        with pytest.raises(SpecLoadError, match="must be a YAML mapping"):
            parse_descriptors("- a\n- b\n")

    def test_validation_error_names_field(self) -> None:
        """Test validation errors point at the offending field."""
        content = "name: web-0\nspec:\n  kind: Server\n  datacenterId: dc-1\n  cores: 1\n  ram: 1000\n"

        with pytest.raises(SpecLoadError) as exc_info:
            parse_descriptors(content, "server.yaml")

        message = str(exc_info.value)
        assert "server.yaml (document 0)" in message
        assert "ram" in message

    def test_unknown_kind(self) -> None:
        with pytest.raises(SpecLoadError):
            parse_descriptors("name: x\nspec:\n  kind: Teapot\n")


class TestLoading:
    """Tests for file and directory loading."""

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="not found"):
            load_file(tmp_path / "missing.yaml")

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = tmp_path / "big.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="maximum size"):
            load_file(path)

    def test_load_directory(self, tmp_path: Path) -> None:
        """Test every YAML file in a directory is loaded."""
        (tmp_path / "a.yaml").write_text(FLAT)
        (tmp_path / "b.yml").write_text(KUBERNETES_STYLE)
        (tmp_path / "notes.txt").write_text("ignored")

        store = load_specs(tmp_path)

        assert len(store) == 2
        assert "data-0" in store
        assert [d.name for d in store.by_kind(ResourceKind.SERVER)] == ["web-0"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="Specs directory not found"):
            load_specs(tmp_path / "nowhere")

    def test_duplicate_names(self, tmp_path: Path) -> None:
        (tmp_path / "a.yaml").write_text(FLAT)
        (tmp_path / "b.yaml").write_text(FLAT)

        with pytest.raises(SpecLoadError, match="Duplicate descriptor name"):
            load_specs([tmp_path / "a.yaml", tmp_path / "b.yaml"])

    def test_build_store(self) -> None:
        store = build_store(parse_descriptors(FLAT))

        assert store["data-0"].desired.size == 10
