"""Tests for the cvg command line."""

import base64
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from convergence.cli import cli

SPECS = """
name: cluster
spec:
  kind: K8sCluster
  name: cluster
---
name: pool
spec:
  kind: K8sNodePool
  name: pool
  clusterRef: cluster
  datacenterId: dc-1
  nodeCount: 1
  coresCount: 2
  ramSize: 4096
  storageSize: 20
"""

USER_DATA = "#cloud-config\nhostname: $ipAddress\n"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def specs(tmp_path: Path) -> Path:
    path = tmp_path / "specs.yaml"
    path.write_text(SPECS)
    return path


@pytest.fixture
def volume_spec(tmp_path: Path) -> Path:
    document = {
        "name": "data-0",
        "labels": {"convergence/replica": "rep-0"},
        "spec": {
            "kind": "Volume",
            "datacenterId": "dc-1",
            "size": 10,
            "userData": base64.b64encode(USER_DATA.encode()).decode(),
            "substitutions": [
                {
                    "type": "ipv4Address",
                    "key": "$ipAddress",
                    "unique": True,
                    "additionalProperties": {"cidr": "10.0.0.0/24"},
                }
            ],
        },
    }
    path = tmp_path / "volume.yaml"
    path.write_text(yaml.safe_dump(document))
    return path


class TestValidate:
    """Tests for the validate command."""

    def test_valid(self, runner: CliRunner, specs: Path) -> None:
        result = runner.invoke(cli, ["validate", str(specs)])

        assert result.exit_code == 0
        assert "2 descriptors valid" in result.output
        assert "K8sNodePool: 1" in result.output

    def test_directory(self, runner: CliRunner, specs: Path) -> None:
        result = runner.invoke(cli, ["validate", str(specs.parent)])

        assert result.exit_code == 0

    def test_invalid(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("name: x\nspec:\n  kind: Teapot\n")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "Validation failed" in result.output

    def test_no_paths(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["validate"])

        assert result.exit_code == 2


class TestOrder:
    """Tests for the order command."""

    def test_parents_first(self, runner: CliRunner, specs: Path) -> None:
        result = runner.invoke(cli, ["order", str(specs)])

        assert result.exit_code == 0
        assert result.output.splitlines() == ["cluster\tK8sCluster", "pool\tK8sNodePool"]

    def test_deletion(self, runner: CliRunner, specs: Path) -> None:
        result = runner.invoke(cli, ["order", "--deletion", str(specs)])

        assert result.output.splitlines()[0] == "pool\tK8sNodePool"


class TestAllocate:
    """Tests for the allocate command."""

    def test_allocate(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["allocate", "--cidr", "10.0.0.0/24", "rep-0", "rep-1"])

        assert result.exit_code == 0
        assert result.output.splitlines() == ["rep-0\t10.0.0.1", "rep-1\t10.0.0.2"]

    def test_state_file_persists(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test allocations survive between invocations."""
        state_file = tmp_path / "state.yaml"
        runner.invoke(
            cli, ["allocate", "--cidr", "10.0.0.0/24", "--state-file", str(state_file), "rep-0"]
        )

        result = runner.invoke(
            cli,
            ["allocate", "--cidr", "10.0.0.0/24", "--state-file", str(state_file), "rep-1", "rep-0"],
        )

        assert result.output.splitlines() == ["rep-1\t10.0.0.2", "rep-0\t10.0.0.1"]

    def test_exhausted(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, ["allocate", "--cidr", "192.168.0.0/30", "a", "b", "c", "d"]
        )

        assert result.exit_code == 1
        assert "Error" in result.output


class TestRenderUserdata:
    """Tests for the render-userdata command."""

    def test_render(self, runner: CliRunner, volume_spec: Path) -> None:
        result = runner.invoke(cli, ["render-userdata", str(volume_spec), "data-0"])

        assert result.exit_code == 0
        assert result.output.startswith("#cloud-config\n")
        assert "hostname: 10.0.0.1" in result.output

    def test_identifier_override(self, runner: CliRunner, tmp_path: Path, volume_spec: Path) -> None:
        state_file = tmp_path / "state.yaml"
        state_file.write_text(yaml.safe_dump({"rep-0": [{"key": "$ipAddress", "value": "10.0.0.1"}]}))

        result = runner.invoke(
            cli,
            [
                "render-userdata",
                str(volume_spec),
                "data-0",
                "--identifier",
                "rep-7",
                "--state-file",
                str(state_file),
            ],
        )

        assert "hostname: 10.0.0.2" in result.output

    def test_not_a_volume(self, runner: CliRunner, specs: Path) -> None:
        result = runner.invoke(cli, ["render-userdata", str(specs), "cluster"])

        assert result.exit_code == 1
        assert "not a Volume" in result.output

    def test_unknown_descriptor(self, runner: CliRunner, specs: Path) -> None:
        result = runner.invoke(cli, ["render-userdata", str(specs), "nothing"])

        assert result.exit_code == 1
        assert "descriptor not found" in result.output


class TestRun:
    """Tests for the run command."""

    def test_requires_provider(
        self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("PROVIDER_CLIENT", raising=False)

        result = runner.invoke(cli, ["run", "--specs-dir", str(tmp_path)])

        assert result.exit_code == 1
        assert "Provider factory required" in result.output
