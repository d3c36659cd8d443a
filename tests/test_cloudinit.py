"""Tests for cloud-init user-data patching."""

import base64

import pytest

from convergence.allocator import AllocatorRegistry, GlobalAllocationState, Substitution
from convergence.cloudinit import (
    CloudInitPatcher,
    MalformedUserDataError,
    NoCloudConfigError,
    UserDataDecodeError,
    is_cloud_config,
)

DOCUMENT = """#cloud-config
hostname: node
write_files:
  - path: /etc/netplan/50-static.yaml
    content: "address: $ipv4Address/24"
"""


def encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode(text: str) -> str:
    return base64.b64decode(text).decode("utf-8")


class TestIsCloudConfig:
    def test_header(self) -> None:
        assert is_cloud_config("#cloud-config\nhostname: a\n")
        assert is_cloud_config("\n  #cloud-config  \n")

    def test_no_header(self) -> None:
        assert not is_cloud_config("#!/bin/bash\necho hi\n")


class TestCloudInitPatcher:
    """Tests for CloudInitPatcher."""

    def test_empty_input(self) -> None:
        """Test empty user data yields an empty document."""
        patcher = CloudInitPatcher.from_encoded("")

        assert patcher.get("hostname") is None
        assert patcher.render() == "#cloud-config\n{}\n"

    def test_invalid_base64(self) -> None:
        with pytest.raises(UserDataDecodeError):
            CloudInitPatcher.from_encoded("***not base64***")

    def test_missing_header(self) -> None:
        with pytest.raises(NoCloudConfigError):
            CloudInitPatcher.from_encoded(encode("#!/bin/bash\necho hi\n"))

    def test_not_a_mapping(self) -> None:
        with pytest.raises(MalformedUserDataError):
            CloudInitPatcher.from_encoded(encode("#cloud-config\n- a\n- b\n"))

    def test_invalid_yaml(self) -> None:
        with pytest.raises(MalformedUserDataError):
            CloudInitPatcher.from_encoded(encode("#cloud-config\nkey: [unclosed\n"))

    def test_patch_and_render(self) -> None:
        patcher = CloudInitPatcher.from_encoded(encode(DOCUMENT))
        patcher.patch("hostname", "web-0")

        rendered = patcher.render()

        assert rendered.startswith("#cloud-config\n")
        assert "hostname: web-0" in rendered

    def test_environment(self) -> None:
        """Test environment variables are kept under one key."""
        patcher = CloudInitPatcher.from_encoded(encode(DOCUMENT))
        patcher.set_env("ROLE", "primary").set_env("ZONE", "a")

        assert patcher.get_env("ROLE") == "primary"
        assert patcher.get("environment") == {"ROLE": "primary", "ZONE": "a"}
        assert patcher.get_env("MISSING") == ""

    def test_substitutions_applied(self) -> None:
        """Test allocated values replace their keys per replica."""
        state = GlobalAllocationState()
        substitution = Substitution(
            type="ipv4Address",
            key="$ipv4Address",
            unique=True,
            additionalProperties={"cidr": "10.0.0.0/24"},
        )
        registry = AllocatorRegistry.default()

        first = CloudInitPatcher.from_encoded(
            encode(DOCUMENT), "rep-0", [substitution], state, registry
        )
        second = CloudInitPatcher.from_encoded(
            encode(DOCUMENT), "rep-1", [substitution], state, registry
        )

        assert first.get("write_files")[0]["content"] == "address: 10.0.0.1/24"
        assert second.get("write_files")[0]["content"] == "address: 10.0.0.2/24"

    def test_encode_round_trip(self) -> None:
        patcher = CloudInitPatcher.from_encoded(encode(DOCUMENT))

        reparsed = CloudInitPatcher.from_encoded(patcher.encode())

        assert reparsed.get("hostname") == "node"
        assert decode(patcher.encode()) == str(patcher)
