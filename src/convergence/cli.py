"""Convergence CLI (cvg).

Offline tooling around descriptor specs. Nothing here talks to a provider
except `run`, which starts the engine.

Usage:
    cvg validate specs/            # Load and validate descriptors
    cvg order specs/               # Print reconcile order
    cvg allocate --cidr 10.0.0.0/24 rep-0 rep-1
    cvg render-userdata specs/ data-volume-0
    cvg run --specs-dir specs/     # Start the engine
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click
import yaml

from .adapters import REPLICA_IDENTIFIER_LABEL
from .allocator import (
    AllocationError,
    AllocatorRegistry,
    GlobalAllocationState,
    Substitution,
    build_state,
)
from .cloudinit import CloudInitPatcher, UserDataError
from .dependency import CyclicDependencyError, DependencyGraph
from .models import DescriptorStore, ResourceKind, VolumeSpec
from .spec_loader import SpecLoadError, load_specs

VERSION = "0.1.0"


def _load(paths: tuple[str, ...]) -> DescriptorStore:
    if not paths:
        raise click.UsageError("at least one spec file or directory is required")
    files: list[Path] = []
    try:
        for raw in paths:
            path = Path(raw)
            if path.is_dir():
                files.extend(sorted(p for p in path.iterdir() if p.suffix in (".yaml", ".yml")))
            else:
                files.append(path)
        return load_specs(files)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def _load_state(path: Path | None) -> GlobalAllocationState:
    if path is None or not path.exists():
        return GlobalAllocationState()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise click.ClickException(f"cannot read allocation state {path}: {e}") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"allocation state must be a mapping: {path}")
    return GlobalAllocationState.from_dict(data)


def _save_state(path: Path | None, state: GlobalAllocationState) -> None:
    if path is None:
        return
    path.write_text(yaml.safe_dump(state.to_dict(), sort_keys=True), encoding="utf-8")


# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="cvg")
def cli() -> None:
    """Convergence CLI (cvg).

    Validate descriptor specs, inspect reconcile order, allocate
    per-replica values and render cloud-init user data.

    \b
    Quick Start:
        cvg validate specs/
        cvg order specs/
    """
    pass


# =============================================================================
# Spec Commands
# =============================================================================


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True))
def validate(paths: tuple[str, ...]) -> None:
    """Load and validate descriptor specs."""
    store = _load(paths)
    try:
        DependencyGraph.from_descriptors(store).validate()
    except CyclicDependencyError as e:
        raise click.ClickException(str(e)) from e

    counts: dict[str, int] = {}
    for descriptor in store:
        counts[descriptor.kind.value] = counts.get(descriptor.kind.value, 0) + 1
    click.secho(f"✓ {len(store)} descriptors valid", fg="green")
    for kind, count in sorted(counts.items()):
        click.echo(f"  {kind}: {count}")


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True))
@click.option("--deletion", is_flag=True, help="Print teardown order instead")
def order(paths: tuple[str, ...], deletion: bool) -> None:
    """Print descriptors in reconcile order, parents first."""
    store = _load(paths)
    graph = DependencyGraph.from_descriptors(store)
    try:
        names = graph.deletion_order() if deletion else graph.topological_sort()
    except CyclicDependencyError as e:
        raise click.ClickException(str(e)) from e
    for name in names:
        click.echo(f"{name}\t{store[name].kind.value}")


# =============================================================================
# Allocation Commands
# =============================================================================


@cli.command()
@click.argument("identifiers", nargs=-1, required=True)
@click.option("--cidr", required=True, help="Network to allocate addresses from")
@click.option("--key", default="$ipAddress", show_default=True, help="Substitution key")
@click.option(
    "--type",
    "substitution_type",
    type=click.Choice(["ipv4Address", "ipv6Address"]),
    default="ipv4Address",
    show_default=True,
)
@click.option("--unique/--no-unique", default=True, show_default=True)
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML file persisting allocations between invocations",
)
def allocate(
    identifiers: tuple[str, ...],
    cidr: str,
    key: str,
    substitution_type: str,
    unique: bool,
    state_file: Path | None,
) -> None:
    """Allocate one value per replica identifier.

    \b
    Examples:
        cvg allocate --cidr 10.0.0.0/24 rep-0 rep-1 rep-2
        cvg allocate --cidr fc00:1::/64 --type ipv6Address rep-0
    """
    state = _load_state(state_file)
    substitution = Substitution(
        type=substitution_type,
        key=key,
        unique=unique,
        additional_properties={"cidr": cidr},
    )
    registry = AllocatorRegistry.default()
    try:
        for identifier in identifiers:
            build_state(identifier, [substitution], state, registry)
    except AllocationError as e:
        raise click.ClickException(str(e)) from e

    for identifier in identifiers:
        click.echo(f"{identifier}\t{state.get(identifier, key)}")
    _save_state(state_file, state)


@cli.command("render-userdata")
@click.argument("spec_path", type=click.Path(exists=True))
@click.argument("descriptor_name")
@click.option("--identifier", help="Replica identifier (default: replica label or name)")
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML file persisting allocations between invocations",
)
def render_userdata(
    spec_path: str,
    descriptor_name: str,
    identifier: str | None,
    state_file: Path | None,
) -> None:
    """Print the cloud-init document a Volume descriptor would be created with."""
    store = _load((spec_path,))
    descriptor = store.get(descriptor_name)
    if descriptor is None:
        raise click.ClickException(f"descriptor not found: {descriptor_name}")
    if descriptor.kind != ResourceKind.VOLUME:
        raise click.ClickException(f"{descriptor_name} is a {descriptor.kind.value}, not a Volume")

    spec: VolumeSpec = descriptor.desired
    if not spec.user_data:
        raise click.ClickException(f"{descriptor_name} has no userData")

    state = _load_state(state_file)
    try:
        patcher = CloudInitPatcher.from_encoded(
            spec.user_data,
            identifier=identifier or descriptor.labels.get(REPLICA_IDENTIFIER_LABEL, descriptor.name),
            substitutions=spec.substitutions,
            state=state,
            registry=AllocatorRegistry.default(),
        )
    except (UserDataError, AllocationError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(patcher.render(), nl=False)
    _save_state(state_file, state)


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@click.option(
    "--specs-dir", type=click.Path(exists=True, file_okay=False), default="./specs",
    help="Specs directory",
)
@click.option("--provider", envvar="PROVIDER_CLIENT", help="Provider factory as module:callable")
@click.option("--interval", type=int, help="Seconds between reconcile ticks")
@click.option("--unique-names/--no-unique-names", default=None, help="Adopt existing resources by name")
def run(
    specs_dir: str,
    provider: str | None,
    interval: int | None,
    unique_names: bool | None,
) -> None:
    """Run the engine against a specs directory.

    \b
    Examples:
        cvg run --specs-dir specs/ --provider mycloud.sdk:client
    """
    from .main import main as engine_main

    if not provider:
        raise click.ClickException(
            "Provider factory required. Set PROVIDER_CLIENT or use --provider."
        )

    os.environ["SPECS_DIR"] = str(Path(specs_dir).resolve())
    os.environ["PROVIDER_CLIENT"] = provider
    if interval is not None:
        os.environ["POLL_INTERVAL"] = str(interval)
    if unique_names is not None:
        os.environ["UNIQUE_NAMES"] = "true" if unique_names else "false"

    click.echo(f"Running engine against {specs_dir}...")
    raise SystemExit(asyncio.run(engine_main()))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
