# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.cli",
#   "purpose": "Typer CLI: hydrate tools, validate manifests, verify archives, inspect policy.",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "hydrate", "name": "hydrate", "anchor": "function-hydrate", "kind": "function"},
#     {"id": "validate-manifest", "name": "validate_manifest", "anchor": "function-validate-manifest", "kind": "function"},
#     {"id": "verify", "name": "verify", "anchor": "function-verify", "kind": "function"},
#     {"id": "policy", "name": "policy", "anchor": "function-policy", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command-line interface for tool hydration.

Examples:
    $ toolvault hydrate godot@4.3 --manifest ./mirror/manifest.json
    $ toolvault validate-manifest ./stack.json --kind stack
    $ toolvault verify ./godot.zip --sha256 3b5d...
    $ toolvault --config toolvault.yaml policy --url https://mirror.example.org/
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .checksums import sha256_of, verify_sha256
from .errors import ConfigError
from .hydrator import HydrationReport, Hydrator, ToolRequest
from .logging_utils import setup_logging
from .manifest import ManifestKind, parse
from .policy.gates import OfflineGate
from .settings import ToolVaultConfig, load_config

_console = Console()


class CliContext:
    """Per-invocation state shared by commands: config path and verbosity."""

    def __init__(self, config: Optional[Path] = None, verbosity: int = 0) -> None:
        self.config = config
        self.verbosity = verbosity
        self.console = _console

    def load(self) -> ToolVaultConfig:
        """Load configuration, exiting with status 2 on error."""
        try:
            return load_config(self.config)
        except ConfigError as exc:
            self.console.print(f"[red]Configuration error: {exc}[/red]")
            raise typer.Exit(2)

    def log_debug(self, message: str) -> None:
        if self.verbosity >= 2:
            self.console.print(f"[dim]DEBUG: {message}[/dim]")


app = typer.Typer(
    name="toolvault",
    help="ToolVault - hydrate, verify and install offline tool archives",
    no_args_is_help=True,
)

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


@app.callback(invoke_without_command=True)
def main(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="TOOLVAULT_CONFIG",
        help="Path to YAML config file",
    ),
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
    version: bool = typer.Option(False, "--version", "-V", help="Show version and exit"),
) -> None:
    """ToolVault hydration CLI."""
    global _context

    if version:
        typer.echo(f"toolvault {__version__}")
        raise typer.Exit(0)

    _context = CliContext(config=config, verbosity=verbosity)
    _context.log_debug(f"Config file: {config}")


def _apply_options(config: ToolVaultConfig, **overrides: Any) -> ToolVaultConfig:
    updates: Dict[str, Any] = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return config
    return config.model_copy(update={"hydration": config.hydration.model_copy(update=updates)})


def _print_report(console: Console, report: HydrationReport) -> None:
    table = Table(title="Hydration")
    table.add_column("Tool")
    table.add_column("Version")
    table.add_column("Result")
    table.add_column("Reason")
    for outcome in report.outcomes:
        result = "[green]installed[/green]" if outcome.success else "[red]failed[/red]"
        table.add_row(outcome.tool_id, outcome.version, result, outcome.reason)
    console.print(table)
    console.print(f"installed={report.installed_count} failed={report.failed_count}")


@app.command()
def hydrate(
    tools: List[str] = typer.Argument(..., help="Tools to install as TOOL@VERSION"),
    manifest: Optional[str] = typer.Option(None, "--manifest", "-m", help="Manifest path or URL"),
    mirror_root: Optional[Path] = typer.Option(None, "--mirror-root", help="Root for relative archive paths"),
    staging_dir: Optional[Path] = typer.Option(None, "--staging-dir", help="Scratch directory for archives"),
    library_dir: Optional[Path] = typer.Option(None, "--library-dir", help="Installed tool library"),
    kind: ManifestKind = typer.Option(ManifestKind.REPOSITORY, "--kind", help="Manifest flavor"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Install the requested tools from the manifest into the library.

    Exits with status 1 when any tool fails.
    """
    ctx = get_context()
    try:
        requests = [ToolRequest.parse(item) for item in tools]
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="TOOLS") from exc

    config = _apply_options(
        ctx.load(),
        manifest_source=manifest,
        mirror_root=mirror_root,
        staging_dir=staging_dir,
        library_dir=library_dir,
    )
    setup_logging(
        config.logging,
        level="DEBUG" if ctx.verbosity >= 2 else None,
        console=ctx.verbosity > 0,
    )

    hydrator = Hydrator.from_config(config, manifest_kind=kind)
    report = hydrator.hydrate(requests)
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(ctx.console, report)
    if not report.success:
        raise typer.Exit(1)


@app.command("validate-manifest")
def validate_manifest(
    path: Path = typer.Argument(..., help="Manifest JSON file"),
    kind: ManifestKind = typer.Option(ManifestKind.REPOSITORY, "--kind", help="Manifest flavor"),
) -> None:
    """Validate a manifest file and list every schema error."""
    ctx = get_context()
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        ctx.console.print(f"[red]Unable to read {path}: {exc}[/red]")
        raise typer.Exit(2)

    manifest, errors = parse(text, kind)
    if errors:
        for code in errors:
            ctx.console.print(f"[red]✗[/red] {code}")
        raise typer.Exit(1)
    ctx.console.print(f"[green]✓[/green] {manifest.name}: {len(manifest.tools)} tool(s), schema {manifest.schema_version}")


@app.command()
def verify(
    file: Path = typer.Argument(..., help="Archive to hash"),
    sha256: Optional[str] = typer.Option(None, "--sha256", help="Expected digest"),
) -> None:
    """Print the SHA-256 of FILE, or check it against --sha256."""
    ctx = get_context()
    if sha256 is None:
        digest = sha256_of(file)
        if not digest.success:
            ctx.console.print(f"[red]{digest.error_code}: {digest.error}[/red]")
            raise typer.Exit(1)
        typer.echo(f"{digest.digest_hex}  {file}")
        return

    result = verify_sha256(file, sha256)
    if not result.success:
        ctx.console.print(f"[red]{result.error_code}: {result.error}[/red]")
        raise typer.Exit(1)
    ctx.console.print(f"[green]✓[/green] {file} matches {result.actual}")


@app.command()
def policy(
    url: Optional[str] = typer.Option(None, "--url", help="Check whether this URL may be fetched"),
) -> None:
    """Show the effective offline policy and the gate's decision."""
    ctx = get_context()
    config = ctx.load()
    gate = OfflineGate(config.policy)
    decision = gate.guard_url("policy_check", url) if url else gate.guard_network_call("policy_check")

    payload = {
        "offline_mode": config.policy.offline_mode,
        "force_offline": config.policy.force_offline,
        "allowed_hosts": sorted(config.policy.allowed_hosts),
        "allowed_ports": sorted(config.policy.allowed_ports),
        "allowed": decision.allowed,
        "error_code": decision.error_code.value if decision.error_code else None,
        "error_message": decision.error_message,
    }
    typer.echo(json.dumps(payload, indent=2))


__all__ = ["app", "CliContext", "get_context", "main"]
