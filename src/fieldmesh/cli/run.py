"""Command-line tool for executing mesh configuration scripts.

The fieldmesh-run CLI tool executes a mesh script against a fresh
SimulationSession, reports the resulting mesh, launch geometry and buffer
memory, and checks the upload path with one full-field transfer.
"""

import logging
import sys
import warnings
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from fieldmesh.core.errors import DroppedTermsWarning, FieldMeshError, MeshAdvisoryWarning
from fieldmesh.session import SimulationSession
from fieldmesh.transfer.pipeline import TransferConfig

from .executor import ALLOWED_MODULES, RestrictedImportError, execute_mesh_script, validate_mesh_configured
from .report import format_bytes, format_time, measure_upload, print_mesh_info

console = Console()


@click.command()
@click.argument("script", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--device",
    type=click.Choice(["auto", "cuda", "mps", "cpu"]),
    default="auto",
    help="Device for mesh buffers (default: auto-detect)",
)
@click.option("--chunk-size", type=int, default=16, show_default=True, help="Elements per transfer chunk")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output with debug logging")
@click.option("--dry-run", is_flag=True, help="Configure the mesh without running the transfer check")
@click.version_option(version="0.1.0", prog_name="fieldmesh-run")
def main(script: Path, device: str, chunk_size: int, verbose: bool, dry_run: bool):
    """Configure a mesh from a Python script.

    SCRIPT is the path to a Python file that calls the mesh configuration
    functions. They are available without import:

    \b
        SetGridSize(128, 64, 1)
        SetCellSize(4, 4, 2, units="nm")
        SetPBC(0, 0, 0)

    The tool will:
    - Execute the script against a new session
    - Display mesh, launch geometry and buffer memory
    - Upload the primary field once and report throughput
    """
    sys.exit(run_script(script, device, chunk_size, verbose, dry_run))


def run_script(script: Path, device: str, chunk_size: int, verbose: bool, dry_run: bool) -> int:
    """Body of ``fieldmesh-run``; returns the process exit code."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        console.print(f"\n[bold]Mesh script:[/bold] {script.name}", style="blue")
        console.print("─" * 60)

        script_content = script.read_text()
        transfer = TransferConfig(chunk_size=chunk_size)

        with SimulationSession(device=device, transfer=transfer) as session:
            console.print("Configuring mesh...", style="dim")
            try:
                with warnings.catch_warnings(record=True) as caught:
                    warnings.simplefilter("always", MeshAdvisoryWarning)
                    warnings.simplefilter("always", DroppedTermsWarning)
                    execute_mesh_script(script, script_content, session, verbose=verbose)
            except RestrictedImportError as e:
                console.print(f"\n[bold red]Security Error:[/bold red] {e}")
                console.print(
                    "\n[yellow]Mesh scripts can only import:[/yellow] "
                    f"{', '.join(sorted(ALLOWED_MODULES))}"
                )
                return 1
            except SyntaxError as e:
                console.print("\n[bold red]Syntax Error in script:[/bold red]")
                console.print(f"  {e}")
                return 1

            for w in caught:
                console.print(f"[yellow]Warning:[/yellow] {escape(str(w.message))}")

            try:
                validate_mesh_configured(session)
            except ValueError as e:
                console.print(f"\n[bold red]Error:[/bold red] {e}")
                return 1

            print_mesh_info(console, session)

            if dry_run:
                console.print("[yellow]Dry run - transfer check skipped[/yellow]")
                return 0

            chunks, elapsed = measure_upload(session)
            nbytes = session.buffers.m.nbytes

        console.print("─" * 60)
        console.print("✓ [bold green]Mesh configured[/bold green]")
        console.print(f"  Upload: {chunks} chunks, {format_bytes(nbytes)} in {format_time(elapsed)}")
        if elapsed > 0:
            console.print(f"  Throughput: {format_bytes(nbytes / elapsed)}/s")
        return 0

    except FieldMeshError as e:
        console.print(f"\n[bold red]Mesh Error:[/bold red] {e}")
        if verbose:
            console.print_exception()
        return 1
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            console.print_exception()
        return 1


if __name__ == "__main__":
    main()
