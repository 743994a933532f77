import logging
import os
import subprocess
from pathlib import Path
from typing import Mapping

import typer
from rich.logging import RichHandler
from rich.table import Table

import cage
from cage import console
from cage_config import ENV_FILE, read_env, write_artifacts
from cage_driver import StepFailed, build_plan, redact, run_command, run_plan, stop_command
from cage_intent import (
    CompileResult,
    PolicyError,
    artifact_source,
    compile_intent,
    defaults_source,
    environment_source,
    is_non_interactive,
    merge_sources,
)

app = typer.Typer(help="Clawbot Cage: OpenClaw + Ollama in a locked-down container topology")

RootOption = typer.Option(Path("."), "--root", help="Project directory holding the compose files")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def resolve_intent(root: Path,
                   environ: Mapping[str, str],
                   non_interactive: bool,
                   collector: cage.Collector | None = None,
                   host: cage.HostInfo | None = None) -> CompileResult:
    """Merge configuration sources once and compile them.

    Non-interactive runs take the defaults table plus environment overrides.
    Interactive runs offer the previous .env projection as question defaults.
    In both cases the previous .env decides whether the token is reused.
    """
    previous = read_env(root / ENV_FILE)
    if non_interactive:
        answers = merge_sources(defaults_source(), environment_source(environ))
    else:
        defaults = merge_sources(defaults_source(), artifact_source(previous))
        collector = collector or cage.Collector()
        answers = collector.collect(host or cage.detect_host(), defaults)
    return compile_intent(answers, previous)


def _compile_or_exit(answers, previous) -> CompileResult:
    try:
        return compile_intent(answers, previous)
    except PolicyError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=2)


def _configure(root: Path, non_interactive: bool, environ: Mapping[str, str]):
    """Shared front half of up/configure. Returns the intent or None if aborted."""
    non_interactive = non_interactive or is_non_interactive(environ)
    if not non_interactive:
        cage.print_banner()

    try:
        result = resolve_intent(root, environ, non_interactive)
    except (PolicyError, cage.TooManyAttempts) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=2)

    if non_interactive:
        for message in result.warnings:
            cage.warn(message)
    elif not cage.confirm_summary(result.intent, result.warnings):
        console.print("Aborted.")
        return None

    paths = write_artifacts(result.intent, root)
    cage.ok(f"Written {paths.env.name} (token: {result.intent.gateway_token[:8]}...)")
    cage.ok(f"Written {paths.config.relative_to(root)}")
    return result.intent


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context,
         verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")):
    """Run the setup wizard and deploy (same as `up`)."""
    setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        up(root=Path("."), non_interactive=False)


@app.command()
def up(root: Path = RootOption,
       non_interactive: bool = typer.Option(False, "--non-interactive", help="Skip the wizard")):
    """Configure, build and start the gateway."""
    root = root.resolve()
    non_interactive = non_interactive or is_non_interactive(os.environ)
    try:
        intent = _configure(root, non_interactive, os.environ)
        if intent is None:
            return
        steps = build_plan(intent, root)
        wait = (lambda message: None) if non_interactive else cage.wait_for_enter
        report = run_plan(steps, root, runner=run_command, confirm=wait, console=console)
    except StepFailed as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=e.returncode)
    except KeyboardInterrupt:
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(code=130)

    for name in report.failed:
        cage.warn(f"Step {name} failed; rerun its command manually")
    cage.print_complete(intent)


@app.command()
def configure(root: Path = RootOption,
              non_interactive: bool = typer.Option(False, "--non-interactive", help="Skip the wizard")):
    """Write .env and config/openclaw.json without starting anything."""
    try:
        _configure(root.resolve(), non_interactive, os.environ)
    except KeyboardInterrupt:
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(code=130)


@app.command()
def plan(root: Path = RootOption):
    """Show the commands `up` would run for the current configuration."""
    root = root.resolve()
    previous = read_env(root / ENV_FILE)
    answers = merge_sources(defaults_source(), artifact_source(previous), environment_source(os.environ))
    result = _compile_or_exit(answers, previous)

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Step", style="white", no_wrap=True)
    table.add_column("Policy", style="dim", no_wrap=True)
    table.add_column("Command", style="white")
    for step in build_plan(result.intent, root):
        command = " ".join(redact(step.command)) if step.command else f"[dim]{step.confirm}[/dim]"
        table.add_row(step.name, step.policy.value, command)
    console.print(table)


@app.command()
def stop(root: Path = RootOption):
    """Stop the stack with the overlays recorded in .env."""
    root = root.resolve()
    previous = read_env(root / ENV_FILE)
    if not previous:
        console.print("[yellow]No .env found. Nothing to stop.[/yellow]")
        raise typer.Exit(code=1)

    answers = merge_sources(defaults_source(), artifact_source(previous))
    intent = _compile_or_exit(answers, previous).intent
    try:
        run_command(stop_command(intent), cwd=root)
    except subprocess.CalledProcessError as e:
        console.print(f"[bold red]Failed to stop the stack: {e}[/bold red]")
        raise typer.Exit(code=e.returncode)
    except FileNotFoundError:
        console.print("[bold red]docker command not found. Is it installed?[/bold red]")
        raise typer.Exit(code=127)
    cage.ok("Stack stopped")


if __name__ == "__main__":
    app()
