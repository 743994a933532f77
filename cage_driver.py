"""
Orchestration driver.

Maps a DeploymentIntent to an ordered plan of external commands and runs
it. Every step is a barrier; what happens when a step cannot run or fails
is data on the step (FailurePolicy), not control flow in the loop.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from rich.console import Console

from cage_intent import (
    DeploymentIntent,
    DiscordChannel,
    Platform,
    TelegramChannel,
    WhatsAppChannel,
)

logger = logging.getLogger(__name__)

UPSTREAM_REPO = "https://github.com/openclaw/openclaw.git"
UPSTREAM_DIR = Path("openclaw")
SANDBOX_SCRIPT = Path("scripts") / "sandbox-setup.sh"

COMPOSE_BASE = "docker-compose.yml"
COMPOSE_INTERNET = "docker-compose.internet.yml"
COMPOSE_GPU = "docker-compose.gpu.yml"


class FailurePolicy(Enum):
    FATAL = "fatal"
    SKIPPABLE_IF_MISSING = "skippable-if-missing"
    CONTINUE_ON_ERROR = "continue-on-error"


@dataclass(frozen=True)
class Step:
    """One barrier in the deployment plan.

    A step with no command and a confirm message is a manual barrier: the
    operator is asked to confirm before the plan continues.
    """

    name: str
    title: str
    command: tuple = ()
    policy: FailurePolicy = FailurePolicy.FATAL
    cwd: Path | None = None
    requires: Path | None = None
    skip_if_exists: Path | None = None
    confirm: str | None = None


@dataclass
class PlanReport:
    completed: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    failed: list = field(default_factory=list)


class StepFailed(RuntimeError):
    """A fatal step exited non-zero."""

    def __init__(self, step: Step, returncode: int):
        super().__init__(f"{step.title} failed (exit code {returncode})")
        self.step = step
        self.returncode = returncode


# =============================================================================
# Command Builders
# =============================================================================

def overlay_files(intent: DeploymentIntent) -> list[str]:
    """Compose files for the intent, base first."""
    files = [COMPOSE_BASE]
    if intent.internet:
        files.append(COMPOSE_INTERNET)
    if intent.gpu_enabled and intent.platform is Platform.LINUX_DOCKER:
        files.append(COMPOSE_GPU)
    return files


def compose_command(intent: DeploymentIntent) -> list[str]:
    cmd = ["docker", "compose"]
    for f in overlay_files(intent):
        cmd.extend(["-f", f])
    return cmd


def _cli(compose: list[str], *args: str) -> tuple:
    return tuple(compose + ["--profile", "cli", "run", "--rm", "openclaw-cli", *args])


CHANNEL_COMMANDS: dict[type, Callable] = {
    TelegramChannel: lambda c, compose: _cli(
        compose, "channels", "add", "--channel", "telegram", "--token", c.token),
    DiscordChannel: lambda c, compose: _cli(
        compose, "channels", "add", "--channel", "discord", "--token", c.token),
    WhatsAppChannel: lambda c, compose: _cli(compose, "channels", "login"),
}


def channel_command(channel, compose: list[str]) -> tuple:
    """Registration command for a channel.

    Raises:
        TypeError: if the channel is not a known variant
    """
    try:
        builder = CHANNEL_COMMANDS[type(channel)]
    except KeyError:
        raise TypeError(f"No registration command for {channel!r}") from None
    return builder(channel, compose)


def stop_command(intent: DeploymentIntent) -> tuple:
    return tuple(compose_command(intent) + ["down"])


# =============================================================================
# Plan
# =============================================================================

def build_plan(intent: DeploymentIntent, root: Path) -> list[Step]:
    """Ordered deployment steps for an intent, relative to the project root."""
    compose = compose_command(intent)
    upstream = root / UPSTREAM_DIR
    steps = [
        Step(
            name="fetch-source",
            title="Cloning OpenClaw source",
            command=("git", "clone", "--depth", "1", UPSTREAM_REPO, str(upstream)),
            skip_if_exists=upstream,
        ),
        Step(
            name="build-gateway",
            title="Building OpenClaw image",
            command=tuple(compose + ["build", "openclaw-gateway"]),
        ),
        Step(
            name="build-sandbox",
            title="Building sandbox image",
            command=("bash", str(SANDBOX_SCRIPT)),
            policy=FailurePolicy.SKIPPABLE_IF_MISSING,
            cwd=upstream,
            requires=upstream / SANDBOX_SCRIPT,
        ),
    ]

    if intent.platform is Platform.MACOS_NATIVE:
        steps.append(Step(
            name="start-backend",
            title="Native Ollama mode",
            confirm="Ensure Ollama is running (ollama serve), then press Enter",
        ))
        steps.append(Step(
            name="pull-model",
            title=f"Pulling {intent.model_id}",
            command=("ollama", "pull", intent.model_id),
        ))
    else:
        steps.append(Step(
            name="start-backend",
            title="Starting Ollama",
            command=tuple(compose + ["up", "-d", "ollama"]),
        ))
        # ollama-pull runs on its own egress network, even in isolated mode
        steps.append(Step(
            name="pull-model",
            title=f"Pulling {intent.model_id} (this will take a while on first run)",
            command=tuple(compose + ["--profile", "setup", "run", "--rm", "ollama-pull"]),
        ))

    steps.append(Step(
        name="onboard",
        title="Running OpenClaw onboard wizard",
        command=_cli(compose, "onboard", "--no-install-daemon"),
    ))

    for channel in intent.channels:
        steps.append(Step(
            name=f"channel-{channel.provider}",
            title=f"Setting up {channel.title} channel",
            command=channel_command(channel, compose),
            policy=FailurePolicy.CONTINUE_ON_ERROR,
        ))

    steps.append(Step(
        name="start-gateway",
        title="Starting gateway",
        command=tuple(compose + ["up", "-d", "openclaw-gateway"]),
    ))
    return steps


# =============================================================================
# Runner
# =============================================================================

def redact(command: tuple) -> list[str]:
    """Command words with credential values masked, for logging."""
    words = list(command)
    for i, word in enumerate(words[:-1]):
        if word == "--token":
            words[i + 1] = "***"
    return words


def run_command(command: tuple, cwd: Path | None = None):
    """Run a command in the foreground, raising CalledProcessError on failure."""
    return subprocess.run(list(command), cwd=cwd, check=True)


def _press_enter(message: str) -> None:
    input(f"{message}... ")


def _on_failure(step: Step, returncode: int, report: PlanReport, console: Console, cause: Exception):
    """Apply the step's failure policy: record and continue, or raise StepFailed."""
    if step.policy is FailurePolicy.CONTINUE_ON_ERROR:
        console.print(f"[yellow]⚠ {step.title} failed (exit code {returncode}), continuing[/yellow]")
        report.failed.append(step.name)
        return
    raise StepFailed(step, returncode) from cause


def run_plan(plan: list[Step],
             root: Path,
             runner: Callable = run_command,
             confirm: Callable[[str], None] = _press_enter,
             console: Console | None = None) -> PlanReport:
    """Execute a plan step by step.

    Args:
        plan: Steps from build_plan
        root: Working directory for steps without their own cwd
        runner: Callable(command, cwd) that raises CalledProcessError on failure
        confirm: Blocks until the operator acknowledges a manual barrier
        console: Output console

    Returns:
        PlanReport of completed, skipped and failed (non-fatal) steps

    Raises:
        StepFailed: when a FATAL step fails
    """
    console = console or Console()
    report = PlanReport()

    for step in plan:
        if step.skip_if_exists is not None and step.skip_if_exists.exists():
            logger.debug("Skipping %s: %s exists", step.name, step.skip_if_exists)
            report.skipped.append(step.name)
            continue

        if step.requires is not None and not step.requires.exists():
            if step.policy is FailurePolicy.SKIPPABLE_IF_MISSING:
                console.print(f"[dim]{step.title}: skipped ({step.requires.name} not found)[/dim]")
                report.skipped.append(step.name)
                continue
            raise StepFailed(step, 1)

        console.print(f"\n[bold cyan]{step.title}...[/bold cyan]")

        if not step.command:
            if step.confirm:
                confirm(step.confirm)
            report.completed.append(step.name)
            continue

        logger.debug("Running: %s", " ".join(redact(step.command)))
        try:
            runner(step.command, step.cwd or root)
        except subprocess.CalledProcessError as e:
            _on_failure(step, e.returncode, report, console, e)
            continue
        except FileNotFoundError as e:
            console.print(f"[red]✗ Command not found: {step.command[0]}[/red]")
            _on_failure(step, 127, report, console, e)
            continue

        report.completed.append(step.name)

    return report
