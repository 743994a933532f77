#!/usr/bin/env python3
"""
Clawbot Cage Setup Wizard

Asks a short, fixed sequence of questions and turns the answers into a
deployment of OpenClaw + Ollama (local models):

    1. Model            2. Network mode      2b. Web search (internet only)
    3. Channel (internet only)               4. Dashboard access
    5. Platform / GPU

Usage:
    clawbot-cage                 # Interactive wizard, then deploy
    CLAWBOT_NON_INTERACTIVE=1 clawbot-cage
"""

import platform
import shutil
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

import questionary
from questionary import Style
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cage_intent import (
    GATEWAY_PORT,
    MODELS,
    Answers,
    DashboardBind,
    DeploymentIntent,
    NetworkMode,
    Platform,
)

console = Console()

# Questionary style matching Rich aesthetic
STYLE = Style([
    ("qmark", "fg:cyan bold"),
    ("question", "fg:white bold"),
    ("answer", "fg:green bold"),
    ("pointer", "fg:cyan bold"),
    ("highlighted", "fg:cyan bold"),
    ("selected", "fg:green"),
    ("separator", "fg:gray"),
    ("instruction", "fg:gray italic"),
])

MAX_ATTEMPTS = 20

CUSTOM_MODEL = "Other — enter a model name from the Ollama library"


class TooManyAttempts(RuntimeError):
    """Raised when a question receives too many invalid answers in a row."""


# =============================================================================
# Host Detection
# =============================================================================

@dataclass(frozen=True)
class HostInfo:
    macos: bool = False
    nvidia: bool = False


def command_exists(cmd: str) -> bool:
    """Check if a command exists in PATH."""
    return shutil.which(cmd) is not None


def detect_nvidia() -> bool:
    """Check for a usable NVIDIA GPU on Linux."""
    if platform.system() != "Linux":
        return False
    if command_exists("nvidia-smi"):
        try:
            result = subprocess.run(["nvidia-smi"], capture_output=True, timeout=10)
            if result.returncode == 0:
                return True
        except (OSError, subprocess.TimeoutExpired):
            pass
    return Path("/proc/driver/nvidia").is_dir() or Path("/dev/nvidia0").exists()


def detect_host() -> HostInfo:
    if platform.system() == "Darwin":
        return HostInfo(macos=True)
    return HostInfo(nvidia=detect_nvidia())


# =============================================================================
# Questions
# =============================================================================

@dataclass(frozen=True)
class Question:
    """A single-choice question; default is a 1-based option index."""

    key: str
    label: str
    options: tuple
    default: int = 1

    def resolve(self, raw: str) -> str | None:
        """Option for raw input, the default for empty input, else None."""
        choice = raw.strip() or str(self.default)
        if choice.isdigit() and 1 <= int(choice) <= len(self.options):
            return self.options[int(choice) - 1]
        return None


def _index_of(options, predicate, fallback: int = 1) -> int:
    for i, option in enumerate(options, start=1):
        if predicate(option):
            return i
    return fallback


def model_question(defaults: Answers) -> Question:
    options = tuple(m["label"] for m in MODELS) + (CUSTOM_MODEL,)
    default = _index_of(options, lambda o: o.split()[0] == defaults.model)
    return Question("model", "Which model do you want to run?", options, default)


def network_question(defaults: Answers) -> Question:
    options = (
        "Isolated (no internet, dashboard only)",
        "Internet (required for messaging channels)",
    )
    return Question("network_mode", "Network mode?", options,
                    2 if defaults.network_mode == NetworkMode.INTERNET.value else 1)


def web_search_question(defaults: Answers) -> Question:
    options = (
        "No  — Agent cannot search the web (safer)",
        "Yes — Agent can search and fetch URLs",
    )
    return Question("web_search", "Enable web search skills?", options,
                    2 if defaults.web_search else 1)


def channel_question() -> Question:
    options = (
        "Skip — configure channels later",
        "Telegram — requires a bot token from @BotFather",
        "Discord — requires a bot token from Discord Developer Portal",
        "WhatsApp — scans a QR code (no token needed)",
    )
    return Question("channel", "Set up a messaging channel now?", options, 1)


def dashboard_question(defaults: Answers) -> Question:
    options = (
        "Localhost only (127.0.0.1) — only this machine",
        "LAN (0.0.0.0) — accessible from other devices on your network",
    )
    return Question("dashboard_bind", "Bind the dashboard to?", options,
                    2 if defaults.dashboard_bind == DashboardBind.LAN.value else 1)


def platform_question(host: HostInfo) -> Question | None:
    """Platform question for this host, or None when there is nothing to ask."""
    if host.macos:
        options = (
            "Docker (CPU only, slower on Mac)",
            "Native (brew install ollama — uses Metal GPU, much faster)",
        )
        return Question("platform", "How do you want to run Ollama?", options, 2)
    if host.nvidia:
        options = (
            "Yes — use NVIDIA GPU (much faster inference)",
            "No  — CPU only",
        )
        return Question("gpu", "Enable GPU acceleration for Ollama?", options, 1)
    return None


# =============================================================================
# Collector
# =============================================================================

def questionary_input(prompt: str) -> str | None:
    """Default input source: a questionary text prompt."""
    return questionary.text(prompt, style=STYLE, qmark="").ask()


def questionary_secret(prompt: str) -> str | None:
    return questionary.password(prompt, style=STYLE, qmark="").ask()


class Collector:
    """Walks the wizard's question sequence and builds raw Answers.

    The sequence is linear per network mode: the web search and channel
    questions are asked only once the network question resolved to
    internet. Input comes from an injectable source so scenarios can be
    scripted; nothing here touches the filesystem or network.
    """

    def __init__(self,
                 input_source: Callable[[str], str | None] = questionary_input,
                 secret_source: Callable[[str], str | None] | None = None,
                 console: Console = console,
                 max_attempts: int = MAX_ATTEMPTS):
        self.input_source = input_source
        self.secret_source = secret_source or (
            questionary_secret if input_source is questionary_input else input_source
        )
        self.console = console
        self.max_attempts = max_attempts

    def _read(self, source, prompt: str) -> str:
        raw = source(prompt)
        if raw is None:
            raise KeyboardInterrupt
        return raw

    def ask(self, question: Question) -> str:
        self.console.print(f"\n[bold]{question.label}[/bold]")
        for i, option in enumerate(question.options, start=1):
            if i == question.default:
                self.console.print(f"  [green]{i})[/green] {option} [dim](default)[/dim]")
            else:
                self.console.print(f"  {i}) {option}")

        for _ in range(self.max_attempts):
            selected = question.resolve(self._read(self.input_source, f"Choose [{question.default}]:"))
            if selected is not None:
                return selected
            self.console.print(f"  Invalid choice. Enter 1-{len(question.options)}.")
        raise TooManyAttempts(f"No valid answer to {question.label!r} after {self.max_attempts} attempts")

    def collect(self, host: HostInfo, defaults: Answers | None = None) -> Answers:
        defaults = defaults or Answers()
        answers = Answers()

        # 1. Model
        header("1. Model Selection", out=self.console)
        info("The model determines quality, speed, and resource requirements.", out=self.console)
        label = self.ask(model_question(defaults))
        if label == CUSTOM_MODEL:
            label = self._read(self.input_source, "Model name (e.g. phi4:14b):").strip() or defaults.model
        answers = replace(answers, model=label)
        ok(f"Model: {label.split()[0]}", out=self.console)

        # 2. Network
        header("2. Network Mode", out=self.console)
        info("Controls whether the bot can access the internet.", out=self.console)
        info("Agent tool execution stays sandboxed (no network) regardless.", out=self.console)
        choice = self.ask(network_question(defaults))
        network = NetworkMode.ISOLATED if choice.startswith("Isolated") else NetworkMode.INTERNET
        answers = replace(answers, network_mode=network.value)
        ok(f"Network: {network.value}", out=self.console)

        if network is NetworkMode.INTERNET:
            # 2b. Web search
            header("2b. Web Search", out=self.console)
            info("Allow the agent to search the web and fetch URLs.", out=self.console)
            info("This uses the gateway's internet connection (not the sandbox).", out=self.console)
            choice = self.ask(web_search_question(defaults))
            answers = replace(answers, web_search=choice.startswith("Yes"))
            ok(f"Web search: {'true' if answers.web_search else 'false'}", out=self.console)

            # 3. Channels
            header("3. Messaging Channels", out=self.console)
            info("Connect the bot to messaging platforms.", out=self.console)
            info("You can skip this and add channels later.", out=self.console)
            choice = self.ask(channel_question())
            answers = self._collect_channel(answers, choice)

        # 4. Dashboard
        header("4. Dashboard Access", out=self.console)
        info("Who can reach the dashboard and API.", out=self.console)
        choice = self.ask(dashboard_question(defaults))
        bind = DashboardBind.LOOPBACK if choice.startswith("Localhost") else DashboardBind.LAN
        answers = replace(answers, dashboard_bind=bind.value)
        if bind is DashboardBind.LAN:
            warn("LAN mode: ensure your gateway token is strong.", out=self.console)
        ok(f"Bind: {bind.host}", out=self.console)

        # 5. Platform
        header("5. Platform", out=self.console)
        answers = self._collect_platform(answers, host)
        gpu = " + NVIDIA GPU" if answers.gpu else ""
        ok(f"Platform: {answers.platform}{gpu}", out=self.console)
        return answers

    def _collect_channel(self, answers: Answers, choice: str) -> Answers:
        provider = choice.split()[0].lower()
        if provider == "skip":
            ok("Skipping channel setup", out=self.console)
            return replace(answers, channel=None, channel_token="")

        if provider == "whatsapp":
            ok("WhatsApp will show a QR code after setup", out=self.console)
            return replace(answers, channel="whatsapp", channel_token="")

        self.console.print()
        if provider == "telegram":
            self.console.print("  Get a token from [bold]@BotFather[/bold] on Telegram:")
            self.console.print("  1. Open @BotFather → /newbot → follow prompts")
            self.console.print("  2. Copy the bot token")
        else:
            self.console.print("  Get a token from [bold]Discord Developer Portal[/bold]:")
            self.console.print("  1. https://discord.com/developers/applications → New Application")
            self.console.print("  2. Bot → Reset Token → Copy")
            self.console.print("  3. Enable Message Content Intent under Privileged Gateway Intents")
        self.console.print()

        token = self._read(self.secret_source, f"{provider.capitalize()} bot token:").strip()
        if token:
            ok(f"{provider.capitalize()} token saved", out=self.console)
        return replace(answers, channel=provider, channel_token=token)

    def _collect_platform(self, answers: Answers, host: HostInfo) -> Answers:
        question = platform_question(host)
        if host.macos:
            info("Detected macOS.", out=self.console)
            choice = self.ask(question)
            chosen = Platform.MACOS_NATIVE if choice.startswith("Native") else Platform.MACOS_DOCKER
            return replace(answers, platform=chosen.value, gpu=False)
        if host.nvidia:
            info("Detected NVIDIA GPU.", out=self.console)
            choice = self.ask(question)
            return replace(answers, platform=Platform.LINUX_DOCKER.value, gpu=choice.startswith("Yes"))
        info("No NVIDIA GPU detected. Using CPU inference.", out=self.console)
        return replace(answers, platform=Platform.LINUX_DOCKER.value, gpu=False)


# =============================================================================
# UI Components
# =============================================================================

def header(text: str, out: Console | None = None):
    (out or console).print(f"\n[bold cyan]{text}[/bold cyan]")


def info(text: str, out: Console | None = None):
    (out or console).print(f"[dim]{text}[/dim]")


def warn(text: str, out: Console | None = None):
    (out or console).print(f"[yellow]⚠ {text}[/yellow]")


def ok(text: str, out: Console | None = None):
    (out or console).print(f"[green]✓ {text}[/green]")


def print_banner():
    """Print the wizard banner."""
    console.print()
    console.print(Panel.fit(
        "[bold cyan]Clawbot Cage — Setup Wizard[/bold cyan]\n"
        "[dim]OpenClaw + Ollama (local models)[/dim]",
        border_style="cyan",
    ))
    console.print()


def print_summary(intent: DeploymentIntent, warnings=()):
    """Print the compiled configuration as a table."""
    table = Table(
        title="[bold]Summary[/bold]",
        show_header=False,
        box=None,
        padding=(0, 2),
    )
    table.add_column("Setting", style="white")
    table.add_column("Value", style="bold")

    channels = ", ".join(c.provider for c in intent.channels) or "[dim]none[/dim]"
    table.add_row("Model", intent.model_id)
    table.add_row("Network", intent.network_mode.value)
    table.add_row("Web search", "true" if intent.web_search_enabled else "false")
    table.add_row("Channel", channels)
    table.add_row("Dashboard", intent.bind_host)
    table.add_row("GPU", "true" if intent.gpu_enabled else "false")
    table.add_row("Platform", intent.platform.value)

    console.print()
    console.print(table)
    for message in warnings:
        warn(message)
    console.print()


def confirm_summary(intent: DeploymentIntent, warnings=(),
                    input_source: Callable[[str], str | None] = questionary_input) -> bool:
    """Show the summary and ask whether to proceed. Declining returns False."""
    print_summary(intent, warnings)
    reply = input_source("Proceed with this configuration? [Y/n]:")
    if reply is None:
        raise KeyboardInterrupt
    return reply.strip().lower() not in ("n", "no")


def print_complete(intent: DeploymentIntent):
    """Print the post-deploy panel with next steps."""
    console.print()
    console.print(Panel.fit("[bold green]Setup complete![/bold green]", border_style="green"))
    console.print()
    console.print(f"  Dashboard:  [bold]http://localhost:{GATEWAY_PORT}/[/bold]")
    console.print(f"  Network:    [bold]{intent.network_mode.value}[/bold]")
    console.print(f"  Model:      [bold]{intent.model_id}[/bold]")
    if intent.gpu_enabled:
        console.print("  GPU:        [bold]NVIDIA enabled[/bold]")
    if intent.channels:
        console.print(f"  Channels:   [bold]{' '.join(c.provider for c in intent.channels)}[/bold]")

    if not intent.internet:
        console.print()
        info("To enable internet later:")
        info("  docker compose -f docker-compose.yml -f docker-compose.internet.yml up -d openclaw-gateway")

    console.print()
    console.print("  Logs:       docker compose logs -f openclaw-gateway")
    console.print("  Stop:       clawbot-cage stop")
    console.print("  Rerun:      clawbot-cage")
    console.print()


def wait_for_enter(message: str) -> None:
    """Manual barrier used by the driver for externally managed services."""
    questionary.press_any_key_to_continue(message, style=STYLE).unsafe_ask()


if __name__ == "__main__":
    import cage_cli

    cage_cli.app()
