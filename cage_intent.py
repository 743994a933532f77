"""
Deployment intent and policy compiler.

Turns the wizard's raw answers (or the non-interactive environment seed)
into a validated, immutable DeploymentIntent. Cross-field rules are applied
by normalizing to the safe state rather than failing:

    isolated network  ->  no web search, no channels
    non linux-docker  ->  no GPU
    channel w/o token ->  channel dropped, warning recorded
"""

import logging
import secrets
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Callable, Mapping, Union

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

GATEWAY_PORT = 18789
BRIDGE_PORT = 18790
TOKEN_PLACEHOLDER = "changeme"
TOKEN_ENV_KEY = "OPENCLAW_GATEWAY_TOKEN"

CONTEXT_WINDOW = 32768
MAX_TOKENS = 8192

SANDBOX_IMAGE = "openclaw-sandbox:bookworm-slim"
SANDBOX_USER = "1000:1000"
WORKSPACE_PATH = "~/.openclaw/workspace"

OLLAMA_SERVICE_URL = "http://ollama:11434/v1"
OLLAMA_HOST_URL = "http://host.docker.internal:11434/v1"

NON_INTERACTIVE_ENV = "CLAWBOT_NON_INTERACTIVE"

# Catalog labels: the first token is the model id
MODELS = [
    {
        "id": "qwen2.5-coder:32b",
        "label": "qwen2.5-coder:32b    — Best coding quality (~20GB, needs 32GB+ RAM)",
    },
    {
        "id": "qwen2.5-coder:7b",
        "label": "qwen2.5-coder:7b     — Lightweight coding (~4.5GB, runs on 8GB RAM)",
    },
    {
        "id": "llama3.3:70b",
        "label": "llama3.3:70b          — Strong general model (~40GB, needs 64GB+ RAM)",
    },
    {
        "id": "mistral-small:24b",
        "label": "mistral-small:24b     — Balanced quality/size (~14GB, needs 24GB+ RAM)",
    },
    {
        "id": "deepseek-coder-v2:16b",
        "label": "deepseek-coder-v2:16b — Solid coding model (~9GB, needs 16GB+ RAM)",
    },
]

DEFAULT_MODEL = MODELS[0]["id"]


class PolicyError(ValueError):
    """Raised when answers cannot be compiled into a DeploymentIntent."""


# =============================================================================
# Enumerations
# =============================================================================

class NetworkMode(str, Enum):
    ISOLATED = "isolated"
    INTERNET = "internet"


class DashboardBind(str, Enum):
    LOOPBACK = "loopback"
    LAN = "lan"

    @property
    def host(self) -> str:
        return "127.0.0.1" if self is DashboardBind.LOOPBACK else "0.0.0.0"


class Platform(str, Enum):
    LINUX_DOCKER = "linux-docker"
    MACOS_DOCKER = "macos-docker"
    MACOS_NATIVE = "macos-native"

    @property
    def containerized(self) -> bool:
        return self is not Platform.MACOS_NATIVE


# =============================================================================
# Channels
# =============================================================================

@dataclass(frozen=True)
class TelegramChannel:
    token: str = field(repr=False)
    provider = "telegram"
    title = "Telegram"


@dataclass(frozen=True)
class DiscordChannel:
    token: str = field(repr=False)
    provider = "discord"
    title = "Discord"


@dataclass(frozen=True)
class WhatsAppChannel:
    provider = "whatsapp"
    title = "WhatsApp"


Channel = Union[TelegramChannel, DiscordChannel, WhatsAppChannel]

CHANNEL_PROVIDERS = ("telegram", "discord", "whatsapp")


def make_channel(provider: str, token: str = "") -> Channel:
    """Build the channel variant for a provider name.

    Raises:
        PolicyError: if the provider is unknown
    """
    if provider == "telegram":
        return TelegramChannel(token)
    if provider == "discord":
        return DiscordChannel(token)
    if provider == "whatsapp":
        return WhatsAppChannel()
    raise PolicyError(f"Unknown channel provider: {provider!r}")


# =============================================================================
# Intent
# =============================================================================

@dataclass(frozen=True)
class DeploymentIntent:
    """The compiled, validated record of one provisioning run."""

    model_id: str
    network_mode: NetworkMode
    web_search_enabled: bool
    channels: tuple
    dashboard_bind: DashboardBind
    gateway_token: str = field(repr=False)
    platform: Platform
    gpu_enabled: bool

    @property
    def bind_host(self) -> str:
        return self.dashboard_bind.host

    @property
    def ollama_base_url(self) -> str:
        if self.platform.containerized:
            return OLLAMA_SERVICE_URL
        return OLLAMA_HOST_URL

    @property
    def internet(self) -> bool:
        return self.network_mode is NetworkMode.INTERNET


@dataclass(frozen=True)
class Answers:
    """Raw, uncompiled choices from the wizard or a configuration source."""

    model: str = DEFAULT_MODEL
    network_mode: str = NetworkMode.ISOLATED.value
    web_search: bool = False
    channel: str | None = None
    channel_token: str = field(default="", repr=False)
    dashboard_bind: str = DashboardBind.LOOPBACK.value
    platform: str = Platform.LINUX_DOCKER.value
    gpu: bool = False


@dataclass(frozen=True)
class CompileResult:
    intent: DeploymentIntent
    warnings: tuple = ()


# =============================================================================
# Configuration Sources
# =============================================================================

TRUTHY = ("1", "true", "yes", "on")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUTHY


def defaults_source() -> dict:
    """The documented defaults table."""
    return {f.name: getattr(Answers(), f.name) for f in fields(Answers)}


def artifact_source(env: Mapping[str, str | None]) -> dict:
    """Answers recoverable from a previously written .env projection."""
    source = {}
    if env.get("OLLAMA_MODEL"):
        source["model"] = env["OLLAMA_MODEL"]
    if env.get("NETWORK_MODE"):
        source["network_mode"] = env["NETWORK_MODE"]
    if env.get("OPENCLAW_GATEWAY_BIND"):
        source["dashboard_bind"] = env["OPENCLAW_GATEWAY_BIND"]
    if env.get("ENABLE_GPU"):
        source["gpu"] = _parse_bool(env["ENABLE_GPU"])
    if env.get("CLAWBOT_PLATFORM"):
        source["platform"] = env["CLAWBOT_PLATFORM"]
    return source


def environment_source(environ: Mapping[str, str]) -> dict:
    """Non-interactive overrides taken from an environment mapping."""
    source = {}
    if environ.get("OLLAMA_MODEL"):
        source["model"] = environ["OLLAMA_MODEL"]
    if environ.get("NETWORK_MODE"):
        source["network_mode"] = environ["NETWORK_MODE"]
    if environ.get("ENABLE_SEARCH"):
        source["web_search"] = _parse_bool(environ["ENABLE_SEARCH"])
    if environ.get("ENABLE_GPU"):
        source["gpu"] = _parse_bool(environ["ENABLE_GPU"])
    if environ.get("OPENCLAW_GATEWAY_BIND"):
        source["dashboard_bind"] = environ["OPENCLAW_GATEWAY_BIND"]
    if environ.get("CLAWBOT_PLATFORM"):
        source["platform"] = environ["CLAWBOT_PLATFORM"]
    return source


def merge_sources(*sources: Mapping) -> Answers:
    """Merge sources in priority order (later sources win) into Answers."""
    merged = {}
    known = {f.name for f in fields(Answers)}
    for source in sources:
        for key, value in source.items():
            if key in known and value is not None:
                merged[key] = value
    return replace(Answers(), **merged)


def is_non_interactive(environ: Mapping[str, str]) -> bool:
    return environ.get(NON_INTERACTIVE_ENV, "") == "1"


# =============================================================================
# Compiler
# =============================================================================

def new_token() -> str:
    """Mint a 256-bit gateway token, hex encoded."""
    return secrets.token_hex(32)


def normalize_model_id(label: str) -> str:
    """Reduce a catalog label (or free-form text) to a bare model id."""
    parts = (label or "").split()
    if not parts:
        raise PolicyError("Model id must not be empty")
    return parts[0]


def _enum(enum_cls, value, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise PolicyError(f"Invalid {what}: {value!r} (expected one of {allowed})") from None


def resolve_token(previous_env: Mapping[str, str | None] | None,
                  token_factory: Callable[[], str] = new_token) -> str:
    """Reuse the prior gateway token unless it is missing or the placeholder."""
    previous = (previous_env or {}).get(TOKEN_ENV_KEY) or ""
    previous = previous.strip()
    if previous and previous != TOKEN_PLACEHOLDER:
        logger.debug("Reusing gateway token from existing .env")
        return previous
    logger.debug("Minting a new gateway token")
    return token_factory()


def compile_intent(answers: Answers,
                   previous_env: Mapping[str, str | None] | None = None,
                   token_factory: Callable[[], str] = new_token) -> CompileResult:
    """Compile raw answers into a DeploymentIntent.

    Args:
        answers: Raw choices from the wizard or merged configuration sources
        previous_env: Values of the previously written .env, if any
        token_factory: Source of fresh gateway tokens

    Returns:
        CompileResult with the intent and any recoverable warnings

    Raises:
        PolicyError: on an empty model or an unknown enum value
    """
    warnings = []

    model_id = normalize_model_id(answers.model)
    network_mode = _enum(NetworkMode, answers.network_mode, "network mode")
    dashboard_bind = _enum(DashboardBind, answers.dashboard_bind, "dashboard bind")
    platform = _enum(Platform, answers.platform, "platform")

    web_search = bool(answers.web_search)
    channels = ()

    if network_mode is NetworkMode.INTERNET:
        if answers.channel:
            channel = make_channel(answers.channel, (answers.channel_token or "").strip())
            if isinstance(channel, (TelegramChannel, DiscordChannel)) and not channel.token:
                warnings.append(f"No token provided — skipping {channel.title} setup")
            else:
                channels = (channel,)
    else:
        web_search = False

    gpu = bool(answers.gpu) and platform is Platform.LINUX_DOCKER

    intent = DeploymentIntent(
        model_id=model_id,
        network_mode=network_mode,
        web_search_enabled=web_search,
        channels=channels,
        dashboard_bind=dashboard_bind,
        gateway_token=resolve_token(previous_env, token_factory),
        platform=platform,
        gpu_enabled=gpu,
    )
    return CompileResult(intent=intent, warnings=tuple(warnings))
