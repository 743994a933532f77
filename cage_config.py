import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from dotenv import dotenv_values

from cage_intent import (
    BRIDGE_PORT,
    CONTEXT_WINDOW,
    GATEWAY_PORT,
    MAX_TOKENS,
    SANDBOX_IMAGE,
    SANDBOX_USER,
    WORKSPACE_PATH,
    DeploymentIntent,
)

logger = logging.getLogger(__name__)

ENV_FILE = Path(".env")
CONFIG_FILE = Path("config") / "openclaw.json"
WORKSPACE_DIR = Path("workspace")


@dataclass(frozen=True)
class ArtifactPaths:
    env: Path
    config: Path


def read_env(path: Path) -> Dict[str, str | None]:
    if not path.exists():
        return {}
    return dict(dotenv_values(path))


def render_env(intent: DeploymentIntent) -> str:
    lines = [
        f"OPENCLAW_GATEWAY_PORT={GATEWAY_PORT}",
        f"OPENCLAW_BRIDGE_PORT={BRIDGE_PORT}",
        f"OPENCLAW_GATEWAY_BIND={intent.dashboard_bind.value}",
        f"OPENCLAW_BIND_HOST={intent.bind_host}",
        f"OPENCLAW_GATEWAY_TOKEN={intent.gateway_token}",
        f"OLLAMA_MODEL={intent.model_id}",
        f"NETWORK_MODE={intent.network_mode.value}",
        f"ENABLE_GPU={'true' if intent.gpu_enabled else 'false'}",
        f"CLAWBOT_PLATFORM={intent.platform.value}",
    ]
    return "\n".join(lines) + "\n"


def render_config(intent: DeploymentIntent) -> Dict[str, Any]:
    model_ref = f"ollama/{intent.model_id}"

    config: Dict[str, Any] = {
        "gateway": {
            "port": GATEWAY_PORT,
            "bind": intent.dashboard_bind.value,
            "controlUi": {"enabled": True},
        },
    }

    # Empty allow-list denies every bundled skill, web search included
    if not intent.web_search_enabled:
        config["skills"] = {"allowBundled": []}

    config["agents"] = {
        "defaults": {
            "workspace": WORKSPACE_PATH,
            "model": {"primary": model_ref},
            "models": {model_ref: {"alias": "Local Model"}},
            "sandbox": {
                "mode": "non-main",
                "scope": "agent",
                "workspaceAccess": "rw",
                "docker": {
                    "image": SANDBOX_IMAGE,
                    "readOnlyRoot": True,
                    "network": "none",
                    "user": SANDBOX_USER,
                    "capDrop": ["ALL"],
                },
            },
        },
    }

    config["models"] = {
        "mode": "merge",
        "providers": {
            "ollama": {
                "baseUrl": intent.ollama_base_url,
                "apiKey": "ollama",
                "api": "openai-responses",
                "models": [
                    {
                        "id": intent.model_id,
                        "name": intent.model_id,
                        "reasoning": False,
                        "input": ["text"],
                        "cost": {"input": 0, "output": 0, "cacheRead": 0, "cacheWrite": 0},
                        "contextWindow": CONTEXT_WINDOW,
                        "maxTokens": MAX_TOKENS,
                    }
                ],
            }
        },
    }
    return config


def dump_config(intent: DeploymentIntent) -> str:
    return json.dumps(render_config(intent), indent=2, ensure_ascii=False) + "\n"


def _stage(target: Path, content: str) -> Path:
    """Write content to a temporary file next to target and return its path."""
    fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    return Path(tmp)


def write_artifacts(intent: DeploymentIntent, root: Path) -> ArtifactPaths:
    """Write .env and config/openclaw.json under root.

    Both files are rendered to temporaries first, so a rendering or disk
    error leaves the previous artifacts untouched. The .env (which holds
    the token) is swapped in last.
    """
    env_path = root / ENV_FILE
    config_path = root / CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    (root / WORKSPACE_DIR).mkdir(parents=True, exist_ok=True)

    staged = []
    try:
        staged.append((_stage(config_path, dump_config(intent)), config_path))
        staged.append((_stage(env_path, render_env(intent)), env_path))
        for tmp, target in staged:
            os.replace(tmp, target)
            logger.debug("Wrote %s", target)
    finally:
        for tmp, _ in staged:
            if tmp.exists():
                tmp.unlink()

    return ArtifactPaths(env=env_path, config=config_path)

