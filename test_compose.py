#!/usr/bin/env python3
"""
Tests for the compose files the driver selects between

Run with: pytest test_compose.py -v
"""

from pathlib import Path

import pytest
import yaml

from cage_driver import COMPOSE_BASE, COMPOSE_GPU, COMPOSE_INTERNET

ROOT = Path(__file__).parent


def load(name):
    with open(ROOT / name) as f:
        return yaml.safe_load(f)


@pytest.fixture(scope="module")
def base():
    return load(COMPOSE_BASE)


class TestBaseTopology:
    """The base file has no outbound route except the model download."""

    def test_internal_network_has_no_route_out(self, base):
        assert base["networks"]["internal"]["internal"] is True

    def test_dashboard_network_publishes_without_egress(self, base):
        """Ports need a non-internal network; masquerading off keeps it closed."""
        dashboard = base["networks"]["dashboard"]
        assert not dashboard.get("internal", False)
        assert dashboard["driver_opts"]["com.docker.network.bridge.enable_ip_masquerade"] == "false"

    def test_gateway_reachable_but_isolated(self, base):
        gateway = base["services"]["openclaw-gateway"]
        assert sorted(gateway["networks"]) == ["dashboard", "internal"]
        assert any(p.endswith(":18789") for p in gateway["ports"])

    def test_ollama_server_stays_internal(self, base):
        assert base["services"]["ollama"]["networks"] == ["internal"]

    def test_cli_stays_internal(self, base):
        assert base["services"]["openclaw-cli"]["networks"] == ["internal"]


class TestModelDownload:
    """ollama-pull downloads with its own server on the egress network."""

    @pytest.fixture
    def pull(self, base):
        return base["services"]["ollama-pull"]

    def test_only_on_egress(self, pull):
        assert pull["networks"] == ["egress"]

    def test_does_not_delegate_to_internal_server(self, pull):
        assert "ollama:11434" not in str(pull.get("environment", {}))
        assert "depends_on" not in pull

    def test_serves_then_pulls(self, pull):
        script = pull["entrypoint"][-1]
        assert script.index("ollama serve") < script.index("ollama pull")
        assert "$$OLLAMA_MODEL" in script

    def test_shares_model_volume(self, base, pull):
        assert pull["volumes"] == base["services"]["ollama"]["volumes"]

    def test_setup_profile_only(self, pull):
        assert pull["profiles"] == ["setup"]


class TestOverlays:
    """Overlays add egress or GPU without touching anything else."""

    def test_internet_overlay(self, base):
        services = load(COMPOSE_INTERNET)["services"]
        assert set(services) == {"openclaw-gateway", "openclaw-cli"}
        assert "egress" in services["openclaw-gateway"]["networks"]
        assert "egress" in services["openclaw-cli"]["networks"]
        # Keeps the base attachments, dashboard included
        base_gateway = base["services"]["openclaw-gateway"]["networks"]
        assert set(base_gateway) <= set(services["openclaw-gateway"]["networks"])

    def test_gpu_overlay(self):
        services = load(COMPOSE_GPU)["services"]
        assert set(services) == {"ollama"}
        devices = services["ollama"]["deploy"]["resources"]["reservations"]["devices"]
        assert devices[0]["driver"] == "nvidia"
