#!/usr/bin/env python3
"""
Tests for cage.py - setup wizard questions and answer collection

Run with: pytest test_cage.py -v
"""

import io
import subprocess
from unittest.mock import MagicMock, patch

import pytest
from rich.console import Console

import cage
from cage import Collector, HostInfo, Question
from cage_intent import Answers, compile_intent


class Script:
    """Scripted input source that records every prompt it answers."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        return self.replies.pop(0)

    @property
    def choices(self):
        return [p for p in self.prompts if p.startswith("Choose")]


@pytest.fixture(autouse=True)
def quiet():
    with patch.object(cage.console, "print"):
        yield


def collect(*replies, host=HostInfo(), defaults=None, max_attempts=cage.MAX_ATTEMPTS):
    script = Script(*replies)
    answers = Collector(input_source=script, max_attempts=max_attempts).collect(host, defaults)
    return answers, script


class TestQuestion:
    """Tests for Question.resolve."""

    question = Question("q", "Pick one", ("a", "b", "c"), default=2)

    def test_index(self):
        assert self.question.resolve("3") == "c"

    def test_empty_uses_default(self):
        assert self.question.resolve("") == "b"
        assert self.question.resolve("   ") == "b"

    @pytest.mark.parametrize("raw", ["0", "4", "-1", "b", "1.5", "two"])
    def test_invalid(self, raw):
        assert self.question.resolve(raw) is None


class TestQuestionDefaults:
    """Question defaults follow the previous run's choices."""

    def test_model_default_from_previous(self):
        question = cage.model_question(Answers(model="llama3.3:70b"))
        assert question.options[question.default - 1].startswith("llama3.3:70b")

    def test_unknown_previous_model_falls_back(self):
        assert cage.model_question(Answers(model="phi4:14b")).default == 1

    def test_network_default_from_previous(self):
        assert cage.network_question(Answers(network_mode="internet")).default == 2
        assert cage.network_question(Answers()).default == 1

    def test_dashboard_default_from_previous(self):
        assert cage.dashboard_question(Answers(dashboard_bind="lan")).default == 2

    def test_no_platform_question_without_gpu(self):
        assert cage.platform_question(HostInfo()) is None
        assert cage.platform_question(HostInfo(macos=True)).default == 2
        assert cage.platform_question(HostInfo(nvidia=True)).default == 1


class TestCollectorPaths:
    """The question sequence has one linear path per network mode."""

    def test_isolated_path(self):
        """Isolated on a GPU host: model, network, dashboard, platform."""
        answers, script = collect("", "", "", "", host=HostInfo(nvidia=True))
        assert len(script.choices) == 4
        assert answers.model.startswith("qwen2.5-coder:32b")
        assert answers.network_mode == "isolated"
        assert answers.web_search is False
        assert answers.channel is None
        assert answers.dashboard_bind == "loopback"
        assert answers.gpu is True

    def test_internet_path(self):
        """Internet adds the web search and channel questions."""
        answers, script = collect("", "2", "1", "1", "", "", host=HostInfo(nvidia=True))
        assert len(script.choices) == 6
        assert answers.network_mode == "internet"
        assert answers.channel is None

    def test_cpu_linux_asks_no_platform_question(self):
        answers, script = collect("", "", "")
        assert len(script.choices) == 3
        assert answers.platform == "linux-docker"
        assert answers.gpu is False

    def test_telegram_scenario(self):
        """Internet, web search, telegram with a token."""
        answers, script = collect("3", "2", "2", "2", "abc123", "1")
        assert "Telegram bot token:" in script.prompts
        result = compile_intent(answers, token_factory=lambda: "0" * 64)
        intent = result.intent
        assert intent.model_id == "llama3.3:70b"
        assert intent.web_search_enabled is True
        assert [c.provider for c in intent.channels] == ["telegram"]
        assert intent.channels[0].token == "abc123"

    def test_discord_without_token(self):
        answers, _ = collect("", "2", "", "3", "", "")
        assert answers.channel == "discord"
        result = compile_intent(answers, token_factory=lambda: "0" * 64)
        assert result.intent.channels == ()
        assert "Discord" in result.warnings[0]

    def test_whatsapp_asks_no_token(self):
        answers, script = collect("", "2", "", "4", "")
        assert answers.channel == "whatsapp"
        assert not any("token" in p for p in script.prompts)

    def test_lan_bind(self):
        answers, _ = collect("", "", "2")
        assert answers.dashboard_bind == "lan"

    def test_macos_native(self):
        answers, _ = collect("", "", "", "", host=HostInfo(macos=True))
        assert answers.platform == "macos-native"
        assert answers.gpu is False

    def test_macos_docker(self):
        answers, _ = collect("", "", "", "1", host=HostInfo(macos=True))
        assert answers.platform == "macos-docker"

    def test_custom_model(self):
        custom = str(len(cage.MODELS) + 1)
        answers, _ = collect(custom, "phi4:14b", "", "")
        assert answers.model == "phi4:14b"

    def test_custom_model_empty_falls_back(self):
        custom = str(len(cage.MODELS) + 1)
        answers, _ = collect(custom, "", "", "", defaults=Answers(model="mistral-small:24b"))
        assert answers.model == "mistral-small:24b"

    def test_previous_defaults_are_offered(self):
        """Empty answers pick the previous run's choices."""
        previous = Answers(model="deepseek-coder-v2:16b", dashboard_bind="lan")
        answers, _ = collect("", "", "", defaults=previous)
        assert answers.model.startswith("deepseek-coder-v2:16b")
        assert answers.dashboard_bind == "lan"


class TestCollectorInput:
    """Tests for invalid input handling."""

    def test_reprompts_on_invalid_input(self):
        answers, script = collect("x", "9", "2", "", "")
        assert answers.model.startswith("qwen2.5-coder:7b")
        assert len(script.choices) == 5

    def test_bounded_attempts(self):
        with pytest.raises(cage.TooManyAttempts):
            collect("x", "y", "z", max_attempts=3)

    def test_cancelled_input(self):
        """A None reply (Ctrl-C in questionary) cancels the wizard."""
        with pytest.raises(KeyboardInterrupt):
            collect(None)

    def test_injected_console_gets_all_output(self):
        """Section headers and status lines go to the collector's console."""
        out = io.StringIO()
        script = Script("", "", "2")
        collector = Collector(input_source=script, console=Console(file=out, width=200))
        collector.collect(HostInfo())
        text = out.getvalue()
        assert "1. Model Selection" in text
        assert "LAN mode" in text
        assert "Platform: linux-docker" in text
        cage.console.print.assert_not_called()

    def test_secret_source_used_for_tokens(self):
        secret = MagicMock(return_value="s3cret")
        script = Script("", "2", "", "2", "")
        answers = Collector(input_source=script, secret_source=secret).collect(HostInfo())
        secret.assert_called_once()
        assert answers.channel_token == "s3cret"


class TestConfirmSummary:
    """Tests for the pre-flight summary."""

    intent = compile_intent(Answers(), token_factory=lambda: "0" * 64).intent

    @pytest.mark.parametrize("reply", ["", "y", "Y", "yes"])
    def test_proceed(self, reply):
        assert cage.confirm_summary(self.intent, input_source=lambda p: reply) is True

    @pytest.mark.parametrize("reply", ["n", "N", "no"])
    def test_decline(self, reply):
        assert cage.confirm_summary(self.intent, input_source=lambda p: reply) is False

    def test_cancel(self):
        with pytest.raises(KeyboardInterrupt):
            cage.confirm_summary(self.intent, input_source=lambda p: None)


class TestDetectNvidia:
    """Tests for GPU detection."""

    def test_not_linux(self):
        with patch("platform.system", return_value="Darwin"):
            assert cage.detect_nvidia() is False

    def test_nvidia_smi_works(self):
        with patch("platform.system", return_value="Linux"), \
                patch.object(cage, "command_exists", return_value=True), \
                patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            assert cage.detect_nvidia() is True

    def test_nvidia_smi_timeout_falls_back_to_devices(self):
        with patch("platform.system", return_value="Linux"), \
                patch.object(cage, "command_exists", return_value=True), \
                patch("subprocess.run", side_effect=subprocess.TimeoutExpired("nvidia-smi", 10)), \
                patch("pathlib.Path.is_dir", return_value=False), \
                patch("pathlib.Path.exists", return_value=False):
            assert cage.detect_nvidia() is False

    def test_device_node(self):
        with patch("platform.system", return_value="Linux"), \
                patch.object(cage, "command_exists", return_value=False), \
                patch("pathlib.Path.is_dir", return_value=False), \
                patch("pathlib.Path.exists", return_value=True):
            assert cage.detect_nvidia() is True

    def test_detect_host_macos(self):
        with patch("platform.system", return_value="Darwin"):
            assert cage.detect_host() == HostInfo(macos=True)
