"""
Unit tests for request orchestration.

Uses a stub provider client with a real cache and ledger in a temporary
directory.
"""

import os
import shutil
import tempfile
from unittest.mock import Mock

import pytest

from llmsh.config.loader import parse_settings
from llmsh.core.errors import ProviderError, StorageError, ValidationError
from llmsh.core.filter import REDACTED
from llmsh.core.orchestrator import CommandOrchestrator, CommandRequest
from llmsh.core.token_counter import TokenUsage
from llmsh.llm.client import LLMResult
from llmsh.storage.cache import open_cache
from llmsh.storage.ledger import UsageLedger


class StubClient:
    """Records prompts and answers with a fixed command."""

    def __init__(self, command: str = 'git commit -m "update"', error: Exception = None):
        self.command = command
        self.error = error
        self.calls = []

    def call(self, provider, prompt):
        self.calls.append((provider, prompt))
        if self.error is not None:
            raise self.error
        return LLMResult(
            command=self.command,
            model="gpt-4-0613",
            usage=TokenUsage(input_tokens=120, output_tokens=8, cache_read_tokens=20),
        )


class OrchestratorTestBase:
    """Builds settings pointing at a temporary directory."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.cache_path = os.path.join(self.temp_dir, "cache.db")
        self.ledger_path = os.path.join(self.temp_dir, "tokens.json")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_settings(self, cache_enabled: bool = True, tracking_enabled: bool = True, **prediction):
        raw = {
            "cache": {"enabled": cache_enabled, "db_path": self.cache_path},
            "tracking": {"enabled": tracking_enabled, "db_path": self.ledger_path},
        }
        if prediction:
            raw["prediction"] = prediction
        return parse_settings(raw, environ={"OPENAI_API_KEY": "sk-test"})

    def make_orchestrator(self, client=None, **settings_kwargs) -> CommandOrchestrator:
        return CommandOrchestrator(self.make_settings(**settings_kwargs), client or StubClient())

    def ledger_records(self):
        return UsageLedger(self.ledger_path).load_records()


class TestPredict(OrchestratorTestBase):
    """Test next-command prediction."""

    def test_predict_without_cache(self):
        """A cache-disabled predict returns the provider command and its tokens."""
        client = StubClient()
        orchestrator = self.make_orchestrator(client, cache_enabled=False)
        request = CommandRequest.from_dict({
            "method": "predict",
            "history": ["git status", "git add ."],
            "cwd": "/home/u/proj",
            "git_branch": "main",
            "os_info": "Linux",
        })

        response = orchestrator.dispatch(request).to_dict()

        assert response["result"] == {"command": 'git commit -m "update"', "cached": False}
        assert response["tokens"] == {
            "input_tokens": 120,
            "output_tokens": 8,
            "cache_creation_tokens": 0,
            "cache_read_tokens": 20,
        }
        assert len(client.calls) == 1
        provider, prompt = client.calls[0]
        assert provider.model == "gpt-4-turbo-preview"
        assert "1. git add ." in prompt
        assert "2. git status" in prompt
        assert "/home/u/proj" in prompt
        assert not os.path.exists(self.cache_path)

        records = self.ledger_records()
        assert len(records) == 1
        assert records[0].method == "predict"
        assert records[0].provider == "openai"
        assert records[0].model == "gpt-4-0613"
        assert records[0].input_tokens == 120
        assert records[0].cache_read_tokens == 20

    def test_cache_hit_skips_provider_and_tracking(self):
        client = StubClient()
        orchestrator = self.make_orchestrator(client)
        request = CommandRequest(method="predict", history=["ls"], cwd="/tmp", git_branch="")

        first = orchestrator.predict(request)
        second = orchestrator.predict(request)
        orchestrator.close()

        assert first.result.cached is False
        assert second.result.cached is True
        assert second.result.command == first.result.command
        assert second.tokens is None
        assert "tokens" not in second.to_dict()
        assert len(client.calls) == 1
        assert len(self.ledger_records()) == 1

    def test_different_context_misses_cache(self):
        client = StubClient()
        orchestrator = self.make_orchestrator(client)

        orchestrator.predict(CommandRequest(method="predict", history=["ls"], cwd="/a"))
        orchestrator.predict(CommandRequest(method="predict", history=["ls"], cwd="/b"))
        orchestrator.close()

        assert len(client.calls) == 2

    def test_empty_command_not_cached(self):
        client = StubClient(command="")
        orchestrator = self.make_orchestrator(client)

        orchestrator.predict(CommandRequest(method="predict", history=["ls"]))
        orchestrator.close()

        with open_cache(self.cache_path) as cache:
            assert cache.stats() == (0, 0)

    def test_cache_write_failure_is_not_fatal(self):
        cache = Mock()
        cache.get.return_value = None
        cache.set.side_effect = StorageError("disk full")
        orchestrator = CommandOrchestrator(self.make_settings(), StubClient(), cache=cache)

        response = orchestrator.predict(CommandRequest(method="predict", history=["ls"]))

        assert response.result.command == 'git commit -m "update"'
        assert len(self.ledger_records()) == 1

    def test_cache_lookup_failure_falls_through_to_provider(self):
        cache = Mock()
        cache.get.side_effect = StorageError("locked")
        client = StubClient()
        orchestrator = CommandOrchestrator(self.make_settings(), client, cache=cache)

        response = orchestrator.predict(CommandRequest(method="predict", history=["ls"]))

        assert response.result.cached is False
        assert len(client.calls) == 1
        cache.set.assert_not_called()

    def test_unavailable_cache_is_skipped(self):
        def failing_opener(path):
            raise StorageError("open cache failed")

        client = StubClient()
        orchestrator = CommandOrchestrator(self.make_settings(), client, cache_opener=failing_opener)

        response = orchestrator.predict(CommandRequest(method="predict", history=["ls"]))

        assert response.result.command == 'git commit -m "update"'

    def test_cleanup_applies_capacity(self):
        orchestrator = CommandOrchestrator(
            parse_settings({
                "cache": {"db_path": self.cache_path, "max_entries": 2},
                "tracking": {"enabled": False},
            }, environ={}),
            StubClient(),
        )

        for cwd in ("/a", "/b", "/c", "/d"):
            orchestrator.predict(CommandRequest(method="predict", cwd=cwd))
        orchestrator.close()

        with open_cache(self.cache_path) as cache:
            assert cache.stats()[0] == 2

    def test_provider_error_propagates_without_side_effects(self):
        orchestrator = self.make_orchestrator(StubClient(error=ProviderError("API call failed: boom")))

        with pytest.raises(ProviderError):
            orchestrator.predict(CommandRequest(method="predict", history=["ls"]))
        orchestrator.close()

        assert not os.path.exists(self.ledger_path)
        with open_cache(self.cache_path) as cache:
            assert cache.stats() == (0, 0)

    def test_history_truncated_and_filtered(self):
        client = StubClient()
        orchestrator = self.make_orchestrator(client, cache_enabled=False, history_length=2)
        history = ["echo one", "export PASSWORD=hunter2secret", "echo three"]

        orchestrator.predict(CommandRequest(method="predict", history=history))

        prompt = client.calls[0][1]
        assert "echo one" not in prompt
        assert "hunter2secret" not in prompt
        assert REDACTED in prompt
        assert "echo three" in prompt

    def test_tracking_disabled(self):
        orchestrator = self.make_orchestrator(cache_enabled=False, tracking_enabled=False)

        orchestrator.predict(CommandRequest(method="predict", history=["ls"]))

        assert not os.path.exists(self.ledger_path)

    def test_ledger_failure_is_not_fatal(self):
        with open(self.ledger_path, "w", encoding="utf-8") as f:
            f.write("{not json")
        orchestrator = self.make_orchestrator(cache_enabled=False)

        response = orchestrator.predict(CommandRequest(method="predict", history=["ls"]))

        assert response.result.command == 'git commit -m "update"'


class TestCompleteAndGenerate(OrchestratorTestBase):
    """Test prefix completion and natural-language generation."""

    def test_complete(self):
        client = StubClient(command="git checkout main")
        orchestrator = self.make_orchestrator(client)

        response = orchestrator.dispatch(CommandRequest(method="complete", prefix="git ch"))

        assert response.result.command == "git checkout main"
        assert response.result.cached is False
        assert "git ch" in client.calls[0][1]
        assert [r.method for r in self.ledger_records()] == ["complete"]
        assert not os.path.exists(self.cache_path)

    def test_complete_prefix_too_short(self):
        client = StubClient()
        orchestrator = self.make_orchestrator(client)

        with pytest.raises(ValidationError, match="prefix too short"):
            orchestrator.dispatch(CommandRequest(method="complete", prefix="gi"))
        assert client.calls == []

    def test_min_prefix_length_configurable(self):
        orchestrator = self.make_orchestrator(min_prefix_length=1)
        assert orchestrator.complete(CommandRequest(method="complete", prefix="g")).result.command

    def test_generate(self):
        client = StubClient(command="find . -name '*.py' -mtime -1")
        orchestrator = self.make_orchestrator(client)

        response = orchestrator.dispatch(CommandRequest(
            method="nl2cmd", description="python files changed today", cwd="/src",
        ))

        assert response.result.command == "find . -name '*.py' -mtime -1"
        assert "python files changed today" in client.calls[0][1]
        assert [r.method for r in self.ledger_records()] == ["nl2cmd"]

    def test_generate_requires_description(self):
        orchestrator = self.make_orchestrator()
        with pytest.raises(ValidationError, match="description is required"):
            orchestrator.dispatch(CommandRequest(method="nl2cmd", description="   "))

    def test_unknown_method(self):
        orchestrator = self.make_orchestrator()
        with pytest.raises(ValidationError, match="unknown method: explain"):
            orchestrator.dispatch(CommandRequest(method="explain"))


class TestCommandRequest:
    """Test request decoding."""

    def test_from_dict_defaults(self):
        request = CommandRequest.from_dict({"method": "predict"})
        assert request.history == []
        assert request.cwd == ""
        assert request.timestamp is None

    def test_from_dict_null_history(self):
        assert CommandRequest.from_dict({"method": "predict", "history": None}).history == []

    def test_from_dict_rejects_bad_types(self):
        with pytest.raises(ValidationError, match="history must be a list of strings"):
            CommandRequest.from_dict({"method": "predict", "history": "ls"})
        with pytest.raises(ValidationError, match="cwd must be a string"):
            CommandRequest.from_dict({"method": "predict", "cwd": 3})
        with pytest.raises(ValidationError, match="timestamp must be an integer"):
            CommandRequest.from_dict({"method": "predict", "timestamp": "now"})
