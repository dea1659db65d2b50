"""
Unit tests for the usage ledger.

Tests appending, loading, the persisted document format, corruption
handling and serialized concurrent appends.
"""

import json
import multiprocessing
import os
import shutil
import tempfile
from datetime import datetime, timezone

import pytest

from llmsh.core.errors import StorageError
from llmsh.storage.ledger import LEDGER_VERSION, UsageLedger
from llmsh.storage.models import UsageRecord


def _append_many(path: str, count: int) -> None:
    ledger = UsageLedger(path, lock_timeout=30)
    for _ in range(count):
        ledger.record_usage("predict", "openai", "gpt-4", 10, 5)


class TestLedgerAppend:
    """Test usage record appends."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, "sub", "tokens.json")
        self.ledger = UsageLedger(self.path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_load_without_file_is_empty(self):
        """A missing ledger reads as empty, not as an error."""
        assert self.ledger.load_records() == []

    def test_record_usage_appends(self):
        record = self.ledger.record_usage(
            method="predict",
            provider="openai",
            model="gpt-4",
            input_tokens=100,
            output_tokens=20,
            cache_creation_tokens=1,
            cache_read_tokens=30,
        )

        records = self.ledger.load_records()
        assert records == [record]
        assert records[0].input_tokens == 100
        assert records[0].output_tokens == 20
        assert records[0].cache_creation_tokens == 1
        assert records[0].cache_read_tokens == 30
        assert records[0].timestamp.tzinfo is not None

    def test_ids_are_unique(self):
        first = self.ledger.record_usage("predict", "openai", "gpt-4", 1, 1)
        second = self.ledger.record_usage("predict", "openai", "gpt-4", 1, 1)
        assert first.id != second.id

    def test_append_order_preserved(self):
        for method in ("predict", "complete", "nl2cmd"):
            self.ledger.record_usage(method, "openai", "gpt-4", 1, 1)

        assert [r.method for r in self.ledger.load_records()] == ["predict", "complete", "nl2cmd"]

    def test_document_format(self):
        """The persisted file is {"version": "1.0", "records": [...]}."""
        self.ledger.record_usage("complete", "local", "codellama:7b", 7, 3)

        with open(self.path, encoding="utf-8") as f:
            document = json.load(f)

        assert document["version"] == LEDGER_VERSION
        assert len(document["records"]) == 1
        assert set(document["records"][0].keys()) == {
            "id", "timestamp", "method", "provider", "model",
            "input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens",
        }

    def test_injected_clock(self):
        fixed = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        ledger = UsageLedger(self.path, clock=lambda: fixed)
        record = ledger.record_usage("predict", "openai", "gpt-4", 1, 1)
        assert record.timestamp == fixed
        assert ledger.load_records()[0].timestamp == fixed

    def test_invalid_method_rejected(self):
        with pytest.raises(ValueError, match="method must be one of"):
            self.ledger.record_usage("translate", "openai", "gpt-4", 1, 1)
        assert not os.path.exists(self.path)

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            self.ledger.record_usage("predict", "openai", "gpt-4", -1, 1)

    def test_no_temp_files_left_behind(self):
        self.ledger.record_usage("predict", "openai", "gpt-4", 1, 1)
        leftovers = [n for n in os.listdir(os.path.dirname(self.path)) if n.endswith(".tmp")]
        assert leftovers == []

    def test_clear(self):
        self.ledger.record_usage("predict", "openai", "gpt-4", 1, 1)
        assert self.ledger.clear() is True
        assert self.ledger.load_records() == []
        assert self.ledger.clear() is False


class TestLedgerCorruption:
    """Test handling of unreadable ledgers."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, "tokens.json")
        self.ledger = UsageLedger(self.path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, content: str) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(content)

    def test_corrupt_json_raises(self):
        self._write("{not json")
        with pytest.raises(StorageError):
            self.ledger.load_records()

    def test_non_object_raises(self):
        self._write("[1, 2, 3]")
        with pytest.raises(StorageError):
            self.ledger.load_records()

    def test_bad_record_raises(self):
        self._write(json.dumps({"version": "1.0", "records": [{"method": "predict"}]}))
        with pytest.raises(StorageError):
            self.ledger.load_records()

    def test_corrupt_ledger_is_not_overwritten(self):
        """Appending to a corrupt ledger fails instead of discarding history."""
        self._write("{not json")
        with pytest.raises(StorageError):
            self.ledger.record_usage("predict", "openai", "gpt-4", 1, 1)
        with open(self.path, encoding="utf-8") as f:
            assert f.read() == "{not json"

    def test_reads_records_with_nanosecond_timestamps(self):
        """Timestamps with more than microsecond precision still load."""
        self._write(json.dumps({
            "version": "1.0",
            "records": [{
                "id": "1704067200000000000",
                "timestamp": "2024-01-01T12:00:00.123456789+08:00",
                "method": "predict",
                "provider": "openai",
                "model": "gpt-4",
                "input_tokens": 10,
                "output_tokens": 2,
                "cache_creation_tokens": 0,
                "cache_read_tokens": 0,
            }],
        }))

        records = self.ledger.load_records()
        assert len(records) == 1
        assert records[0].timestamp.year == 2024
        assert isinstance(records[0], UsageRecord)

    def test_empty_records_list(self):
        self._write(json.dumps({"version": "1.0", "records": None}))
        assert self.ledger.load_records() == []


class TestLedgerConcurrency:
    """Test that concurrent writers never lose records."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, "tokens.json")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_concurrent_appends_from_processes(self):
        context = multiprocessing.get_context("fork")
        processes = [
            context.Process(target=_append_many, args=(self.path, 10))
            for _ in range(4)
        ]
        for process in processes:
            process.start()
        for process in processes:
            process.join(timeout=60)
            assert process.exitcode == 0

        records = UsageLedger(self.path).load_records()
        assert len(records) == 40
        assert len({r.id for r in records}) == 40
