"""
Tests for the command line runner: report building, applying decisions and exit codes.
"""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import run_deduplication
from event_dedup.models.dedup import ProcessingMode
from event_dedup.models.events import Event, EventStatus
from event_dedup.processing.orchestrator import DeduplicationOrchestrator
from event_dedup.storage.merge_history import MergeHistoryStore

START = datetime(2025, 6, 1, 20, 0, tzinfo=timezone.utc)
CREATED = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)

REPORT_KEYS = {
    "mode",
    "processed_count",
    "duplicates_found",
    "merges_completed",
    "cancelled",
    "errors",
    "decisions",
    "duplicate_pairs",
    "metrics",
}


def jazz_events(**duplicate_overrides):
    duplicate = {
        "id": "evt-2", "title": "jazz night!!", "venue_name": "The Blue Note Club", "category": "music",
        "start_time": START + timedelta(minutes=30), "price_min": 25, "created_at": CREATED + timedelta(days=1),
    }
    duplicate.update(duplicate_overrides)
    return [
        Event(
            id="evt-1", title="Jazz Night", venue_name="Blue Note", category="music",
            start_time=START, created_at=CREATED, status=EventStatus.ACTIVE,
        ),
        Event(**duplicate),
        Event(
            id="evt-3", title="Comedy Gala", venue_name="Town Hall", category="comedy",
            start_time=START + timedelta(days=40), created_at=CREATED + timedelta(days=2),
        ),
    ]


async def run(events, mode=ProcessingMode.BATCH):
    orchestrator = DeduplicationOrchestrator()
    result = await orchestrator.process_events(events, mode)
    return orchestrator, result


class TestBuildReport:
    """JSON report produced from a processing run"""

    @pytest.mark.asyncio
    async def test_report_shape(self):
        _, result = await run(jazz_events())

        report = run_deduplication.build_report(result)

        assert set(report) == REPORT_KEYS
        assert report["mode"] == "batch"
        assert report["processed_count"] == 3
        assert report["errors"] == []
        decision = report["decisions"][0]
        assert decision["primary_event_id"] == "evt-1"
        assert decision["duplicate_event_ids"] == ["evt-2"]
        assert decision["strategy"] == "enhance_primary"
        assert decision["preview"]["price_min"] == 25
        assert set(report["metrics"]) == {
            "processing_time_seconds", "fingerprint_cache_hit_rate", "similarity_cache_hit_rate",
        }
        json.dumps(report)

    @pytest.mark.asyncio
    async def test_full_scan_lists_pairs(self):
        _, result = await run(jazz_events(), ProcessingMode.FULL_SCAN)

        report = run_deduplication.build_report(result)

        assert report["decisions"] == []
        assert [(p["event_id_a"], p["event_id_b"]) for p in report["duplicate_pairs"]] == [("evt-1", "evt-2")]


class TestApplyDecisions:
    """Executing decisions against an in-memory history store"""

    @pytest.fixture
    def history(self):
        store = MergeHistoryStore()
        yield store
        store.close()

    @pytest.mark.asyncio
    async def test_applied_merges_are_recorded(self, history):
        orchestrator, result = await run(jazz_events())

        outcome = run_deduplication.apply_decisions(orchestrator, result, history)

        assert outcome["rejected"] == []
        assert len(outcome["applied"]) == 1
        applied = outcome["applied"][0]
        assert applied["primary_event_id"] == "evt-1"
        assert applied["changes"] >= 1
        assert outcome["history"]["total_merges"] == 1
        record = history.get_event_history("evt-1")[0]
        assert record["history_id"] == applied["history_id"]
        assert record["duplicate_event_ids"] == ["evt-2"]

    @pytest.mark.asyncio
    async def test_manual_review_fields_still_apply(self, history):
        orchestrator, result = await run(jazz_events(status=EventStatus.CANCELLED))

        outcome = run_deduplication.apply_decisions(orchestrator, result, history)

        assert len(outcome["applied"]) == 1
        assert history.get_statistics()["manual_review_rate"] == pytest.approx(1.0)


def write_input(tmp_path, events):
    path = tmp_path / "events.json"
    path.write_text(json.dumps([event.model_dump(mode="json") for event in events]), encoding="utf-8")
    return path


class TestMain:
    """Exit codes and files written by the runner"""

    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("", encoding="utf-8")
        monkeypatch.setenv("DEDUP_HISTORY_DB", str(tmp_path / "history.db"))

    def run_main(self, monkeypatch, *args):
        monkeypatch.setattr("sys.argv", ["run_deduplication.py", "--env", ".env", *args])
        return run_deduplication.main()

    def test_clean_run_writes_report(self, tmp_path, monkeypatch):
        input_path = write_input(tmp_path, jazz_events())
        output_path = tmp_path / "report.json"

        code = self.run_main(monkeypatch, "--input", str(input_path), "--output", str(output_path))

        assert code == 0
        report = json.loads(output_path.read_text(encoding="utf-8"))
        assert report["merges_completed"] == 1

    def test_apply_records_history(self, tmp_path, monkeypatch):
        input_path = write_input(tmp_path, jazz_events())

        code = self.run_main(monkeypatch, "--input", str(input_path), "--apply")

        assert code == 0
        connection = sqlite3.connect(str(tmp_path / "history.db"))
        try:
            assert connection.execute("SELECT COUNT(*) FROM MergeHistory").fetchone()[0] == 1
        finally:
            connection.close()

    def test_missing_input_exits_with_one(self, tmp_path, monkeypatch):
        assert self.run_main(monkeypatch, "--input", str(tmp_path / "absent.json")) == 1

    def test_processing_errors_exit_with_two(self, tmp_path, monkeypatch):
        input_path = write_input(tmp_path, jazz_events())
        output_path = tmp_path / "report.json"
        original = DeduplicationOrchestrator.process_realtime

        async def failing(self, event):
            if event.id == "evt-3":
                raise RuntimeError("listing unavailable")
            return await original(self, event)

        monkeypatch.setattr(DeduplicationOrchestrator, "process_realtime", failing)

        code = self.run_main(monkeypatch, "--input", str(input_path), "--output", str(output_path))

        assert code == 2
        report = json.loads(output_path.read_text(encoding="utf-8"))
        assert report["errors"] == [{"event_id": "evt-3", "error": "listing unavailable"}]
        assert report["merges_completed"] == 1
