"""
Tests for the merge history store: recording, lookup, statistics, export and retention.
"""

import csv
import dataclasses
import io
import json
import sqlite3
from datetime import datetime, timezone

import pytest

from event_dedup.models.events import Event, EventStatus
from event_dedup.processing.merge import EventMerger
from event_dedup.storage.merge_history import MergeHistoryStore


def make_event(event_id: str, **overrides) -> Event:
    data = {
        "id": event_id,
        "title": "Jazz Night",
        "category": "music",
        "start_time": datetime(2025, 6, 1, 20, 0, tzinfo=timezone.utc),
        "created_at": datetime(2025, 5, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return Event(**data)


class TestMergeHistoryStore:
    """Test the MergeHistoryStore class"""

    @pytest.fixture
    def store(self):
        store = MergeHistoryStore()
        yield store
        store.close()

    @pytest.fixture
    def merge_result(self):
        merger = EventMerger()
        primary = make_event("evt-1")
        duplicate = make_event("evt-2", price_min=25, ticket_url="https://tickets.example.com/1")
        return merger.execute_merge(merger.create_merge_decision(primary, [duplicate]))

    def test_record_and_lookup(self, store, merge_result):
        history_id = store.record_merge(merge_result, merged_by="tester")

        by_primary = store.get_event_history("evt-1")
        by_duplicate = store.get_event_history("evt-2")

        assert len(by_primary) == 1
        assert by_primary == by_duplicate
        record = by_primary[0]
        assert record["history_id"] == history_id
        assert record["duplicate_event_ids"] == ["evt-2"]
        assert record["merged_by"] == "tester"
        changed_fields = {change["field"] for change in record["changes"]}
        assert {"price_min", "ticket_url", "merged_event_ids"} <= changed_fields
        assert store.get_event_history("unrelated") == []

    def test_statistics(self, store, merge_result):
        store.record_merge(merge_result)
        store.record_merge(merge_result)

        stats = store.get_statistics()

        assert stats["total_merges"] == 2
        assert stats["duplicates_merged"] == 2
        assert stats["total_field_changes"] == 2 * len(merge_result.changes)
        assert stats["merges_by_strategy"] == {"enhance_primary": 2}
        assert stats["average_confidence"] == pytest.approx(merge_result.decision.confidence)

    def test_empty_statistics(self, store):
        stats = store.get_statistics()
        assert stats["total_merges"] == 0
        assert stats["average_confidence"] == 0.0

    def test_export_json(self, store, merge_result):
        store.record_merge(merge_result)
        exported = json.loads(store.export_history("json"))
        assert exported[0]["primary_event_id"] == "evt-1"

    def test_export_csv_has_one_row_per_change(self, store, merge_result):
        store.record_merge(merge_result)
        rows = list(csv.DictReader(io.StringIO(store.export_history("csv"))))
        assert len(rows) == len(merge_result.changes)
        assert {row["field"] for row in rows} >= {"price_min"}

    def test_export_rejects_unknown_format(self, store):
        with pytest.raises(ValueError):
            store.export_history("xml")

    def test_clear_history(self, store, merge_result):
        store.record_merge(merge_result)

        assert store.clear_history(retention_days=30) == 0
        assert store.clear_history() == 1
        assert store.get_statistics()["total_merges"] == 0
        assert store.get_statistics()["total_field_changes"] == 0


class TestMergeAnalytics:
    """Quality improvement tracking, analytics and the audit report"""

    @pytest.fixture
    def store(self):
        store = MergeHistoryStore()
        yield store
        store.close()

    @pytest.fixture
    def merger(self):
        return EventMerger()

    def record(self, store, merger, confidence=None, improvement=None, status_conflict=False):
        primary = make_event("evt-1", status=EventStatus.ACTIVE)
        duplicate = make_event(
            "evt-2",
            price_min=25,
            status=EventStatus.CANCELLED if status_conflict else EventStatus.ACTIVE,
        )
        result = merger.execute_merge(merger.create_merge_decision(primary, [duplicate]))
        if confidence is not None:
            result = dataclasses.replace(result, decision=dataclasses.replace(result.decision, confidence=confidence))
        if improvement is not None:
            result = dataclasses.replace(result, quality_improvement=improvement)
        return store.record_merge(result)

    def test_quality_improvement_is_stored(self, store, merger):
        self.record(store, merger)

        record = store.get_event_history("evt-1")[0]

        assert record["quality_improvement"] > 0
        assert record["manual_review_fields"] == []
        assert store.get_statistics()["average_quality_improvement"] == pytest.approx(record["quality_improvement"])

    def test_manual_review_rate(self, store, merger):
        self.record(store, merger, status_conflict=True)
        self.record(store, merger)

        assert store.get_statistics()["manual_review_rate"] == pytest.approx(0.5)
        impact = store.get_analytics()["field_impact"]["status"]
        assert impact["manual_reviews"] == 1
        assert impact["manual_review_rate"] == pytest.approx(0.5)

    def test_analytics_groups_by_strategy_and_day(self, store, merger):
        self.record(store, merger, confidence=0.9, improvement=0.2)
        self.record(store, merger, confidence=0.5, improvement=0.0)

        analytics = store.get_analytics()

        assert sum(analytics["merges_by_day"].values()) == 2
        stats = analytics["strategy_effectiveness"]["enhance_primary"]
        assert stats["count"] == 2
        assert stats["average_confidence"] == pytest.approx(0.7)
        assert stats["average_quality_improvement"] == pytest.approx(0.1)
        assert analytics["field_impact"]["price_min"]["changes"] == 2

    def test_quality_issues(self, store, merger):
        low = self.record(store, merger, confidence=0.3)
        degraded = self.record(store, merger, confidence=0.9, improvement=-0.1)
        self.record(store, merger, confidence=0.9, status_conflict=True)

        issues = {issue["type"]: issue for issue in store.identify_quality_issues()}

        assert issues["low_confidence"]["affected_merges"] == [low]
        assert issues["quality_degradation"]["affected_merges"] == [degraded]
        assert issues["quality_degradation"]["severity"] == "high"
        assert "frequent_manual_review" in issues
        assert all(issue["recommendations"] for issue in issues.values())

    def test_healthy_history_has_no_issues(self, store, merger):
        self.record(store, merger, confidence=0.95, improvement=0.1)
        assert store.identify_quality_issues() == []

    def test_audit_report(self, store, merger):
        self.record(store, merger, confidence=0.5, improvement=-0.05)
        latest = self.record(store, merger, confidence=0.6, improvement=0.0)

        report = store.generate_audit_report(recent_limit=1)

        assert report["summary"]["total_merges"] == 2
        assert report["summary"]["average_confidence"] == pytest.approx(0.55)
        assert [r["history_id"] for r in report["recent_activity"]] == [latest]
        assert any(r.startswith("Improve enhance_primary merges") for r in report["recommendations"])
        assert any("quality issue(s) identified" in r for r in report["recommendations"])

    def test_audit_report_of_empty_history(self, store):
        report = store.generate_audit_report()
        assert report["summary"]["total_merges"] == 0
        assert report["quality_issues"] == []
        assert report["recommendations"] == []

    def test_older_database_is_upgraded(self, merger):
        connection = sqlite3.connect(":memory:")
        connection.execute(
            "CREATE TABLE MergeHistory (history_id TEXT PRIMARY KEY, primary_event_id TEXT NOT NULL, "
            "duplicate_event_ids TEXT NOT NULL, strategy TEXT NOT NULL, confidence REAL NOT NULL, "
            "reasons TEXT, merged_by TEXT NOT NULL, merged_at TEXT NOT NULL)"
        )
        store = MergeHistoryStore(connection=connection)

        self.record(store, merger)

        assert store.get_all_history()[0]["quality_improvement"] > 0
        store.close()
