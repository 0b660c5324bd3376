"""
Audit trail for executed merges.

Every executed merge is stored with its decision summary and the per-field change
log, so a canonical event can always be traced back to the listings folded into it.
"""

import csv
import io
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..models.dedup import MergeResult

logger = logging.getLogger(__name__)


def _to_json(value: Any) -> str:
    return json.dumps(value, default=str)


# Columns added after the first schema; older databases are upgraded in place
_ADDED_COLUMNS = {
    "quality_improvement": "REAL NOT NULL DEFAULT 0",
    "manual_review_fields": "TEXT",
}

LOW_CONFIDENCE = 0.6
LOW_CONFIDENCE_SHARE = 0.2
MANUAL_REVIEW_SHARE = 0.2
RECENT_DAYS = 7


class MergeHistoryStore:
    """SQLite-backed store of merge decisions and their field changes"""

    def __init__(self, db_path: str = ":memory:", connection: Optional[sqlite3.Connection] = None):
        self.conn = connection or sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self.logger = logging.getLogger(f"{__name__}.MergeHistoryStore")
        self._create_tables()

    def _create_tables(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS MergeHistory (
                history_id TEXT PRIMARY KEY,
                primary_event_id TEXT NOT NULL,
                duplicate_event_ids TEXT NOT NULL,  -- JSON
                strategy TEXT NOT NULL,
                confidence REAL NOT NULL,
                quality_improvement REAL NOT NULL DEFAULT 0,
                manual_review_fields TEXT,  -- JSON
                reasons TEXT,  -- JSON
                merged_by TEXT NOT NULL,
                merged_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS FieldChanges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                history_id TEXT NOT NULL,
                field_name TEXT NOT NULL,
                old_value TEXT,  -- JSON
                new_value TEXT,  -- JSON
                strategy TEXT NOT NULL,
                confidence REAL NOT NULL,
                FOREIGN KEY (history_id) REFERENCES MergeHistory(history_id)
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_merge_history_primary ON MergeHistory(primary_event_id)")
        self._add_missing_columns(cursor)
        self.conn.commit()

    def _add_missing_columns(self, cursor: sqlite3.Cursor) -> None:
        existing = {row["name"] for row in cursor.execute("PRAGMA table_info(MergeHistory)").fetchall()}
        for column, definition in _ADDED_COLUMNS.items():
            if column not in existing:
                self.logger.info(f"Adding column {column} to MergeHistory")
                cursor.execute(f"ALTER TABLE MergeHistory ADD COLUMN {column} {definition}")

    def record_merge(self, result: MergeResult, merged_by: str = "system") -> str:
        """Store a merge result and its change log in one transaction; returns the history id"""
        history_id = str(uuid.uuid4())
        decision = result.decision
        merged_at = datetime.now(timezone.utc).isoformat()

        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO MergeHistory (
                    history_id, primary_event_id, duplicate_event_ids, strategy, confidence,
                    quality_improvement, manual_review_fields, reasons, merged_by, merged_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    history_id,
                    decision.primary_event_id,
                    _to_json(list(decision.duplicate_event_ids)),
                    decision.strategy.value,
                    decision.confidence,
                    result.quality_improvement,
                    _to_json([field.value for field in decision.manual_review_fields]),
                    _to_json(list(decision.reasons)),
                    merged_by,
                    merged_at,
                ),
            )
            cursor.executemany(
                """
                INSERT INTO FieldChanges (history_id, field_name, old_value, new_value, strategy, confidence)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        history_id,
                        change.field.value,
                        _to_json(change.old_value),
                        _to_json(change.new_value),
                        change.strategy.value,
                        change.confidence,
                    )
                    for change in result.changes
                ],
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            self.logger.error(f"Failed to record merge into {decision.primary_event_id}: {e}")
            raise

        self.logger.info(
            f"Recorded merge {history_id}: {len(decision.duplicate_event_ids)} duplicate(s) into "
            f"{decision.primary_event_id} with {len(result.changes)} field change(s)"
        )
        return history_id

    def _load_changes(self, history_id: str) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT field_name, old_value, new_value, strategy, confidence FROM FieldChanges "
            "WHERE history_id = ? ORDER BY id",
            (history_id,),
        ).fetchall()
        return [
            {
                "field": row["field_name"],
                "old_value": json.loads(row["old_value"]),
                "new_value": json.loads(row["new_value"]),
                "strategy": row["strategy"],
                "confidence": row["confidence"],
            }
            for row in rows
        ]

    def _row_to_record(self, row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "history_id": row["history_id"],
            "primary_event_id": row["primary_event_id"],
            "duplicate_event_ids": json.loads(row["duplicate_event_ids"]),
            "strategy": row["strategy"],
            "confidence": row["confidence"],
            "quality_improvement": row["quality_improvement"],
            "manual_review_fields": json.loads(row["manual_review_fields"] or "[]"),
            "reasons": json.loads(row["reasons"] or "[]"),
            "merged_by": row["merged_by"],
            "merged_at": row["merged_at"],
            "changes": self._load_changes(row["history_id"]),
        }

    def get_event_history(self, event_id: str) -> List[Dict[str, Any]]:
        """Merges where the event was the primary or one of the duplicates, newest first"""
        rows = self.conn.execute(
            "SELECT * FROM MergeHistory ORDER BY merged_at DESC, rowid DESC"
        ).fetchall()
        history = []
        for row in rows:
            duplicates = json.loads(row["duplicate_event_ids"])
            if row["primary_event_id"] == event_id or event_id in duplicates:
                history.append(self._row_to_record(row))
        return history

    def get_all_history(self) -> List[Dict[str, Any]]:
        rows = self.conn.execute("SELECT * FROM MergeHistory ORDER BY merged_at, rowid").fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_statistics(self) -> Dict[str, Any]:
        cursor = self.conn.cursor()
        total, mean_confidence, mean_improvement = cursor.execute(
            "SELECT COUNT(*), AVG(confidence), AVG(quality_improvement) FROM MergeHistory"
        ).fetchone()
        reviewed = cursor.execute(
            "SELECT COUNT(*) FROM MergeHistory WHERE manual_review_fields IS NOT NULL AND manual_review_fields != '[]'"
        ).fetchone()[0]
        total_changes = cursor.execute("SELECT COUNT(*) FROM FieldChanges").fetchone()[0]
        by_strategy = {
            row["strategy"]: row["count"]
            for row in cursor.execute(
                "SELECT strategy, COUNT(*) AS count FROM MergeHistory GROUP BY strategy"
            ).fetchall()
        }
        duplicates_merged = sum(
            len(json.loads(row["duplicate_event_ids"]))
            for row in cursor.execute("SELECT duplicate_event_ids FROM MergeHistory").fetchall()
        )
        return {
            "total_merges": total,
            "total_field_changes": total_changes,
            "duplicates_merged": duplicates_merged,
            "average_confidence": mean_confidence or 0.0,
            "average_quality_improvement": mean_improvement or 0.0,
            "manual_review_rate": reviewed / total if total else 0.0,
            "merges_by_strategy": by_strategy,
        }

    def get_analytics(self) -> Dict[str, Any]:
        """Merges per day plus per-strategy and per-field effectiveness"""
        return self._analyze(self.get_all_history())

    @staticmethod
    def _analyze(records: List[Dict[str, Any]]) -> Dict[str, Any]:
        merges_by_day: Dict[str, int] = {}
        strategies: Dict[str, Dict[str, float]] = {}
        fields: Dict[str, Dict[str, float]] = {}

        def field_entry(name: str) -> Dict[str, float]:
            return fields.setdefault(name, {"changes": 0, "total_confidence": 0.0, "manual_reviews": 0})

        for record in records:
            day = record["merged_at"][:10]
            merges_by_day[day] = merges_by_day.get(day, 0) + 1

            entry = strategies.setdefault(
                record["strategy"], {"count": 0, "total_confidence": 0.0, "total_improvement": 0.0}
            )
            entry["count"] += 1
            entry["total_confidence"] += record["confidence"]
            entry["total_improvement"] += record["quality_improvement"]

            for change in record["changes"]:
                stats = field_entry(change["field"])
                stats["changes"] += 1
                stats["total_confidence"] += change["confidence"]
            for name in record["manual_review_fields"]:
                field_entry(name)["manual_reviews"] += 1

        strategy_effectiveness = {
            name: {
                "count": entry["count"],
                "average_confidence": entry["total_confidence"] / entry["count"],
                "average_quality_improvement": entry["total_improvement"] / entry["count"],
            }
            for name, entry in strategies.items()
        }
        field_impact = {
            name: {
                "changes": stats["changes"],
                "average_confidence": stats["total_confidence"] / stats["changes"] if stats["changes"] else 0.0,
                "manual_reviews": stats["manual_reviews"],
                "manual_review_rate": stats["manual_reviews"] / len(records),
            }
            for name, stats in fields.items()
        }
        return {
            "merges_by_day": merges_by_day,
            "strategy_effectiveness": strategy_effectiveness,
            "field_impact": field_impact,
        }

    def identify_quality_issues(self, days: int = RECENT_DAYS) -> List[Dict[str, Any]]:
        """Flag recent low-confidence merges, completeness losses and frequent manual review"""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        recent = [record for record in self.get_all_history() if record["merged_at"] >= cutoff]
        if not recent:
            return []

        issues = []
        low_confidence = [r["history_id"] for r in recent if r["confidence"] < LOW_CONFIDENCE]
        if len(low_confidence) > len(recent) * LOW_CONFIDENCE_SHARE:
            issues.append({
                "type": "low_confidence",
                "description": f"{len(low_confidence)} merge(s) in the last {days} days had confidence "
                               f"below {LOW_CONFIDENCE:.0%}",
                "affected_merges": low_confidence,
                "severity": "high",
                "recommendations": [
                    "Review the duplicate thresholds and field floors",
                    "Send merges of sparse listings to manual review",
                ],
            })

        degraded = [r["history_id"] for r in recent if r["quality_improvement"] < 0]
        if degraded:
            issues.append({
                "type": "quality_degradation",
                "description": f"{len(degraded)} merge(s) left the canonical event less complete",
                "affected_merges": degraded,
                "severity": "high",
                "recommendations": [
                    "Review the field resolution rules that replaced values",
                    "Validate merge previews before executing them",
                ],
            })

        reviewed = [r["history_id"] for r in recent if r["manual_review_fields"]]
        if len(reviewed) > len(recent) * MANUAL_REVIEW_SHARE:
            issues.append({
                "type": "frequent_manual_review",
                "description": f"{len(reviewed)} of {len(recent)} recent merge(s) had fields needing manual review",
                "affected_merges": reviewed,
                "severity": "medium",
                "recommendations": [
                    "Give frequently disputed fields an automatic strategy",
                    "Rank the sources that disagree in the source reliability table",
                ],
            })
        return issues

    def generate_audit_report(self, recent_limit: int = 10) -> Dict[str, Any]:
        """Summary, analytics, quality issues and recommendations over the whole history"""
        records = self.get_all_history()
        if not records:
            return {
                "summary": {
                    "total_merges": 0,
                    "first_merge": None,
                    "last_merge": None,
                    "average_confidence": 0.0,
                    "average_quality_improvement": 0.0,
                    "manual_review_rate": 0.0,
                },
                "analytics": self._analyze([]),
                "quality_issues": [],
                "recommendations": [],
                "recent_activity": [],
            }

        analytics = self._analyze(records)
        issues = self.identify_quality_issues()
        total = len(records)
        return {
            "summary": {
                "total_merges": total,
                "first_merge": records[0]["merged_at"],
                "last_merge": records[-1]["merged_at"],
                "average_confidence": sum(r["confidence"] for r in records) / total,
                "average_quality_improvement": sum(r["quality_improvement"] for r in records) / total,
                "manual_review_rate": sum(1 for r in records if r["manual_review_fields"]) / total,
            },
            "analytics": analytics,
            "quality_issues": issues,
            "recommendations": self._recommendations(analytics, issues),
            "recent_activity": list(reversed(records))[:recent_limit],
        }

    @staticmethod
    def _recommendations(analytics: Dict[str, Any], issues: List[Dict[str, Any]]) -> List[str]:
        recommendations = []
        for name, stats in analytics["strategy_effectiveness"].items():
            if stats["average_confidence"] < 0.7:
                recommendations.append(
                    f"Improve {name} merges: average confidence is {stats['average_confidence']:.1%}"
                )
            if stats["average_quality_improvement"] <= 0:
                recommendations.append(f"{name} merges add no completeness; check whether they are needed")
        for name, stats in analytics["field_impact"].items():
            if stats["manual_review_rate"] > 0.3:
                recommendations.append(
                    f"High conflict rate for {name} ({stats['manual_review_rate']:.1%}): review its resolution rule"
                )
        if issues:
            recommendations.append(f"{len(issues)} quality issue(s) identified; see quality_issues for details")
        return recommendations

    def export_history(self, fmt: str = "json") -> str:
        """Export every merge as a JSON document or as CSV with one row per field change"""
        records = self.get_all_history()
        if fmt == "json":
            return json.dumps(records, indent=2, default=str)
        if fmt != "csv":
            raise ValueError(f"Unsupported export format: {fmt}")

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow([
            "history_id", "primary_event_id", "duplicate_event_ids", "strategy", "confidence", "quality_improvement",
            "merged_by", "merged_at", "field", "old_value", "new_value", "field_strategy", "field_confidence",
        ])
        for record in records:
            base = [
                record["history_id"],
                record["primary_event_id"],
                ";".join(record["duplicate_event_ids"]),
                record["strategy"],
                record["confidence"],
                record["quality_improvement"],
                record["merged_by"],
                record["merged_at"],
            ]
            if not record["changes"]:
                writer.writerow(base + ["", "", "", "", ""])
            for change in record["changes"]:
                writer.writerow(base + [
                    change["field"],
                    _to_json(change["old_value"]),
                    _to_json(change["new_value"]),
                    change["strategy"],
                    change["confidence"],
                ])
        return buffer.getvalue()

    def clear_history(self, retention_days: Optional[int] = None) -> int:
        """Delete all history, or only entries older than ``retention_days``; returns merges removed"""
        cursor = self.conn.cursor()
        try:
            if retention_days is None:
                cursor.execute("DELETE FROM FieldChanges")
                cursor.execute("DELETE FROM MergeHistory")
            else:
                cutoff = (datetime.now(timezone.utc) - timedelta(days=retention_days)).isoformat()
                cursor.execute(
                    "DELETE FROM FieldChanges WHERE history_id IN "
                    "(SELECT history_id FROM MergeHistory WHERE merged_at < ?)",
                    (cutoff,),
                )
                cursor.execute("DELETE FROM MergeHistory WHERE merged_at < ?", (cutoff,))
            removed = cursor.rowcount
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            self.logger.error(f"Failed to clear merge history: {e}")
            raise

        self.logger.info(f"Cleared {removed} merge history entries")
        return removed

    def close(self) -> None:
        self.conn.close()
