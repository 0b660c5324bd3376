#!/usr/bin/env python3
"""
Deduplication runner for event listings.

This script:
1. Loads events from a JSON file (a list of event objects)
2. Runs the deduplication orchestrator in the requested mode
3. Optionally validates and executes every merge decision, recording each
   merge in the merge history database
4. Writes a JSON report and prints a summary

Usage:
    python run_deduplication.py --input events.json [--mode batch] [--output report.json]
                                [--env .env] [--history-db PATH] [--apply] [--verbose]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from event_dedup.models.dedup import BatchResult, ProcessingMode
from event_dedup.models.events import Event
from event_dedup.processing.merge import MergeValidationError
from event_dedup.processing.orchestrator import DeduplicationOrchestrator
from event_dedup.storage.merge_history import MergeHistoryStore
from event_dedup.utils import ConfigManager, setup_logging
from event_dedup.utils.logging_config import parse_log_level

logger = logging.getLogger(__name__)


def load_events(path: Path) -> List[Event]:
    """Load and validate events; invalid records are logged and skipped"""
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        payload = payload.get("events", [])

    events = []
    for index, record in enumerate(payload):
        try:
            events.append(Event.model_validate(record))
        except ValidationError as e:
            logger.warning(f"Skipping invalid event at index {index}: {e}")
    logger.info(f"Loaded {len(events)} events from {path}")
    return events


def apply_decisions(
    orchestrator: DeduplicationOrchestrator, result: BatchResult, history: MergeHistoryStore
) -> Dict[str, Any]:
    """Execute every merge decision, recording each one in the history store"""
    applied = []
    rejected = []
    for decision in result.decisions:
        try:
            merge = orchestrator.merger.execute_merge(decision, history=history, merged_by="run_deduplication")
        except MergeValidationError as e:
            rejected.append({"primary_event_id": decision.primary_event_id, "errors": e.validation.errors})
            continue
        applied.append({
            "primary_event_id": decision.primary_event_id,
            "history_id": merge.history_id,
            "changes": len(merge.changes),
        })
    return {"applied": applied, "rejected": rejected, "history": history.get_statistics()}


def build_report(result: BatchResult) -> Dict[str, Any]:
    return {
        "mode": result.mode.value,
        "processed_count": result.processed_count,
        "duplicates_found": result.duplicates_found,
        "merges_completed": result.merges_completed,
        "cancelled": result.cancelled,
        "errors": [{"event_id": error.event_id, "error": error.error} for error in result.errors],
        "decisions": [
            {
                "primary_event_id": decision.primary_event_id,
                "duplicate_event_ids": decision.duplicate_event_ids,
                "strategy": decision.strategy.value,
                "confidence": round(decision.confidence, 4),
                "reasons": decision.reasons,
                "manual_review_fields": [field.value for field in decision.manual_review_fields],
                "preview": decision.preview.model_dump(mode="json"),
            }
            for decision in result.decisions
        ],
        "duplicate_pairs": [
            {
                "event_id_a": pair.event_id_a,
                "event_id_b": pair.event_id_b,
                "overall": round(pair.similarity.overall, 4),
                "reasoning": pair.similarity.reasoning,
            }
            for pair in result.duplicate_pairs
        ],
        "metrics": {
            "processing_time_seconds": round(result.metrics.processing_time_seconds, 3),
            "fingerprint_cache_hit_rate": round(result.metrics.fingerprint_cache_hit_rate, 4),
            "similarity_cache_hit_rate": round(result.metrics.similarity_cache_hit_rate, 4),
        },
    }


def print_summary(report: Dict[str, Any]) -> None:
    print("\n" + "=" * 60)
    print("DEDUPLICATION SUMMARY")
    print("=" * 60)
    print(f"  Mode: {report['mode']}")
    print(f"  Events processed: {report['processed_count']}")
    print(f"  Duplicates found: {report['duplicates_found']}")
    print(f"  Merge decisions: {report['merges_completed']}")
    print(f"  Processing time: {report['metrics']['processing_time_seconds']:.1f}s")
    if report.get("apply"):
        print(f"  Merges applied: {len(report['apply']['applied'])}")
        print(f"  Merges rejected: {len(report['apply']['rejected'])}")
    if report["cancelled"]:
        print("  Run was cancelled before completion")

    if report["errors"]:
        print("\nErrors:")
        for error in report["errors"]:
            print(f"  - {error['event_id']}: {error['error']}")

    print("=" * 60)


def main():
    """Main deduplication entry point"""
    parser = argparse.ArgumentParser(description="Deduplicate and merge event listings")
    parser.add_argument("--input", required=True, help="JSON file containing a list of events")
    parser.add_argument(
        "--mode",
        default=ProcessingMode.BATCH.value,
        choices=[mode.value for mode in ProcessingMode],
        help="Processing mode (default: batch)",
    )
    parser.add_argument("--output", help="Where to write the JSON report (default: print summary only)")
    parser.add_argument("--env", default=".env", help="Path to the .env file with DEDUP_* settings")
    parser.add_argument("--history-db", help="SQLite file for merge history (default: DEDUP_HISTORY_DB)")
    parser.add_argument("--apply", action="store_true", help="Validate and execute the merge decisions")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    config_manager = ConfigManager(args.env)
    env = config_manager.load()
    level = logging.DEBUG if args.verbose else parse_log_level(env.get("DEDUP_LOG_LEVEL"))
    setup_logging(level=level)

    input_path = Path(args.input)
    if not input_path.exists():
        logger.error(f"Input file not found: {input_path}")
        return 1

    try:
        config = config_manager.build_dedup_config()
    except ValueError as e:
        logger.error(f"Invalid deduplication configuration: {e}")
        return 1

    events = load_events(input_path)
    orchestrator = DeduplicationOrchestrator(config)
    result = asyncio.run(orchestrator.process_events(events, ProcessingMode(args.mode), show_progress=True))
    report = build_report(result)

    if args.apply:
        history = MergeHistoryStore(args.history_db or env["DEDUP_HISTORY_DB"])
        try:
            report["apply"] = apply_decisions(orchestrator, result, history)
        finally:
            history.close()

    if args.output:
        Path(args.output).write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
        logger.info(f"Report written to {args.output}")

    print_summary(report)
    return 0 if not result.errors else 2


if __name__ == "__main__":
    sys.exit(main())
