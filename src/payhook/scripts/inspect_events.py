#!/usr/bin/env python3
"""
Inspect webhook events recorded in the idempotency store.

Lists events by status, events eligible for replay, a single event, or
aggregated counts. Read-only: replaying events is left to the sweep job.

Usage:
    payhook-events --env dev --stats
    payhook-events --env dev --status failed --limit 20
    payhook-events --env dev --unprocessed
    payhook-events --env dev --event-id evt_Hn6tF1dCuRj2Fq
"""

import argparse
import json
import os
import sys

from payhook.config import WebhookSettings
from payhook.models.errors import IdempotencyStoreError
from payhook.models.webhook_event import IdempotencyRecord, ProcessingStatus
from payhook.services.dynamodb import DynamoDBService
from payhook.services.idempotency import DynamoDBIdempotencyStore


def format_record(record: IdempotencyRecord) -> str:
    """One line per event: id, type, status, attempts, age and last error."""
    line = (
        f"{record.event_id:<28} {record.event_type:<28} {record.status.value:<10} "
        f"attempts={record.attempts} created={record.created_at.isoformat()}"
    )
    if record.error:
        line += f" error={record.error!r}"
    return line


def build_store(env: str, region: str | None) -> DynamoDBIdempotencyStore:
    os.environ["ENVIRONMENT"] = env
    if region:
        os.environ["AWS_DEFAULT_REGION"] = region
    settings = WebhookSettings.from_env()
    return DynamoDBIdempotencyStore(
        DynamoDBService(settings.environment),
        settings.events_table,
        retention_days=settings.retention_days,
        max_attempts=settings.max_processing_attempts,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect recorded webhook events")
    parser.add_argument("--env", default="dev", help="Environment name (default: dev)")
    parser.add_argument("--region", default=None, help="AWS region")
    parser.add_argument("--limit", type=int, default=50, help="Max events to list")

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--status",
        choices=[s.value for s in ProcessingStatus],
        help="List events with this processing status",
    )
    mode.add_argument(
        "--unprocessed",
        action="store_true",
        help="List pending events and retryable failures",
    )
    mode.add_argument("--event-id", help="Show one event as JSON")
    mode.add_argument("--stats", action="store_true", help="Print aggregated counts")

    args = parser.parse_args(argv)
    store = build_store(args.env, args.region)

    try:
        if args.stats:
            print(json.dumps(store.get_statistics().model_dump(), indent=2))
            return 0

        if args.event_id:
            record = store.get_record(args.event_id)
            if record is None:
                print(f"Event not found: {args.event_id}", file=sys.stderr)
                return 1
            print(record.model_dump_json(indent=2))
            return 0

        if args.unprocessed:
            records = store.get_unprocessed_events(args.limit)
        else:
            records = store.get_events_by_status(ProcessingStatus(args.status), args.limit)

    except IdempotencyStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for record in records:
        print(format_record(record))
    print(f"\n{len(records)} event(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
