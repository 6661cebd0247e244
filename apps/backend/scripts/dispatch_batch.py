"""
Dispatch one extraction schema over a list of URLs from the command line.

Reads URLs (one per line) from --urls-file or stdin, runs them through the
same pipeline as the API and prints the batch summary.

Examples:
    python scripts/dispatch_batch.py --urls-file urls.txt --schema '{"title": "string"}'
    cat urls.txt | python scripts/dispatch_batch.py --schema schema.json --concurrency 2 --out results.json
"""

import os
import sys
import json
import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.ai_service import OpenRouterCompletionService
from app.config import load_settings
from core.errors import BatchTooLarge, EmptyBatch, InvalidSchema
from core.net import HTTPClient
from orchestrator import BulkDispatcher
from pipeline.extractor import SchemaExtractor
from pipeline.lifecycle import JobLifecycleManager
from pipeline.sanitizer import max_chars_for_tier
from pipeline.store import PostgresJobStore, create_store
from pipeline.telemetry import TelemetryChannel


def load_schema(value: str) -> dict:
    """Schema from a JSON string or a path to a JSON file"""
    if value.lstrip().startswith("{"):
        return json.loads(value)
    return json.loads(Path(value).read_text())


def print_progress(batch):
    print(f"  [{batch.processed}/{batch.total}] ok={batch.success} failed={batch.failure}", flush=True)


async def collect_results(store, job_ids):
    rows = []
    for job_id in job_ids:
        job = await store.get_job(job_id)
        result = await store.get_result(job_id)
        rows.append({
            'job_id': job_id,
            'url': job.url if job else None,
            'status': job.status.value if job else None,
            'error': job.error if job else None,
            'content': result.content if result else None,
        })
    return rows


async def dispatch(args) -> int:
    settings = load_settings()
    schema = load_schema(args.schema)

    if args.urls_file:
        raw_urls = Path(args.urls_file).read_text()
    else:
        raw_urls = sys.stdin.read()

    store = create_store()
    if isinstance(store, PostgresJobStore):
        await store.ensure_schema()

    manager = JobLifecycleManager(
        store=store,
        fetcher=HTTPClient(timeout=settings.fetch_timeout),
        extractor=SchemaExtractor(OpenRouterCompletionService(timeout=settings.inference_timeout)),
        telemetry=TelemetryChannel(store),
        max_chars=max_chars_for_tier(args.tier) if args.tier else settings.max_content_chars,
        job_timeout=settings.job_timeout,
    )
    dispatcher = BulkDispatcher(
        manager,
        concurrency=args.concurrency or settings.bulk_concurrency,
        pacing_seconds=(args.pacing_ms / 1000.0) if args.pacing_ms is not None else settings.bulk_pacing_seconds,
        max_urls=settings.bulk_max_urls,
    )

    try:
        batch = await dispatcher.run(raw_urls, schema, on_progress=print_progress)
    except EmptyBatch as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except (BatchTooLarge, InvalidSchema) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print()
    print("=" * 60)
    print(f"Batch {batch.id}")
    print(f"  total:     {batch.total}")
    print(f"  processed: {batch.processed}")
    print(f"  success:   {batch.success}")
    print(f"  failure:   {batch.failure}")
    if batch.cancelled:
        print("  (cancelled)")
    print("=" * 60)

    if args.out:
        rows = await collect_results(store, batch.job_ids)
        Path(args.out).write_text(json.dumps(rows, indent=2, default=str))
        print(f"Results written to {args.out}")

    return 0 if batch.failure == 0 else 1


if __name__ == '__main__':
    import argparse

    load_dotenv()

    parser = argparse.ArgumentParser(description='Run one extraction schema over many URLs')
    parser.add_argument('--urls-file', help='File with one URL per line (default: stdin)')
    parser.add_argument('--schema', required=True, help='Target schema as JSON, or a path to a JSON file')
    parser.add_argument('--concurrency', type=int, default=None, help='Jobs in flight at once')
    parser.add_argument('--pacing-ms', type=int, default=None, help='Minimum milliseconds between dispatches')
    parser.add_argument('--tier', choices=['lite', 'standard', 'deep'], default=None,
                        help='Sanitized content size tier')
    parser.add_argument('--out', help='Write per-job results to this JSON file')
    parser.add_argument('--follow', action='store_true', help='Print job log entries as they happen')

    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("APEXSCRAPE_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s %(name)s %(message)s",
    )
    if args.follow:
        # Telemetry entries are mirrored to this logger
        follow_handler = logging.StreamHandler(sys.stdout)
        follow_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", "%H:%M:%S"))
        telemetry_logger = logging.getLogger("pipeline.telemetry")
        telemetry_logger.setLevel(logging.INFO)
        telemetry_logger.addHandler(follow_handler)
        telemetry_logger.propagate = False

    try:
        sys.exit(asyncio.run(dispatch(args)))
    except json.JSONDecodeError as e:
        print(f"ERROR: --schema is not valid JSON: {e}", file=sys.stderr)
        sys.exit(1)
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
