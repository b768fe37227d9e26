"""
Unified CLI entry point for the PostSecret AI pipeline.

Usage:
    psai create-job ./secrets.zip
    psai import front.jpg --back back.jpg
    psai start 1
    psai run 1 --interval 2
    psai errors 1
    psai similar 42 --limit 5
    psai search "lonely at christmas"
    psai serve --port 8000

Every command prints JSON to stdout; failures print {"error": ...} and
exit with status 1.
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import replace
from typing import Any, List, Optional

from .pipeline.bulk_jobs import InvalidTransitionError, JobCreationError, JobNotFoundError
from .pipeline.services import Services, build_services
from .utils.config import PipelineConfig, get_config

logger = logging.getLogger(__name__)


class CLIError(Exception):
    pass


def _emit(data: Any):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _services(args) -> Services:
    config = PipelineConfig.from_app_config(get_config())
    if args.db:
        config = replace(config, storage=replace(config.storage, db_path=args.db))
    return build_services(config)


# ── Job subcommands ─────────────────────────────────────────────────

def cmd_create_job(svc: Services, args):
    job = svc.bulk.create_job(args.files, args.source)
    _emit(job.to_dict())


def cmd_reclassify(svc: Services, args):
    job = svc.bulk.create_reclassify_job(args.subject_ids)
    _emit(job.to_dict())


def cmd_jobs(svc: Services, args):
    _emit([j.to_dict() for j in svc.bulk.list_jobs(args.limit)])


def cmd_job(svc: Services, args):
    data = svc.bulk.get_job(args.job_id).to_dict()
    data["item_counts"] = svc.store.status_counts(args.job_id)
    _emit(data)


def cmd_start(svc: Services, args):
    _emit(svc.bulk.start_job(args.job_id).to_dict())


def cmd_pause(svc: Services, args):
    _emit(svc.bulk.pause_job(args.job_id).to_dict())


def cmd_stop(svc: Services, args):
    _emit(svc.bulk.stop_job(args.job_id).to_dict())


def cmd_step(svc: Services, args):
    _emit(svc.bulk.process_batch(args.job_id, args.batch_size).to_dict())


def cmd_run(svc: Services, args, sleep=time.sleep):
    """Polling driver: step the job until it leaves 'running'."""
    job = svc.bulk.get_job(args.job_id)
    if args.start and job.status != "running":
        job = svc.bulk.start_job(args.job_id)

    steps = 0
    totals = {"processed": 0, "succeeded": 0, "failed": 0}
    while True:
        result = svc.bulk.process_batch(args.job_id, args.batch_size)
        steps += 1
        totals["processed"] += result.processed
        totals["succeeded"] += result.succeeded
        totals["failed"] += result.failed
        logger.info(
            f"Job {args.job_id} step {steps}: {result.processed} processed "
            f"({result.succeeded} ok, {result.failed} failed), status={result.status}"
        )
        if result.status != "running":
            break
        if args.max_steps and steps >= args.max_steps:
            break
        sleep(args.interval)

    _emit({"job_id": args.job_id, "steps": steps, "status": result.status, **totals})


def cmd_retry(svc: Services, args):
    _emit({"job_id": args.job_id, "reset": svc.bulk.retry_failed(args.job_id)})


def cmd_errors(svc: Services, args):
    _emit([i.to_dict() for i in svc.bulk.get_errors(args.job_id, args.limit)])


def cmd_export_errors(svc: Services, args):
    body = svc.bulk.export_errors_csv(args.job_id)
    if args.output:
        with open(args.output, "w", encoding="utf-8", newline="") as f:
            f.write(body)
        _emit({"job_id": args.job_id, "output": args.output})
    else:
        sys.stdout.write(body)


def cmd_delete(svc: Services, args):
    if not svc.bulk.delete_job(args.job_id):
        raise JobNotFoundError(f"Job {args.job_id} not found.")
    _emit({"job_id": args.job_id, "deleted": True})


# ── Secret subcommands ──────────────────────────────────────────────

def cmd_import(svc: Services, args):
    outcome = svc.ingest.import_secret(args.front, args.back, force=args.force)
    _emit(outcome.to_dict())
    if not outcome.result.success:
        raise CLIError(outcome.result.error or "Classification failed.")


def cmd_classify(svc: Services, args):
    if args.back_id:
        result = svc.orchestrator.process(args.subject_id, args.back_id, args.force)
    else:
        result = svc.orchestrator.process_subject(args.subject_id, force=args.force)
    _emit(result.to_dict())
    if not result.success:
        raise CLIError(result.error or "Classification failed.")


def cmd_similar(svc: Services, args):
    hits = svc.searcher.find_similar(args.subject_id, limit=args.limit, min_score=args.min_score)
    _emit([{"subject_id": h.subject_id, "score": h.score} for h in hits])


def cmd_search(svc: Services, args):
    filters = json.loads(args.filters) if args.filters else None
    hits = svc.searcher.search_text(args.query, limit=args.limit,
                                    min_score=args.min_score, filters=filters)
    _emit([{"subject_id": h.subject_id, "score": h.score} for h in hits])


def cmd_serve(args):
    """FastAPI server."""
    import uvicorn
    uvicorn.run(
        "postsecret_ai.server.app:app",
        host=args.host,
        port=args.port,
        workers=1,
        log_level="info",
    )


HANDLERS = {
    "create-job": cmd_create_job,
    "reclassify": cmd_reclassify,
    "jobs": cmd_jobs,
    "job": cmd_job,
    "start": cmd_start,
    "pause": cmd_pause,
    "stop": cmd_stop,
    "step": cmd_step,
    "run": cmd_run,
    "retry": cmd_retry,
    "errors": cmd_errors,
    "export-errors": cmd_export_errors,
    "delete": cmd_delete,
    "import": cmd_import,
    "classify": cmd_classify,
    "similar": cmd_similar,
    "search": cmd_search,
}


# ── Main ────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="psai",
        description="PostSecret AI classification pipeline",
    )
    parser.add_argument("--db", help="SQLite database path (overrides config)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    # Jobs
    p = sub.add_parser("create-job", help="Stage images/ZIPs as a new bulk job")
    p.add_argument("files", nargs="+", help="Image files and/or ZIP archives")
    p.add_argument("--source", help="Source descriptor override")

    p = sub.add_parser("reclassify", help="Bulk job re-running existing secrets")
    p.add_argument("subject_ids", nargs="+", type=int)

    p = sub.add_parser("jobs", help="List recent jobs")
    p.add_argument("--limit", type=int, default=50)

    for name, help_text in (
        ("job", "Show one job"),
        ("start", "Start or resume a job"),
        ("pause", "Pause a running job"),
        ("stop", "Stop a job"),
        ("retry", "Requeue error/quarantined items"),
        ("delete", "Delete a job and its staging files"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("job_id", type=int)

    p = sub.add_parser("step", help="Process one batch")
    p.add_argument("job_id", type=int)
    p.add_argument("--batch-size", type=int)

    p = sub.add_parser("run", help="Step a job until it stops running")
    p.add_argument("job_id", type=int)
    p.add_argument("--batch-size", type=int)
    p.add_argument("--interval", type=float, default=1.0, help="Seconds between steps")
    p.add_argument("--max-steps", type=int, default=0, help="0 = unlimited")
    p.add_argument("--start", action="store_true", help="Start the job first")

    p = sub.add_parser("errors", help="List failed items")
    p.add_argument("job_id", type=int)
    p.add_argument("--limit", type=int, default=100)

    p = sub.add_parser("export-errors", help="Failed items as CSV")
    p.add_argument("job_id", type=int)
    p.add_argument("--output", "-o")

    # Secrets
    p = sub.add_parser("import", help="Import and classify one secret (front + optional back)")
    p.add_argument("front", help="Front image")
    p.add_argument("--back", help="Back image")
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("classify", help="Classify one secret")
    p.add_argument("subject_id", type=int)
    p.add_argument("--back-id", type=int)
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("similar", help="Secrets similar to one secret")
    p.add_argument("subject_id", type=int)
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--min-score", type=float, default=0.5)

    p = sub.add_parser("search", help="Free-text semantic search")
    p.add_argument("query")
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--min-score", type=float, default=0.3)
    p.add_argument("--filters", help='JSON object, e.g. {"topics": ["love"]}')

    # Server
    p = sub.add_parser("serve", help="FastAPI server")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--host", default="127.0.0.1")

    return parser


def main(argv: Optional[List[str]] = None, services: Optional[Services] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "serve":
        cmd_serve(args)
        return 0

    svc = services or _services(args)
    try:
        HANDLERS[args.command](svc, args)
        return 0
    except (JobCreationError, JobNotFoundError, InvalidTransitionError, CLIError, ValueError) as e:
        print(json.dumps({"error": str(e)}, ensure_ascii=False), file=sys.stderr)
        return 1
    finally:
        if services is None:
            svc.close()


if __name__ == "__main__":
    sys.exit(main())
