import argparse
import json
import sys
from dataclasses import asdict

from crm_automation.core.observability import log_event, setup_observability, worker_logger
from crm_automation.db.session import SessionLocal
from crm_automation.services.idempotency import get_idempotency_store
from crm_automation.services.job_queue import AUTOMATION_QUEUE, QUEUE_POLICIES, get_queue_policy
from crm_automation.services.readiness import run_readiness_checks
from crm_automation.worker.celery_app import celery_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crm-worker",
        description="Run readiness checks, then consume one CRM job queue.",
    )
    parser.add_argument("--queue", choices=sorted(QUEUE_POLICIES), default=AUTOMATION_QUEUE)
    parser.add_argument("--concurrency", type=int, default=None, help="Defaults to the queue's configured concurrency.")
    parser.add_argument("--beat", action="store_true", help="Also run the periodic job scheduler in this process.")
    parser.add_argument("--check-only", action="store_true", help="Run readiness checks and exit.")
    parser.add_argument("--loglevel", default="INFO")
    return parser


def worker_argv(queue_name: str, *, concurrency: int | None, beat: bool, loglevel: str) -> list[str]:
    policy = get_queue_policy(queue_name)
    argv = [
        "worker",
        "--queues",
        policy.name,
        "--concurrency",
        str(concurrency or policy.concurrency),
        "--hostname",
        f"{policy.name}@%h",
        "--loglevel",
        loglevel,
    ]
    if beat:
        argv.append("--beat")
    return argv


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_observability(args.loglevel)

    checks = run_readiness_checks(
        session_factory=SessionLocal,
        idempotency_store=get_idempotency_store(),
        broker_app=celery_app,
    )
    report = {"ready": all(item.ok for item in checks), "checks": [asdict(item) for item in checks]}
    log_event(worker_logger, "worker_readiness", queue=args.queue, **report)
    if not report["ready"]:
        print(json.dumps(report, indent=2), file=sys.stderr)
        return 1
    if args.check_only:
        print(json.dumps(report, indent=2))
        return 0

    celery_app.worker_main(
        worker_argv(args.queue, concurrency=args.concurrency, beat=args.beat, loglevel=args.loglevel)
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
