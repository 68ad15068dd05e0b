import json

from crm_automation.services.readiness import ReadinessCheck, check_database, check_idempotency_store, run_readiness_checks
from crm_automation.worker import cli

from fakes import BrokenIdempotencyStore, InMemoryIdempotencyStore


def test_worker_argv_uses_queue_policy():
    assert cli.worker_argv("notification", concurrency=None, beat=False, loglevel="INFO") == [
        "worker",
        "--queues",
        "notification",
        "--concurrency",
        "10",
        "--hostname",
        "notification@%h",
        "--loglevel",
        "INFO",
    ]
    argv = cli.worker_argv("automation", concurrency=2, beat=True, loglevel="DEBUG")
    assert argv[argv.index("--concurrency") + 1] == "2"
    assert argv[-1] == "--beat"


def test_readiness_checks_report_failures(session_local):
    healthy = run_readiness_checks(session_factory=session_local, idempotency_store=InMemoryIdempotencyStore())
    assert [(item.name, item.ok) for item in healthy] == [("database", True), ("idempotency:memory", True)]

    broken = check_idempotency_store(BrokenIdempotencyStore())
    assert broken.ok is False
    assert broken.detail == "store unreachable"
    assert check_database(session_local).latency_ms >= 0


def test_check_only_exits_zero_when_ready(monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_idempotency_store", lambda: InMemoryIdempotencyStore())
    monkeypatch.setattr(
        cli,
        "run_readiness_checks",
        lambda **kwargs: [ReadinessCheck(name="database", ok=True, latency_ms=0.5)],
    )
    started = []
    monkeypatch.setattr(cli.celery_app, "worker_main", lambda argv: started.append(argv))

    assert cli.main(["--queue", "email", "--check-only"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["ready"] is True
    assert started == []


def test_worker_refuses_to_start_when_not_ready(monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_idempotency_store", lambda: InMemoryIdempotencyStore())
    monkeypatch.setattr(
        cli,
        "run_readiness_checks",
        lambda **kwargs: [ReadinessCheck(name="broker", ok=False, latency_ms=3000.0, detail="refused")],
    )
    started = []
    monkeypatch.setattr(cli.celery_app, "worker_main", lambda argv: started.append(argv))

    assert cli.main(["--queue", "automation"]) == 1
    assert started == []
    assert "refused" in capsys.readouterr().err


def test_worker_starts_consuming_when_ready(monkeypatch):
    monkeypatch.setattr(cli, "get_idempotency_store", lambda: InMemoryIdempotencyStore())
    monkeypatch.setattr(
        cli,
        "run_readiness_checks",
        lambda **kwargs: [ReadinessCheck(name="database", ok=True, latency_ms=0.5)],
    )
    started = []
    monkeypatch.setattr(cli.celery_app, "worker_main", lambda argv: started.append(argv))

    assert cli.main(["--queue", "analytics", "--beat"]) == 0
    [argv] = started
    assert argv[:3] == ["worker", "--queues", "analytics"]
    assert "--beat" in argv
