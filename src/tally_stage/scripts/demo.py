"""Command line harness for the counter maintenance strategies."""
from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import DriftDetected, TallyError
from tally_stage.core.settings import settings
from tally_stage.db.session import build_engine, build_session_factory, create_tables, drop_tables
from tally_stage.models import Post, User
from tally_stage.repositories.aggregate_store import AggregateStore
from tally_stage.repositories.record_store import RecordStore
from tally_stage.scripts.migrate import run_upgrade_head
from tally_stage.services.change_listener import ChangeFeedListener
from tally_stage.services.counters import COUNTERS
from tally_stage.services.counting import OnDemandCounter
from tally_stage.services.faults import FAULT_POINTS, FaultInjector
from tally_stage.services.pipelines import MutationAttempt, MutationPipeline, build_pipeline
from tally_stage.services.reconciler import Reconciler
from tally_stage.services.scenarios import SCENARIOS, seed_entities

STRATEGIES = ("unprotected", "transactional", "event", "on_demand")


def _print_attempt(attempt: MutationAttempt) -> None:
    record_id = attempt.record.id if attempt.record else None
    print(
        f"[demo] {attempt.strategy} {attempt.action} {attempt.kind} id={record_id} "
        f"state={attempt.state.value} consistent={attempt.consistent}"
    )
    if attempt.error is not None:
        print(f"[demo]   error: {attempt.error}")


def _pipeline(args: argparse.Namespace, factory: sessionmaker[Session]) -> MutationPipeline:
    faults = FaultInjector()
    if args.fail_at:
        faults.arm(args.fail_at)
    return build_pipeline(args.strategy, RecordStore(factory), faults=faults)


def _drain_if_event(args: argparse.Namespace, factory: sessionmaker[Session]) -> None:
    if args.strategy == "event":
        applied = ChangeFeedListener(factory).drain()
        print(f"[demo] listener applied {applied} event(s)")


def cmd_init_db(args: argparse.Namespace, factory: sessionmaker[Session]) -> int:
    if args.drop:
        drop_tables(args.engine)
        print("[demo] dropped all tables")
    if args.alembic:
        run_upgrade_head(args.url)
        print("[demo] migrated to head")
        return 0
    create_tables(args.engine)
    print("[demo] created tables")
    return 0


def cmd_seed(args: argparse.Namespace, factory: sessionmaker[Session]) -> int:
    seed = seed_entities(factory, users=args.users, posts=args.posts)
    print(f"[demo] users={seed.user_ids} posts={seed.post_ids}")
    return 0


def cmd_like(args: argparse.Namespace, factory: sessionmaker[Session]) -> int:
    attempt = _pipeline(args, factory).create(
        "like", {"user_id": args.user, "post_id": args.post}
    )
    _print_attempt(attempt)
    _drain_if_event(args, factory)
    return 0


def cmd_unlike(args: argparse.Namespace, factory: sessionmaker[Session]) -> int:
    attempt = _pipeline(args, factory).delete("like", args.like_id)
    _print_attempt(attempt)
    _drain_if_event(args, factory)
    return 0


def cmd_report(args: argparse.Namespace, factory: sessionmaker[Session]) -> int:
    aggregates = AggregateStore(factory)
    counter = OnDemandCounter(factory)
    names = args.counter or list(COUNTERS)
    with factory() as db:
        owners = {
            "user": list(db.execute(select(User.id).order_by(User.id)).scalars()),
            "post": list(db.execute(select(Post.id).order_by(Post.id)).scalars()),
        }
    for name in names:
        entity = name.split(".", 1)[0]
        actual = counter.count_many(name, owners[entity])
        print(f"[demo] {name} ({counter.cost_hint(name)})")
        for owner_id in owners[entity]:
            stored = aggregates.read(name, owner_id) or 0
            marker = "" if stored == actual[owner_id] else "  <- drift"
            print(
                f"[demo]   {entity} {owner_id}: stored={stored} "
                f"actual={actual[owner_id]}{marker}"
            )
    return 0


def cmd_reconcile(args: argparse.Namespace, factory: sessionmaker[Session]) -> int:
    report = Reconciler(factory).scan(args.counter or None, repair=args.repair)
    print(
        f"[demo] checked={report.entities_checked} mismatches={report.mismatch_count} "
        f"corrected={len(report.corrected)}"
    )
    for mismatch in report.mismatches:
        print(
            f"[demo]   {mismatch.counter}[{mismatch.owner_id}] "
            f"stored={mismatch.stored} actual={mismatch.actual}"
        )
    if args.strict:
        report.raise_for_drift()
    return 0


def cmd_scenario(args: argparse.Namespace, factory: sessionmaker[Session]) -> int:
    result = SCENARIOS[args.name](factory)
    print(
        f"[demo] scenario {result.name}: {result.counter}[{result.owner_id}] "
        f"stored={result.stored} actual={result.actual}"
    )
    for note in result.notes:
        print(f"[demo]   {note}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tally-demo",
        description="Reproduce and repair denormalized counter drift",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Override database URL (defaults to effective settings URL)",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create the schema")
    init_db.add_argument("--drop", action="store_true", help="Drop all tables first")
    init_db.add_argument(
        "--alembic", action="store_true", help="Run migrations instead of create_all"
    )
    init_db.set_defaults(func=cmd_init_db)

    seed = sub.add_parser("seed", help="Create users and posts with consistent aggregates")
    seed.add_argument("--users", type=int, default=3)
    seed.add_argument("--posts", type=int, default=1)
    seed.set_defaults(func=cmd_seed)

    for name, func, help_text in (
        ("like", cmd_like, "Like a post"),
        ("unlike", cmd_unlike, "Remove a like"),
    ):
        action = sub.add_parser(name, help=help_text)
        if name == "like":
            action.add_argument("--user", type=int, required=True)
            action.add_argument("--post", type=int, required=True)
        else:
            action.add_argument("like_id", type=int)
        action.add_argument("--strategy", choices=STRATEGIES, default=settings.counter_strategy)
        action.add_argument(
            "--fail-at",
            choices=sorted(FAULT_POINTS),
            default=None,
            help="Inject one fault at this point",
        )
        action.set_defaults(func=func)

    report = sub.add_parser("report", help="Show stored versus true counts")
    report.add_argument("--counter", action="append", choices=sorted(COUNTERS))
    report.set_defaults(func=cmd_report)

    reconcile = sub.add_parser("reconcile", help="Detect and optionally repair drift")
    reconcile.add_argument("--counter", action="append", choices=sorted(COUNTERS))
    reconcile.add_argument("--repair", action="store_true")
    reconcile.add_argument("--strict", action="store_true", help="Exit non-zero on drift")
    reconcile.set_defaults(func=cmd_reconcile)

    scenario = sub.add_parser("scenario", help="Run a canned drift scenario")
    scenario.add_argument("name", choices=sorted(SCENARIOS))
    scenario.set_defaults(func=cmd_scenario)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = build_engine(
        args.url or settings.effective_database_url,
        isolation_level=settings.record_store_isolation_level,
        echo=settings.sql_debug,
    )
    factory = build_session_factory(engine)
    args.engine = engine
    try:
        if args.command != "init-db":
            create_tables(engine)
        return args.func(args, factory)
    except DriftDetected as exc:
        print(f"[demo] DRIFT: {exc}", file=sys.stderr)
        return 2
    except TallyError as exc:
        print(f"[demo] ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
