"""Headless command line for the posting engine.

The CLI owns all I/O: it reads JSON input files, prints JSON results on
stdout and maps domain errors to exit codes. Business rules stay in the
core and transactions in :class:`PostingEngineService`.

Example::

    >>> from tp_posting.infra import cli
    >>> cli.main(["--db", "tp.db", "init-db"])  # doctest: +SKIP
    0
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Sequence

from tp_posting import __version__
from tp_posting.core.auto_posting import SLOT_ORDERINGS, AutoPostingOptions
from tp_posting.core.common.errors import (
    ConflictError,
    NotFoundError,
    PostingEngineError,
    StorageFailure,
    ValidationError,
)
from tp_posting.core.common.types import AuthorContext
from tp_posting.core.policy_loader import DEFAULT_POLICY_PATH, EnginePolicy, load_policy
from tp_posting.core.quota import KEEP_NOTES
from tp_posting.infra.errors import InfraError, ReferenceDataError
from tp_posting.infra.local_database import LocalDatabase
from tp_posting.infra.logging import DEFAULT_LOGGING_CONFIG, EngineLogContext, configure_logging
from tp_posting.infra.service import PostingEngineService

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("tp_posting.db")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_VALIDATION = 2
EXIT_NOT_FOUND = 3
EXIT_CONFLICT = 4
EXIT_QA_FAILED = 5

_EXIT_BY_KIND = {
    ValidationError.kind: EXIT_VALIDATION,
    NotFoundError.kind: EXIT_NOT_FOUND,
    ConflictError.kind: EXIT_CONFLICT,
}

Runner = Callable[[argparse.Namespace, PostingEngineService], int]


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _read_json(path: str) -> Any:
    source = Path(path)
    if not source.exists():
        raise ValidationError(f"Input file not found: {source}")
    try:
        return json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Input file {source} is not valid JSON: {exc}") from exc


def _author(args: argparse.Namespace) -> AuthorContext:
    return AuthorContext(
        user_id=args.user_id,
        is_dean=args.dean,
        is_admin=args.admin,
        faculty_id=args.author_faculty,
    )


# ------------------------------------------------------------------ runners
def _run_init_db(args: argparse.Namespace, service: PostingEngineService) -> int:
    service.initialize()
    _emit({"database": str(args.db), "initialized": True})
    return EXIT_OK


def _run_seed(args: argparse.Namespace, service: PostingEngineService) -> int:
    payload = _read_json(args.file)
    if not isinstance(payload, dict):
        raise ValidationError("Seed file must hold a JSON object keyed by section")
    _emit({"seeded": service.seed(payload)})
    return EXIT_OK


def _run_validate(args: argparse.Namespace, service: PostingEngineService) -> int:
    result = service.validate(
        args.session,
        {
            "supervisor_id": args.supervisor,
            "school_id": args.school,
            "group_number": args.group,
            "visit_number": args.visit,
        },
    )
    _emit(result.as_dict())
    if result.valid:
        return EXIT_OK
    return _EXIT_BY_KIND.get(result.error_kind or "", EXIT_VALIDATION)


def _run_submit_batch(args: argparse.Namespace, service: PostingEngineService) -> int:
    rows = _read_json(args.file)
    if isinstance(rows, dict):
        rows = rows.get("postings", [])
    if not isinstance(rows, list):
        raise ValidationError("Batch file must hold a JSON list of postings")
    result = service.submit_batch(args.session, rows, _author(args))
    _emit(result.as_dict())
    return EXIT_OK


def _run_auto_post(args: argparse.Namespace, service: PostingEngineService) -> int:
    if args.action == "history":
        history = service.auto_posting_history(args.session, limit=args.limit, offset=args.offset)
        _emit([record.as_dict() for record in history])
        return EXIT_OK
    required = (("--session", args.session), ("--user-id", args.user_id))
    missing = [flag for flag, value in required if value is None]
    if missing:
        raise ValidationError(f"auto-post run requires {' and '.join(missing)}")
    options = AutoPostingOptions(
        faculty_id=args.faculty,
        max_visits=args.max_visits,
        max_assignments=args.max_assignments,
        priority_enabled=args.priority or service.policy.priority_enabled,
        slot_ordering=args.ordering or service.policy.default_slot_ordering,
        dry_run=args.dry_run,
    )
    result = service.auto_post(args.session, options, _author(args))
    _emit(result.as_dict())
    return EXIT_OK


def _run_rollback(args: argparse.Namespace, service: PostingEngineService) -> int:
    _emit(service.rollback_auto_posting(args.batch))
    return EXIT_OK


def _run_cancel(args: argparse.Namespace, service: PostingEngineService) -> int:
    _emit(service.cancel_posting(args.posting).as_dict())
    return EXIT_OK


def _run_allowance(args: argparse.Namespace, service: PostingEngineService) -> int:
    breakdown = service.calculate_allowance(
        args.session, args.distance, rank=args.rank, visit_count=args.visits
    )
    _emit(breakdown.as_dict())
    return EXIT_OK


def _run_dean(args: argparse.Namespace, service: PostingEngineService) -> int:
    action = args.dean_command
    if action == "allocate":
        allocation = service.allocate_dean(
            args.session,
            args.dean_user,
            args.postings,
            faculty_id=args.faculty,
            notes=args.notes,
            allocated_by=args.allocated_by,
        )
        _emit(allocation.as_dict())
    elif action == "update":
        notes = None if args.clear_notes else (KEEP_NOTES if args.notes is None else args.notes)
        _emit(service.update_dean_allocation(args.allocation, args.postings, notes).as_dict())
    elif action == "delete":
        service.delete_dean_allocation(args.allocation)
        _emit({"deleted": args.allocation})
    elif action == "list":
        _emit([allocation.as_dict() for allocation in service.list_dean_allocations(args.session)])
    elif action == "stats":
        _emit(service.posting_stats(args.session).as_dict())
    elif action == "mine":
        allocation = service.my_allocation(args.session, args.dean_user)
        _emit(allocation.as_dict() if allocation is not None else None)
    elif action == "my-postings":
        allocation = service.my_allocation(args.session, args.dean_user)
        _emit(
            {
                "allocation": allocation.as_dict() if allocation is not None else None,
                "postings": [posting.as_dict() for posting in service.my_postings(args.session, args.dean_user)],
            }
        )
    else:
        raise RuntimeError(f"Unsupported dean command: {action}")
    return EXIT_OK


def _run_summary(args: argparse.Namespace, service: PostingEngineService) -> int:
    _emit(service.allowance_summary(args.session))
    return EXIT_OK


def _run_qa(args: argparse.Namespace, service: PostingEngineService) -> int:
    report = service.run_qa(args.session)
    _emit(report.as_dict())
    return EXIT_OK if report.passed else EXIT_QA_FAILED


_RUNNERS: dict[str, Runner] = {
    "init-db": _run_init_db,
    "seed": _run_seed,
    "validate": _run_validate,
    "submit-batch": _run_submit_batch,
    "auto-post": _run_auto_post,
    "rollback": _run_rollback,
    "cancel": _run_cancel,
    "allowance": _run_allowance,
    "dean": _run_dean,
    "summary": _run_summary,
    "qa": _run_qa,
}


# ------------------------------------------------------------------- parser
def _add_author_arguments(cmd: argparse.ArgumentParser, *, required: bool = True) -> None:
    cmd.add_argument("--user-id", type=int, required=required, default=None, help="id of the submitting user")
    cmd.add_argument("--dean", action="store_true", help="submit as a dean (quota-bound)")
    cmd.add_argument("--admin", action="store_true", help="submit with admin rights")
    cmd.add_argument(
        "--author-faculty",
        type=int,
        default=None,
        help="faculty of the submitting dean",
    )


def _build_parser() -> argparse.ArgumentParser:
    """Build the parser with one subcommand per engine operation."""

    parser = argparse.ArgumentParser(prog="tp-posting", description="Teaching-practice posting engine")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", default=str(_DEFAULT_DB_PATH), help="path of the SQLite database")
    parser.add_argument("--policy", default=str(DEFAULT_POLICY_PATH), help="path of engine_policy.json")
    parser.add_argument(
        "--log-config",
        default=str(DEFAULT_LOGGING_CONFIG),
        help="YAML logging config (skipped when the file is missing)",
    )
    parser.add_argument("--log-dir", default=None, help="directory for log files and error reports")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create the database schema")

    seed_cmd = sub.add_parser("seed", help="upsert reference data from a JSON file")
    seed_cmd.add_argument("--file", required=True, help="JSON object keyed by section")

    validate_cmd = sub.add_parser("validate", help="check one candidate without writing")
    validate_cmd.add_argument("--session", type=int, required=True)
    validate_cmd.add_argument("--supervisor", type=int, required=True)
    validate_cmd.add_argument("--school", type=int, required=True)
    validate_cmd.add_argument("--group", type=int, required=True)
    validate_cmd.add_argument("--visit", type=int, required=True)

    batch_cmd = sub.add_parser("submit-batch", help="post a batch of candidates")
    batch_cmd.add_argument("--session", type=int, required=True)
    batch_cmd.add_argument("--file", required=True, help="JSON list of postings")
    _add_author_arguments(batch_cmd)

    auto_cmd = sub.add_parser("auto-post", help="fill open slots automatically, or list past runs")
    auto_cmd.add_argument("action", nargs="?", choices=("run", "history"), default="run")
    auto_cmd.add_argument("--session", type=int, default=None, help="required for run; filters history")
    auto_cmd.add_argument("--faculty", type=int, default=None, help="restrict to one faculty")
    auto_cmd.add_argument("--max-visits", type=int, default=None)
    auto_cmd.add_argument("--max-assignments", type=int, default=None)
    auto_cmd.add_argument("--priority", action="store_true", help="favour rank priority and distance")
    auto_cmd.add_argument("--ordering", choices=sorted(SLOT_ORDERINGS), default=None)
    auto_cmd.add_argument("--dry-run", action="store_true", help="preview without writing")
    auto_cmd.add_argument("--limit", type=int, default=20, help="history page size")
    auto_cmd.add_argument("--offset", type=int, default=0, help="history page offset")
    _add_author_arguments(auto_cmd, required=False)

    rollback_cmd = sub.add_parser("rollback", help="undo an auto-posting run")
    rollback_cmd.add_argument("--batch", type=int, required=True)

    cancel_cmd = sub.add_parser("cancel", help="cancel a posting and its dependents")
    cancel_cmd.add_argument("--posting", type=int, required=True)

    allowance_cmd = sub.add_parser("allowance", help="compute the allowance for a rank and distance")
    allowance_cmd.add_argument("--session", type=int, required=True)
    allowance_cmd.add_argument("--rank", type=int, required=True)
    allowance_cmd.add_argument("--distance", type=float, required=True)
    allowance_cmd.add_argument("--visits", type=int, default=1)

    dean_cmd = sub.add_parser("dean", help="manage dean posting quotas")
    dean_sub = dean_cmd.add_subparsers(dest="dean_command", required=True)
    allocate_cmd = dean_sub.add_parser("allocate")
    allocate_cmd.add_argument("--session", type=int, required=True)
    allocate_cmd.add_argument("--dean-user", type=int, required=True)
    allocate_cmd.add_argument("--postings", type=int, required=True)
    allocate_cmd.add_argument("--faculty", type=int, default=None)
    allocate_cmd.add_argument("--notes", default=None)
    allocate_cmd.add_argument("--allocated-by", type=int, default=None)
    update_cmd = dean_sub.add_parser("update")
    update_cmd.add_argument("--allocation", type=int, required=True)
    update_cmd.add_argument("--postings", type=int, required=True)
    notes_opts = update_cmd.add_mutually_exclusive_group()
    notes_opts.add_argument("--notes", default=None)
    notes_opts.add_argument("--clear-notes", action="store_true")
    delete_cmd = dean_sub.add_parser("delete")
    delete_cmd.add_argument("--allocation", type=int, required=True)
    for name in ("list", "stats"):
        dean_sub.add_parser(name).add_argument("--session", type=int, required=True)
    for name, text in (("mine", "own allocation of a dean"), ("my-postings", "postings a dean created")):
        own_cmd = dean_sub.add_parser(name, help=text)
        own_cmd.add_argument("--session", type=int, required=True)
        own_cmd.add_argument("--dean-user", type=int, required=True)

    summary_cmd = sub.add_parser("summary", help="allowance totals for a session")
    summary_cmd.add_argument("--session", type=int, required=True)

    qa_cmd = sub.add_parser("qa", help="run posting invariants for a session")
    qa_cmd.add_argument("--session", type=int, required=True)

    return parser


def _setup_logging(args: argparse.Namespace) -> EngineLogContext | None:
    config_path = Path(args.log_config)
    if not config_path.exists():
        return None
    return configure_logging(version=__version__, config_path=config_path, log_dir=args.log_dir)


def _error_exit(exc: PostingEngineError) -> int:
    _emit({"error": exc.to_dict()})
    return _EXIT_BY_KIND.get(exc.kind, EXIT_FATAL)


def main(
    argv: Sequence[str] | None = None,
    *,
    policy: EnginePolicy | None = None,
) -> int:
    """CLI entry point; 0 means success."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    log_context = _setup_logging(args)

    try:
        engine_policy = policy or load_policy(Path(args.policy))
    except (FileNotFoundError, ValueError, TypeError) as exc:
        print(f"invalid engine policy: {exc}", file=sys.stderr)
        return EXIT_FATAL

    service = PostingEngineService(LocalDatabase(Path(args.db)), engine_policy)
    runner = _RUNNERS.get(args.command)
    if runner is None:
        raise RuntimeError(f"Unsupported command: {args.command}")
    try:
        if args.command != "init-db":
            service.initialize()
        return runner(args, service)
    except PostingEngineError as exc:
        logger.info("%s rejected: %s", args.command, exc)
        return _error_exit(exc)
    except ReferenceDataError as exc:
        _emit({"error": {"kind": "validation", "section": exc.section, "message": exc.message}})
        return EXIT_VALIDATION
    except (StorageFailure, InfraError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"fatal: {exc}", file=sys.stderr)
        if log_context is not None:
            report = log_context.write_failure_report(
                exc,
                operation=args.command,
                session_id=getattr(args, "session", None),
                batch_id=getattr(args, "batch", None),
            )
            print(f"failure report: {report}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    raise SystemExit(main())
