"""
Operator command line for the release engine.

    rollout plan show | set FILE
    rollout release create|start|stop|delete|list|show
    rollout stage STAGE_ID approve|deny
    rollout run RELEASE_ID
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Sequence

import yaml

from rollout.config import Settings, get_settings
from rollout.database import init_db
from rollout.errors import ConfigurationError, ReleaseError
from rollout.observability import setup_observability
from rollout.services import releases as service


def _emit(payload: Any) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json", by_alias=True)
    elif isinstance(payload, list):
        payload = [item.model_dump(mode="json", by_alias=True) for item in payload]
    print(json.dumps(payload, indent=2))


def _load_plan_file(path: str) -> dict:
    # accepts JSON too
    with open(path, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _plan(args) -> None:
    if args.plan_command == "show":
        _emit(service.get_plan(args.connection))
    else:
        _emit(service.update_plan(args.connection, _load_plan_file(args.file)))


def _release(args) -> None:
    command = args.release_command
    if command == "create":
        _emit(service.create_release(args.connection, args.old_version, args.new_version))
    elif command == "start":
        _emit(service.start_release(args.connection))
    elif command == "stop":
        _emit(service.stop_release(args.connection))
    elif command == "delete":
        print(f"Deleted release {service.delete_active_release(args.connection)}")
    elif command == "list":
        _emit(
            service.list_releases(
                args.connection,
                since=args.since,
                until=args.until,
                state=args.state,
                limit=args.limit,
                offset=args.offset,
            )
        )
    elif args.release_id:
        _emit(service.get_release(args.connection, args.release_id))
    else:
        _emit(service.get_active_release(args.connection))


def _stage(args) -> None:
    if args.command:
        _emit(service.stage_command(args.stage_id, args.command))
    else:
        _emit(service.get_stage(args.stage_id))


def _run(args) -> None:
    from rollout.workflow import ReleaseOrchestrator

    state = ReleaseOrchestrator.from_settings(args.release_id, args.connection).run()
    print(f"Release {args.release_id} finished in state {state}")


def _check_backends(args, settings: Settings) -> None:
    """
    Refuse commands whose effect would not outlive this process.

    A ``thread`` workflow dies when the CLI exits, and ``local`` event
    channels are invisible to a workflow running in another process.
    """

    group = args.group
    if group == "release" and args.release_command == "start" and settings.workflow_backend != "celery":
        raise ConfigurationError(
            f"release start needs WORKFLOW_BACKEND=celery (got '{settings.workflow_backend}'); "
            "use `rollout run` to drive a release in the foreground"
        )
    commands = group == "stage" and args.command
    stop = group == "release" and args.release_command == "stop"
    if (commands or stop) and settings.event_backend != "redis":
        raise ConfigurationError(
            f"stage commands and stop need EVENT_BACKEND=redis (got '{settings.event_backend}')"
        )
    if group == "run" and settings.event_backend != "redis":
        print(
            "warning: EVENT_BACKEND is not redis; approvals from other processes will not reach this run",
            file=sys.stderr,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rollout", description="Progressive rollout engine.")
    parser.add_argument(
        "--connection",
        default=None,
        help="Connection id (defaults to DEFAULT_CONNECTION_ID).",
    )
    sub = parser.add_subparsers(dest="group", required=True)

    plan = sub.add_parser("plan", help="Show or replace the release plan.")
    plan_sub = plan.add_subparsers(dest="plan_command", required=True)
    plan_sub.add_parser("show")
    plan_set = plan_sub.add_parser("set")
    plan_set.add_argument("file", help="JSON or YAML plan document.")
    plan.set_defaults(handler=_plan)

    release = sub.add_parser("release", help="Manage releases.")
    release_sub = release.add_subparsers(dest="release_command", required=True)
    create = release_sub.add_parser("create")
    create.add_argument("--old-version", default="")
    create.add_argument("--new-version", default="")
    release_sub.add_parser("start")
    release_sub.add_parser("stop")
    release_sub.add_parser("delete")
    listing = release_sub.add_parser("list")
    listing.add_argument("--since", default=None)
    listing.add_argument("--until", default=None)
    listing.add_argument("--state", default=None)
    listing.add_argument("--limit", type=int, default=50)
    listing.add_argument("--offset", type=int, default=0)
    show = release_sub.add_parser("show")
    show.add_argument("release_id", nargs="?", help="Defaults to the active release.")
    release.set_defaults(handler=_release)

    stage = sub.add_parser("stage", help="Inspect or approve/deny a stage.")
    stage.add_argument("stage_id")
    stage.add_argument("command", nargs="?", choices=["approve", "deny"])
    stage.set_defaults(handler=_stage)

    run = sub.add_parser("run", help="Run a release workflow in the foreground.")
    run.add_argument("release_id")
    run.set_defaults(handler=_run)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    args.connection = args.connection or settings.default_connection_id

    setup_observability(metrics_port=settings.metrics_port)
    init_db()

    try:
        _check_backends(args, settings)
        args.handler(args)
    except ReleaseError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
