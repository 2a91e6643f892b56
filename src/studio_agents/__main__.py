"""Entry point for `python -m studio_agents` and the `studio-agents` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from studio_agents.models import ArtifactKind, Stage
from studio_agents.service import StudioAgentService
from studio_agents.settings import RuntimeSettings


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run and curate studio analysis agents")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Directory the state store root is resolved against (default: cwd)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run one analysis stage for a session")
    run.add_argument("stage", choices=[stage.value for stage in Stage])
    run.add_argument("--session", required=True, help="Session ID")
    run.add_argument("--user", required=True, help="Acting user ID")
    run.add_argument(
        "--snapshot-file",
        type=Path,
        default=None,
        help="JSON input snapshot; solutions and sequencing default to the session's committed artifacts",
    )
    run.add_argument("--force", action="store_true", help="Bypass the fingerprint cache")

    artifacts = subparsers.add_parser("artifacts", help="Show current artifacts for a stage")
    artifacts.add_argument("stage", choices=[stage.value for stage in Stage])
    artifacts.add_argument("--session", required=True, help="Session ID")

    set_status = subparsers.add_parser("set-status", help="Change a theme or solution status")
    set_status.add_argument("kind", choices=[ArtifactKind.THEME.value, ArtifactKind.SOLUTION.value])
    set_status.add_argument("artifact_id")
    set_status.add_argument("status")
    set_status.add_argument("--revision", type=int, required=True, help="Revision the caller last read")
    set_status.add_argument("--user", required=True, help="Acting user ID")

    runs = subparsers.add_parser("runs", help="List run records for a session")
    runs.add_argument("--session", required=True, help="Session ID")
    runs.add_argument("--stage", choices=[stage.value for stage in Stage], default=None)
    return parser.parse_args(argv)


def load_snapshot(service: StudioAgentService, stage: Stage, session_id: str, snapshot_file: Path | None) -> Any:
    if snapshot_file is not None:
        if not snapshot_file.is_file():
            raise FileNotFoundError(f"Snapshot file does not exist: {snapshot_file}")
        return json.loads(snapshot_file.read_text(encoding="utf-8"))
    if stage == Stage.SOLUTIONS:
        return service.build_solutions_snapshot(session_id)
    if stage == Stage.SEQUENCING:
        return service.build_sequencing_snapshot(session_id)
    raise ValueError("synthesis requires --snapshot-file")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1
    repo_root = args.repo_root.resolve() if args.repo_root is not None else Path.cwd()
    service = StudioAgentService.from_settings(settings, repo_root=repo_root)

    if args.command == "run":
        stage = Stage(args.stage)
        try:
            snapshot = load_snapshot(service, stage, args.session, args.snapshot_file)
        except (OSError, ValueError) as exc:
            logging.error("Unable to load input snapshot: %s", exc)
            return 1
        response = service.run_stage(stage, args.session, snapshot, user_id=args.user, force_rerun=args.force)
    elif args.command == "artifacts":
        response = service.get_artifacts(args.session, args.stage)
    elif args.command == "set-status":
        response = service.update_artifact_status(
            args.kind, args.artifact_id, args.revision, args.status, user_id=args.user
        )
    else:
        stage = Stage(args.stage) if args.stage is not None else None
        records = service.ledger.list_runs(args.session, stage)
        print(json.dumps([record.model_dump(mode="json", exclude={"output"}) for record in records], indent=2))
        return 0

    print(json.dumps(response.to_dict(), indent=2, default=str))
    return 0 if response.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
