from __future__ import annotations

import argparse
import json

from release_guard.domain.deployment_state_machine import DeploymentNotFoundError
from release_guard.services.deployment_orchestrator import DeploymentOrchestrator, get_orchestrator


def _not_found(deployment_id: str | None) -> int:
    print(json.dumps({"error": "deployment_not_found", "deployment_id": deployment_id}))
    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and drive the deployment history")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list")
    subparsers.add_parser("current")
    subparsers.add_parser("stuck")
    subparsers.add_parser("metrics")

    get_parser = subparsers.add_parser("get")
    get_parser.add_argument("--deployment-id", required=True)

    start_parser = subparsers.add_parser("start")
    start_parser.add_argument("--revision", required=True)
    start_parser.add_argument("--ref", required=True)
    start_parser.add_argument("--initiated-by", default="cli")

    health_parser = subparsers.add_parser("health-check")
    health_parser.add_argument("--deployment-id", required=True)

    rollback_parser = subparsers.add_parser("rollback")
    rollback_parser.add_argument("--deployment-id", required=True)
    return parser


def run(args: argparse.Namespace, orchestrator: DeploymentOrchestrator) -> int:
    if args.command == "list":
        print(json.dumps([item.to_dict() for item in orchestrator.list_all()]))
        return 0

    if args.command == "current":
        try:
            print(json.dumps(orchestrator.current().to_dict()))
        except DeploymentNotFoundError:
            return _not_found(None)
        return 0

    if args.command == "get":
        try:
            print(json.dumps(orchestrator.get(args.deployment_id).to_dict()))
        except DeploymentNotFoundError:
            return _not_found(args.deployment_id)
        return 0

    if args.command == "start":
        try:
            record = orchestrator.start(args.revision, args.ref, args.initiated_by)
        except ValueError as exc:
            print(json.dumps({"error": str(exc)}))
            return 1
        print(json.dumps(record.to_dict()))
        return 0

    if args.command == "health-check":
        try:
            healthy = orchestrator.health_check(args.deployment_id)
        except DeploymentNotFoundError:
            return _not_found(args.deployment_id)
        print(json.dumps({"deployment_id": args.deployment_id, "healthy": healthy}))
        return 0 if healthy else 1

    if args.command == "rollback":
        outcome = orchestrator.rollback_with_outcome(args.deployment_id)
        print(json.dumps(outcome.to_dict()))
        return 0 if outcome.success else 1

    if args.command == "stuck":
        print(json.dumps([item.to_dict() for item in orchestrator.report_stuck()]))
        return 0

    if args.command == "metrics":
        print(json.dumps(orchestrator.metrics(), default=str))
        return 0

    print(json.dumps({"error": "unsupported_command"}))
    return 1


def main() -> int:
    args = build_parser().parse_args()
    orchestrator = get_orchestrator()
    try:
        return run(args, orchestrator)
    finally:
        orchestrator.notifier.close()


if __name__ == "__main__":
    raise SystemExit(main())
