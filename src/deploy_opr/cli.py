"""CLI handlers for deployment verbs.

Usage:
    deploy-driver plan <stage> [--json-output] [--verbose]
    deploy-driver apply <stage> [--approve] [--json-output]
    deploy-driver publish [--source-ref SHA] [--tag TAG]
    deploy-driver deploy [--approve] [--dry-run] [--source-ref SHA] [--tag TAG]
    deploy-driver rollback [--to REF]
    deploy-driver shell [<workload-ref>] [--command CMD] [--container NAME]
    deploy-driver status [--json-output]
    deploy-driver unlock <stage> <lock-id> [--yes]
"""

import argparse
import json
import logging
import sys
from typing import Optional

from actions.ecs import EcsWorkloadRuntime
from common import DeployError, run_command
from config import STAGE_ORDER, ConfigError, DriverConfig, load_config
from credentials import STATE_READ, CredentialResolver
from deploy_opr.controller import (
    EXIT_CODES,
    DeploymentController,
    RunState,
    reject_all,
)
from deploy_opr.planner import PlanDiff
from deploy_opr.record import DeploymentRecord, RecordStore
from deploy_opr.shell import ShellBridge
from readiness import format_preflight_results, run_preflight_checks
from state_backend import ObservationUnavailable, create_backend

logger = logging.getLogger(__name__)


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'deploy-driver {verb}',
        description=description,
    )
    parser.add_argument(
        '--config-dir',
        help='Site-config directory (default: auto-discovery, see DEPLOY_DRIVER_CONFIG)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _positive_int(value: str) -> int:
    """argparse type: integer >= 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def _add_mutation_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--approve',
        action='store_true',
        help='Approve destructive plans without prompting',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--source-ref',
        help='Commit the image is built from (default: git HEAD of build context)',
    )
    parser.add_argument(
        '--tag',
        help='Image tag (default: first 12 characters of the source ref)',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_config(args) -> DriverConfig:
    """Load driver config from parsed args.

    Raises:
        SystemExit: On configuration errors
    """
    try:
        return load_config(args.config_dir)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _run_preflight(args, config: DriverConfig, verb: str) -> Optional[int]:
    """Run preflight checks for mutating verbs.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if getattr(args, 'skip_preflight', False) or getattr(args, 'dry_run', False):
        return None

    results = run_preflight_checks(config, verb)
    if not all(ok for _, ok, _ in results):
        print("\nPre-flight validation failed:", file=sys.stderr)
        print(format_preflight_results(results), file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
        return 1
    logger.info("Pre-flight validation passed")
    return None


def _print_plan(diff: PlanDiff, out=None) -> None:
    out = out or sys.stdout
    print(f"\nPlan for stage '{diff.stage}' (base version {diff.base_version}):", file=out)
    symbols = {'create': '+', 'update': '~', 'replace': '-/+', 'destroy': '-', 'no-op': ' '}
    for action in diff.actions:
        line = f"  {symbols[action.action]:>3} {action.node} ({action.type})"
        if action.reason:
            line += f"  [{action.reason}]"
        elif action.changes:
            line += f"  [{', '.join(action.changes)}]"
        print(line, file=out)
    for conflict in diff.conflicts:
        print(f"  ! {conflict['action']} {conflict['node']} blocked by "
              f"{', '.join(conflict['dependents'])}", file=out)
    print(f"\n{diff.summary()}", file=out)


def prompt_approver(diff: PlanDiff) -> bool:
    """Ask the operator to confirm a destructive plan."""
    if not sys.stdin.isatty():
        print("Error: destructive plan requires --approve in non-interactive mode",
              file=sys.stderr)
        return False
    _print_plan(diff, out=sys.stderr)
    print(f"\nWARNING: This plan destroys or replaces resources in stage '{diff.stage}'.",
          file=sys.stderr)
    try:
        response = input("Continue? [y/N] ").strip().lower()
    except EOFError:
        return False
    return response == 'y'


def _build_controller(config: DriverConfig, args) -> DeploymentController:
    runtime = EcsWorkloadRuntime(config)
    return DeploymentController(
        config=config,
        backend=create_backend(config),
        resolver=CredentialResolver(config),
        runtime=runtime,
        approver=reject_all if args.json_output else prompt_approver,
    )


def _resolve_source(args, config: DriverConfig) -> tuple[str, str]:
    source_ref = args.source_ref
    if not source_ref:
        rc, out, err = run_command(['git', 'rev-parse', 'HEAD'], cwd=config.build.context,
                                   timeout=30)
        if rc != 0:
            print(f"Error: cannot determine source ref (use --source-ref): {err.strip()}",
                  file=sys.stderr)
            sys.exit(2)
        source_ref = out.strip()
    return source_ref, args.tag or source_ref[:12]


def _emit_record(verb: str, record: DeploymentRecord) -> None:
    """Emit structured JSON output for a finished run."""
    output = {
        'verb': verb,
        'success': record.outcome == RunState.SUCCEEDED.value,
        'duration_seconds': round(record.duration or 0.0, 2),
        'record': record.to_dict(),
    }
    print(json.dumps(output, indent=2))


def _report(verb: str, record: DeploymentRecord, json_output: bool) -> int:
    if json_output:
        _emit_record(verb, record)
    else:
        print(f"\nRun {record.run_id}: {record.outcome}")
        if record.error:
            where = record.error.get('stage')
            node = record.error.get('node')
            location = f" [{where}{'/' + node if node else ''}]" if where else ''
            print(f"  {record.error['kind']}{location}: {record.error['message']}")
    return EXIT_CODES[RunState(record.outcome)]


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Show the plan for one stage')
    parser.add_argument('stage', choices=STAGE_ORDER, help='Stage to plan')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    controller = _build_controller(config, args)
    try:
        diff = controller.plan_only(args.stage)
    except (DeployError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps(diff.to_dict(), indent=2))
    else:
        _print_plan(diff)
    return 0


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Plan and apply one stage')
    parser.add_argument('stage', choices=STAGE_ORDER, help='Stage to apply')
    _add_mutation_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    preflight_rc = _run_preflight(args, config, 'apply')
    if preflight_rc is not None:
        return preflight_rc

    controller = _build_controller(config, args)
    record = controller.apply_stage(args.stage, approve=args.approve)
    return _report('apply', record, args.json_output)


def publish_main(argv: list) -> int:
    """Handle 'publish' verb."""
    parser = _common_parser('publish', 'Build and publish the container image')
    _add_source_args(parser)
    parser.add_argument('--skip-preflight', action='store_true',
                        help='Skip pre-flight validation checks')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    preflight_rc = _run_preflight(args, config, 'publish')
    if preflight_rc is not None:
        return preflight_rc

    source_ref, tag = _resolve_source(args, config)
    controller = _build_controller(config, args)
    try:
        artifact = controller.publish_only(source_ref, tag)
    except DeployError as e:
        print(f"Error: {e.kind}: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({'verb': 'publish', 'success': True, 'artifact': artifact.to_dict()},
                         indent=2))
    else:
        print(f"Published {artifact.tag_ref}")
        print(f"  digest: {artifact.digest}")
        print(f"  source: {artifact.source_ref}")
    return 0


def _dry_run(controller: DeploymentController, config: DriverConfig, source_ref: str,
             tag: str, json_output: bool) -> int:
    """Print the phases and current plans without mutating anything."""
    try:
        plans = [controller.plan_only(stage) for stage in STAGE_ORDER]
    except (DeployError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    phases = [
        'plan setup',
        'apply setup',
        f'publish {config.registry.image_name}:{tag} from {source_ref}',
        'plan deploy',
        'apply deploy',
        f'roll out {config.workload.ref}',
    ]
    if json_output:
        print(json.dumps({
            'verb': 'deploy',
            'dry_run': True,
            'phases': phases,
            'plans': [p.to_dict() for p in plans],
        }, indent=2))
        return 0

    print("Phases:")
    for i, phase in enumerate(phases, 1):
        print(f"  {i}. {phase}")
    for diff in plans:
        _print_plan(diff)
    print("\n(deploy plan shown against current setup state; recomputed after setup applies)")
    return 0


def deploy_main(argv: list) -> int:
    """Handle 'deploy' verb (full pipeline)."""
    parser = _common_parser('deploy', 'Apply setup, publish, apply deploy and roll out')
    _add_mutation_args(parser)
    _add_source_args(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show phases and plans without executing',
    )
    parser.add_argument(
        '--health-timeout',
        type=_positive_int,
        help='Override rollout.health_timeout (seconds)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    if args.health_timeout is not None:
        config.rollout.health_timeout = args.health_timeout

    preflight_rc = _run_preflight(args, config, 'deploy')
    if preflight_rc is not None:
        return preflight_rc

    source_ref, tag = _resolve_source(args, config)
    controller = _build_controller(config, args)
    if args.dry_run:
        return _dry_run(controller, config, source_ref, tag, args.json_output)

    logger.info(f"Deploying {config.project} from {source_ref} as {tag}")
    record = controller.run(source_ref, tag, approve=args.approve)
    return _report('deploy', record, args.json_output)


def rollback_main(argv: list) -> int:
    """Handle 'rollback' verb."""
    parser = _common_parser('rollback', 'Roll the workload back to a previous artifact')
    parser.add_argument('--to', help='Image reference to roll back to '
                                     '(default: artifact replaced by the last deploy)')
    parser.add_argument('--health-timeout', type=_positive_int,
                        help='Override rollout.health_timeout (seconds)')
    parser.add_argument('--skip-preflight', action='store_true',
                        help='Skip pre-flight validation checks')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    if args.health_timeout is not None:
        config.rollout.health_timeout = args.health_timeout

    preflight_rc = _run_preflight(args, config, 'rollback')
    if preflight_rc is not None:
        return preflight_rc

    controller = _build_controller(config, args)
    try:
        record = controller.rollback(to=args.to)
    except DeployError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return _report('rollback', record, args.json_output)


def shell_main(argv: list) -> int:
    """Handle 'shell' verb."""
    parser = _common_parser('shell', 'Open an interactive shell in a running workload')
    parser.add_argument('workload_ref', nargs='?',
                        help='cluster/service (default: workload from deploy.yaml)')
    parser.add_argument('--command', default='/bin/sh', help='Command to run (default: /bin/sh)')
    parser.add_argument('--container', help='Container name (default: workload.container)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    bridge = ShellBridge(config, EcsWorkloadRuntime(config), CredentialResolver(config))
    try:
        session = bridge.open_shell(args.workload_ref, command=args.command,
                                    container=args.container)
    except DeployError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        session.close()
        print(json.dumps({
            'workload_ref': session.workload_ref,
            'instance': session.instance,
            'container': session.container,
            'argv': session.argv,
        }, indent=2))
        return 0
    return session.run()


def _stage_status(config: DriverConfig, backend, resolver: CredentialResolver,
                  stage: str) -> dict:
    status: dict = {'stage': stage, 'key': config.get_stage(stage).key}
    try:
        with resolver.scoped(stage, (STATE_READ,)) as scope:
            graph = backend.read_state(stage, scope=scope)
        status['version'] = graph.version
        status['resources'] = len(graph)
        status['outputs'] = sorted(graph.outputs)
    except (ObservationUnavailable, DeployError) as e:
        status['error'] = str(e)
    try:
        lock = backend.lock_info(stage)
    except ObservationUnavailable as e:
        status['lock_error'] = str(e)
    else:
        status['lock'] = lock.to_dict() if lock else None
    return status


def status_main(argv: list) -> int:
    """Handle 'status' verb."""
    parser = _common_parser('status', 'Show stage versions, locks and the last run')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    backend = create_backend(config)
    resolver = CredentialResolver(config)
    stages = [_stage_status(config, backend, resolver, s) for s in config.stage_names()]
    latest = RecordStore(config.state.path).latest()

    if args.json_output:
        print(json.dumps({
            'project': config.project,
            'stages': stages,
            'last_run': latest.to_dict() if latest else None,
        }, indent=2))
        return 0

    print(f"Project: {config.project}")
    for s in stages:
        if 'error' in s:
            print(f"  {s['stage']:<8} unreadable: {s['error']}")
            continue
        lock = s.get('lock')
        lock_text = f"locked by {lock['holder']} ({lock['id']})" if lock else 'unlocked'
        print(f"  {s['stage']:<8} version {s['version']}, {s['resources']} resources, {lock_text}")
    if latest:
        print(f"Last run: {latest.run_id} ({latest.operation}) {latest.outcome}")
        if latest.artifact and 'ref' in latest.artifact:
            print(f"  artifact: {latest.artifact['ref']}")
    else:
        print("Last run: none")
    return 0


def unlock_main(argv: list) -> int:
    """Handle 'unlock' verb."""
    parser = _common_parser('unlock', 'Force-release a stuck stage lock')
    parser.add_argument('stage', choices=STAGE_ORDER, help='Stage whose lock to release')
    parser.add_argument('lock_id', help='Lock id (see: deploy-driver status)')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    backend = create_backend(config)
    try:
        lock = backend.lock_info(args.stage)
    except ObservationUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if lock is None or lock.lock_id != args.lock_id:
        print(f"Error: stage '{args.stage}' is not locked with id {args.lock_id}", file=sys.stderr)
        return 1

    if not args.yes:
        print(f"\nWARNING: Lock {lock.lock_id} on '{args.stage}' is held by {lock.holder}.")
        print("Releasing it lets another run write while the holder may still be active.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    if not backend.force_unlock(args.stage, args.lock_id):
        print(f"Error: lock {args.lock_id} was already released", file=sys.stderr)
        return 1
    print(f"Released lock {args.lock_id} on '{args.stage}'")
    return 0
