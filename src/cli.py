#!/usr/bin/env python3
"""CLI entry point for deploy-driver.

Verbs operate on the configured project (see deploy.yaml):
- plan/apply: one stage (setup or deploy)
- publish: build and push the container image
- deploy: full pipeline (setup, publish, deploy, rollout)
- rollback: return the workload to a previous artifact
- shell: interactive session in a running workload instance
- status/unlock: inspect state and release stuck locks

Nouns:
- scope: Credential scope token utilities (inspect)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Verb commands (handled by deploy_opr.cli)
COMMANDS = {
    "plan": "Show the plan for one stage",
    "apply": "Plan and apply one stage",
    "publish": "Build and publish the container image",
    "deploy": "Run the full deployment pipeline",
    "rollback": "Roll the workload back to a previous artifact",
    "shell": "Open an interactive shell in a running workload",
    "status": "Show stage versions, locks and the last run",
    "unlock": "Force-release a stuck stage lock",
}

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "scope": "Credential scope token utilities (inspect)",
}

EXIT_USAGE = 2


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
    except OSError:
        return 'dev'
    return result.stdout.strip() if result.returncode == 0 else 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing verbs and nouns."""
    print(f"deploy-driver {get_version()}")
    print()
    print("Usage: deploy-driver <command> [options]")
    print()
    print("Commands:")
    for verb, desc in COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'deploy-driver <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  deploy-driver plan setup")
    print("  deploy-driver deploy --dry-run")
    print("  deploy-driver deploy --approve --source-ref $(git rev-parse HEAD)")
    print("  deploy-driver rollback")
    print("  deploy-driver unlock deploy 3f2a9c1e --yes")


def dispatch_command(command: str, argv: list) -> int:
    """Dispatch a verb to its deploy_opr.cli handler.

    Args:
        command: The verb (e.g., "deploy", "plan")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from deploy_opr import cli as deploy_cli

    handler = getattr(deploy_cli, f"{command}_main")
    rc: int = handler(argv)
    return rc


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler."""
    if noun == "scope":
        from scope_cli import main as scope_main
        rc: int = scope_main(argv)
        return rc

    print(f"Error: Unknown noun '{noun}'", file=sys.stderr)
    return EXIT_USAGE


def main(argv=None):
    """CLI entry point."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg == '--version':
        print(f"deploy-driver {get_version()}")
        return 0

    if first_arg in COMMANDS:
        return dispatch_command(first_arg, argv[1:])
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'", file=sys.stderr)
    print_usage()
    return EXIT_USAGE


if __name__ == '__main__':
    sys.exit(main())
