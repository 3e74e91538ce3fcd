#!/usr/bin/env python3
"""CLI entry point for azstack.

Noun-action subcommands:
- stack: Infrastructure lifecycle (plan/apply/destroy/validate/show/verify/refresh)
- cloud-init: cloud-init payload utilities (render/validate)
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

from config import ConfigError

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Infrastructure lifecycle (plan/apply/destroy/validate/show/verify/refresh)",
    "cloud-init": "cloud-init payload utilities (render/validate)",
}

STACK_ACTIONS = {
    "plan": "Show changes needed to reach the stack",
    "apply": "Create or update infrastructure from a stack",
    "destroy": "Destroy infrastructure recorded for a stack",
    "validate": "Validate stack structure and references",
    "show": "Show recorded state",
    "verify": "Check NSG rules, SSH, HTTPS and diagnostics",
    "refresh": "Re-read outputs from the cloud",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-S', 'web-lab'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: azstack stack <action> [options]")
        print()
        print("Actions:")
        for action, desc in STACK_ACTIONS.items():
            print(f"  {action:<10} {desc}")
        print()
        print("Run 'azstack stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    from engine import cli as stack_cli
    handlers = {
        "plan": stack_cli.plan_main,
        "apply": stack_cli.apply_main,
        "destroy": stack_cli.destroy_main,
        "validate": stack_cli.validate_main,
        "show": stack_cli.show_main,
        "verify": stack_cli.verify_main,
        "refresh": stack_cli.refresh_main,
    }
    if action in handlers:
        rc: int = handlers[action](rest)
        return rc

    print(f"Error: Unknown stack action '{action}'")
    print(f"Available actions: {', '.join(STACK_ACTIONS)}")
    return 1


def cloud_init_main(argv: list) -> int:
    """Handle 'cloud-init render|validate <file>'."""
    from cloud_init import CloudInitConfig, load_cloud_init

    parser = argparse.ArgumentParser(
        prog='azstack cloud-init',
        description='Render or validate a cloud-init payload',
    )
    parser.add_argument('action', choices=['render', 'validate'])
    parser.add_argument(
        'file',
        nargs='?',
        type=Path,
        help='cloud-config file (omit with render for the default web server payload)',
    )
    args = parser.parse_args(argv)

    try:
        if args.file is None:
            if args.action == 'validate':
                print("Error: validate requires a file", file=sys.stderr)
                return 1
            payload = CloudInitConfig.web_server()
        else:
            payload = load_cloud_init(args.file)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.action == 'render':
        print(payload.render(), end='')
    else:
        print(f"{args.file} is valid (sha256 {payload.fingerprint()[:12]})")
    return 0


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler."""
    if noun == "stack":
        return dispatch_stack(argv)
    if noun == "cloud-init":
        return cloud_init_main(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"azstack {get_version()}")
    print()
    print("Usage: azstack <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'azstack <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  azstack stack validate -S web-lab")
    print("  azstack stack plan -S web-lab -P lab")
    print("  azstack stack apply -S web-lab -P lab")
    print("  azstack stack verify -S web-lab -P lab")
    print("  azstack stack destroy -S web-lab -P lab --yes")
    print("  azstack cloud-init render config/cloud-init/web.yaml")


def main(argv: list | None = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"azstack {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
