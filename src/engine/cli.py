"""CLI handlers for stack verbs (plan, apply, destroy, validate, show, verify, refresh).

Usage:
    azstack stack plan -S <stack> [-P profile] [--detailed-exitcode] [--json-output]
    azstack stack apply -S <stack> [-P profile] [--dry-run] [--json-output] [--verbose]
    azstack stack destroy -S <stack> [-P profile] [--dry-run] [--yes]
    azstack stack validate -S <stack> [--verbose]
    azstack stack show -S <stack> [-P profile] [--json-output]
    azstack stack verify -S <stack> [-P profile] [--json-output]
    azstack stack refresh -S <stack> [-P profile]
"""

import argparse
import json
import logging
import sys
import time

from common import format_duration
from config import ConfigError, list_profiles, load_profile
from engine.executor import StackExecutor
from engine.graph import ResourceGraph
from engine.state import StackState
from providers import ProviderError, get_provider
from stack import load_stack
from verify import validate_preflight, verify_stack

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = 'lab'


def _add_stack_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--stack', '-S',
        help='Stack name from config/stacks/',
    )
    parser.add_argument(
        '--stack-file',
        help='Path to stack file',
    )
    parser.add_argument(
        '--stack-json',
        help='Inline stack JSON',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for stack verbs."""
    parser = argparse.ArgumentParser(
        prog=f'azstack stack {verb}',
        description=description,
    )
    _add_stack_args(parser)
    available = list_profiles()
    parser.add_argument(
        '--profile', '-P',
        default=DEFAULT_PROFILE,
        help=f'Deployment profile (default: {DEFAULT_PROFILE}). '
             f'Available: {", ".join(available) if available else "local"}',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight checks (az installed and logged in)',
    )
    return parser


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


def _load_stack(args):
    """Load the stack named by args; exits on error."""
    if not args.stack and not args.stack_file and not args.stack_json:
        print("Error: specify a stack with -S, --stack-file, or --stack-json", file=sys.stderr)
        sys.exit(1)
    try:
        return load_stack(name=args.stack, file_path=args.stack_file, json_str=args.stack_json)
    except ConfigError as e:
        print(f"Error loading stack: {e}", file=sys.stderr)
        sys.exit(1)


def _load_stack_and_profile(args):
    """Load stack and profile from parsed args.

    Returns:
        (stack, config) tuple

    Raises:
        SystemExit: On validation errors
    """
    stack = _load_stack(args)
    try:
        config = load_profile(args.profile)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    return stack, config


def _build_executor(args, stack, config, dry_run: bool = False) -> StackExecutor:
    return StackExecutor(
        stack=stack,
        graph=ResourceGraph(stack),
        config=config,
        provider=get_provider(config, timeout=stack.settings.timeout),
        dry_run=dry_run,
    )


def _run_preflight(args, config) -> int | None:
    """Run preflight checks.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight or getattr(args, 'dry_run', False):
        return None

    errors = validate_preflight(config)
    if errors:
        print("\nPre-flight validation failed:", file=sys.stderr)
        for error in errors:
            for i, line in enumerate(error.split('\n')):
                prefix = "  ✗ " if i == 0 else "    "
                print(f"{prefix}{line}", file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
        return 1
    logger.debug("Pre-flight validation passed")
    return None


def _state_nodes(state: StackState) -> list[dict]:
    nodes = []
    for name, rs in state.resources.items():
        node_data = {'name': name, 'type': rs.type, 'status': rs.status}
        if rs.outputs:
            node_data['outputs'] = rs.outputs
        if rs.duration is not None:
            node_data['duration'] = round(rs.duration, 2)
        if rs.error is not None:
            node_data['error'] = rs.error
        nodes.append(node_data)
    return nodes


def _emit_json(verb: str, success: bool, state: StackState, duration: float) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'stack': state.stack_name,
        'success': success,
        'duration_seconds': round(duration, 2),
        'resources': _state_nodes(state),
    }
    print(json.dumps(output, indent=2))


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan', 'Show changes needed to reach the stack')
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Diff against saved state only (no cloud reads)',
    )
    parser.add_argument(
        '--detailed-exitcode',
        action='store_true',
        help='Exit 2 when changes are pending',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_profile(args)
    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    executor = _build_executor(args, stack, config)
    try:
        plan = executor.plan(refresh=False if args.no_refresh else None)
    except (ConfigError, ProviderError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(plan.format())

    if args.detailed_exitcode and plan.has_changes:
        return 2
    return 0


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply', 'Create or update infrastructure from a stack')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_profile(args)
    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    logger.info(f"Applying stack '{stack.name}' with profile '{config.name}'")
    executor = _build_executor(args, stack, config, dry_run=args.dry_run)

    start = time.time()
    context: dict = {}
    success, state = executor.apply(context)
    duration = time.time() - start

    if args.json_output:
        _emit_json('apply', success, state, duration)
    elif not args.dry_run:
        logger.info(f"Apply {'succeeded' if success else 'FAILED'} in {format_duration(duration)}")

    return 0 if success else 1


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy', 'Destroy infrastructure recorded for a stack')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_profile(args)
    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy all resources recorded for stack '{stack.name}'.")
        print(f"Profile: {config.name}")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying stack '{stack.name}' with profile '{config.name}'")
    executor = _build_executor(args, stack, config, dry_run=args.dry_run)

    start = time.time()
    context: dict = {}
    success, state = executor.destroy(context)
    duration = time.time() - start

    if args.json_output:
        _emit_json('destroy', success, state, duration)

    return 0 if success else 1


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb: schema, references, cycles, cloud-init."""
    parser = argparse.ArgumentParser(
        prog='azstack stack validate',
        description='Validate stack structure and references',
    )
    _add_stack_args(parser)
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.stack and not args.stack_file and not args.stack_json:
        print("Error: specify a stack with -S, --stack-file, or --stack-json", file=sys.stderr)
        return 1

    try:
        stack = load_stack(name=args.stack, file_path=args.stack_file, json_str=args.stack_json)
        graph = ResourceGraph(stack)
    except (ConfigError, ValueError) as e:
        print(f"Stack is invalid: {e}", file=sys.stderr)
        return 1

    count = len(stack.resources)
    print(f"Stack '{stack.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    if args.verbose:
        for node in graph.apply_order():
            deps = ', '.join(d.name for d in node.dependencies) or '-'
            print(f"  [{node.depth}] {node.name}: {node.type} (after: {deps})")
    return 0


def show_main(argv: list) -> int:
    """Handle 'stack show' verb: print recorded state."""
    parser = _common_parser('show', 'Show recorded state for a stack')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_profile(args)
    state = StackState.load_or_create(stack.name, config.name, config.state_dir)

    if args.json_output:
        print(json.dumps({'stack': stack.name, 'resources': _state_nodes(state)}, indent=2))
        return 0

    if not state.resources:
        print(f"No state recorded for stack '{stack.name}'")
        return 0

    print(f"Stack '{stack.name}' (profile: {config.name})")
    for name, rs in state.resources.items():
        print(f"  {rs.status:<10} {rs.type:<24} {name}  {format_duration(rs.duration)}")
        for key in ('ip_address', 'public_ip', 'private_ip', 'customer_id'):
            if rs.outputs.get(key):
                print(f"      {key}={rs.outputs[key]}")
        if rs.error:
            print(f"      error: {rs.error}")
    return 0


def verify_main(argv: list) -> int:
    """Handle 'stack verify' verb: post-apply checks."""
    parser = _common_parser('verify', 'Verify deployed resources behave as declared')
    parser.add_argument(
        '--timeout',
        type=float,
        default=10.0,
        help='Network probe timeout in seconds (default: 10)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_profile(args)
    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    state = StackState.load_or_create(stack.name, config.name, config.state_dir)
    results = verify_stack(
        stack, get_provider(config, timeout=stack.settings.timeout), state,
        check_network=not config.is_local,
        timeout=args.timeout,
    )
    ok = all(r.ok for r in results)

    if args.json_output:
        print(json.dumps({
            'stack': stack.name,
            'success': ok,
            'checks': [r.to_dict() for r in results],
        }, indent=2))
    else:
        for result in results:
            mark = "✓" if result.ok else "✗"
            print(f"  {mark} {result.name}: {result.message}")
            if not result.ok and result.hint:
                print(f"      hint: {result.hint}")

    return 0 if ok else 1


def refresh_main(argv: list) -> int:
    """Handle 'stack refresh' verb: re-read outputs from the cloud."""
    parser = _common_parser('refresh', 'Update recorded outputs from the cloud')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_profile(args)
    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    executor = _build_executor(args, stack, config)
    try:
        missing, state = executor.refresh()
    except ProviderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({'stack': stack.name, 'missing': missing}, indent=2))
    elif missing:
        print(f"Missing in cloud (will be recreated on apply): {', '.join(missing)}")
    else:
        print(f"All {len(state.live_resources)} recorded resources present")
    return 0
