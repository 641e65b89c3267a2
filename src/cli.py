#!/usr/bin/env python3
"""CLI entry point for the reconciler.

Verbs:
- plan: Show the changes needed to reach the desired state
- apply: Plan, then execute the change-set
- destroy: Delete every tracked resource
- validate: Check a document without touching providers
- show: Print tracked resource state
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

# Verb commands and their descriptions
VERB_COMMANDS = {
    "plan": "Show changes needed to reach the desired state",
    "apply": "Plan and execute changes",
    "destroy": "Delete all tracked resources",
    "validate": "Validate a resource document",
    "show": "Show tracked resource state",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get the installed distribution version."""
    try:
        return version('iac-reconciler')
    except PackageNotFoundError:
        return 'dev'


def print_usage() -> None:
    """Print top-level usage."""
    print("Usage: reconciler <verb> [options]")
    print()
    print("Verbs:")
    for verb, description in VERB_COMMANDS.items():
        print(f"  {verb:<10}{description}")
    print()
    print("Run 'reconciler <verb> --help' for verb-specific options.")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to the verb-specific handler.

    Args:
        verb: The verb command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from reconciler import cli as verbs

    handlers = {
        "plan": verbs.plan_main,
        "apply": verbs.apply_main,
        "destroy": verbs.destroy_main,
        "validate": verbs.validate_main,
        "show": verbs.show_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"iac-reconciler {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in VERB_COMMANDS:
        return dispatch_verb(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 2


if __name__ == '__main__':
    sys.exit(main())
