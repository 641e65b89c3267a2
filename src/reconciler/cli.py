"""CLI handlers for reconciler verbs (plan, apply, destroy, validate, show).

Usage:
    reconciler plan -f <document> [--var KEY=VALUE] [--json-output]
    reconciler apply -f <document> [--dry-run] [--concurrency N] [--report-dir DIR]
    reconciler destroy [--yes] [--dry-run]
    reconciler validate -f <document>
    reconciler show [--json-output]

Exit codes:
    0  success (plan: always, once a change-set is computed)
    1  a resource failed or was skipped, or observed state could not be read
    2  invalid document, graph, settings or unknown resource kind
"""

import argparse
import json
import logging
import signal
import sys
from contextlib import contextmanager
from typing import Optional

from config import ConfigError, Settings, load_settings
from manifest import Manifest, load_manifest, merge_variables
from reconciler.apply import ApplyEngine, ApplyReport
from reconciler.errors import (
    GraphError,
    PlanError,
    ProviderError,
    StateStoreError,
    UnknownKindError,
)
from reconciler.graph import ResourceGraph, build_graph
from reconciler.plan import ChangeSet, Planner
from reconciler.registry import ProviderRegistry, build_registry
from reconciler.state import StateStore
from reporting.report import ReportWriter, format_changeset, format_report

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

# Raised before any provider call; nothing has changed when these surface
INVALID_INPUT_ERRORS = (ConfigError, GraphError, UnknownKindError, PlanError)
RUNTIME_ERRORS = (ProviderError, StateStoreError)


def _common_parser(verb: str, needs_document: bool = True) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'reconciler {verb}',
        description=f'{verb.capitalize()} resources from a declarative document',
    )
    if needs_document:
        parser.add_argument(
            '--file', '-f',
            help='Path to resource document (YAML or JSON)',
        )
        parser.add_argument(
            '--document-json',
            help='Inline resource document JSON',
        )
        parser.add_argument(
            '--var',
            action='append',
            metavar='KEY=VALUE',
            help='Set a variable (repeatable, overrides --var-file)',
        )
        parser.add_argument(
            '--var-file',
            action='append',
            help='YAML/JSON file of variables (repeatable)',
        )
    parser.add_argument(
        '--config', '-c',
        help='Settings file (default: $RECONCILER_CONFIG or ./reconciler.yaml)',
    )
    parser.add_argument(
        '--state-dir',
        help='State directory (overrides settings)',
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


def _add_apply_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print the plan without executing it',
    )
    parser.add_argument(
        '--concurrency',
        type=int,
        help='Max independent resources applied in parallel (overrides settings)',
    )
    parser.add_argument(
        '--report-dir',
        help='Write JSON and markdown reports to this directory',
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


def _error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def _load_settings(args) -> Settings:
    settings = load_settings(args.config)
    return settings.with_overrides(
        state_dir=getattr(args, 'state_dir', None),
        concurrency=getattr(args, 'concurrency', None),
        report_dir=getattr(args, 'report_dir', None),
    )


def _load_document(args) -> tuple[Manifest, ResourceGraph]:
    """Load the resource document and build its graph.

    Raises:
        ConfigError: If no document given or the document is invalid
        GraphError: If the graph is invalid
    """
    if not args.file and not args.document_json:
        raise ConfigError("specify a resource document with -f/--file or --document-json")

    manifest = load_manifest(file_path=args.file, json_str=args.document_json)
    variables = merge_variables(manifest, args.var_file, args.var)
    graph = build_graph(manifest.resources, variables)
    return manifest, graph


def _prepare(args) -> tuple[Settings, Manifest, ResourceGraph, ProviderRegistry]:
    """Load settings, document, graph and providers; check every kind is served."""
    settings = _load_settings(args)
    manifest, graph = _load_document(args)
    registry = build_registry(settings)
    registry.validate(graph)
    return settings, manifest, graph, registry


def _planner(graph, registry, store, settings: Settings) -> Planner:
    return Planner(
        graph=graph,
        registry=registry,
        store=store,
        timeout=settings.operation_timeout,
        max_retries=settings.max_retries,
        backoff_base=settings.backoff_base,
        backoff_max=settings.backoff_max,
    )


def _engine(registry, store, settings: Settings) -> ApplyEngine:
    return ApplyEngine(
        registry=registry,
        store=store,
        max_retries=settings.max_retries,
        backoff_base=settings.backoff_base,
        backoff_max=settings.backoff_max,
        timeout=settings.operation_timeout,
        concurrency=settings.concurrency,
    )


@contextmanager
def _cancel_on_interrupt(engine: ApplyEngine):
    """Route SIGINT to engine.cancel() for the duration of a run."""
    def _handle_sigint(_signum, _frame):
        engine.cancel()

    installed = False
    try:
        previous = signal.signal(signal.SIGINT, _handle_sigint)
        installed = True
    except ValueError:
        # Not the main thread; leave signal handling alone
        pass
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous)


def _emit_json(verb: str, changeset: ChangeSet, report: Optional[ApplyReport] = None) -> None:
    """Emit structured JSON output."""
    output: dict = {
        'verb': verb,
        'plan': changeset.to_dict(),
    }
    if report is not None:
        output['success'] = report.success
        output['report'] = report.to_dict()
    print(json.dumps(output, indent=2))


def _execute(verb: str, args, settings: Settings, registry, store, changeset: ChangeSet,
             name: str) -> int:
    """Apply a planned change-set and report the outcome."""
    engine = _engine(registry, store, settings)
    try:
        with _cancel_on_interrupt(engine):
            report = engine.apply(changeset)
    except StateStoreError as e:
        _error(f"state store failure, run aborted: {e}")
        report = getattr(e, 'report', None)
        if report is not None and not args.json_output:
            print(format_report(report))
        return EXIT_FAILED

    if settings.report_dir is not None:
        try:
            paths = ReportWriter(report_dir=settings.report_dir, name=name).write(report, verb)
            logger.info(f"Report written to {paths[0]}")
        except OSError as e:
            logger.error(f"Cannot write report to {settings.report_dir}: {e}")

    if args.json_output:
        _emit_json(verb, changeset, report)
    else:
        print(format_report(report))

    return EXIT_OK if report.success else EXIT_FAILED


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan')
    parser.add_argument(
        '--show-unchanged',
        action='store_true',
        help='List no-op entries too',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings, manifest, graph, registry = _prepare(args)
        with StateStore(settings.state_dir) as store:
            changeset = _planner(graph, registry, store, settings).plan()
    except INVALID_INPUT_ERRORS as e:
        _error(str(e))
        return EXIT_INVALID
    except RUNTIME_ERRORS as e:
        _error(f"cannot read observed state: {e}")
        return EXIT_FAILED

    if args.json_output:
        _emit_json('plan', changeset)
    else:
        print(format_changeset(changeset, show_noop=args.show_unchanged))
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb: plan, then execute the change-set."""
    parser = _common_parser('apply')
    _add_apply_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings, manifest, graph, registry = _prepare(args)
    except INVALID_INPUT_ERRORS as e:
        _error(str(e))
        return EXIT_INVALID

    try:
        with StateStore(settings.state_dir) as store:
            changeset = _planner(graph, registry, store, settings).plan()
            if not args.json_output:
                print(format_changeset(changeset))

            if args.dry_run:
                if args.json_output:
                    _emit_json('apply', changeset)
                return EXIT_OK

            logger.info(f"Applying '{manifest.name}' ({len(changeset.changes)} changes)")
            return _execute('apply', args, settings, registry, store, changeset, manifest.name)
    except INVALID_INPUT_ERRORS as e:
        _error(str(e))
        return EXIT_INVALID
    except RUNTIME_ERRORS as e:
        _error(str(e))
        return EXIT_FAILED


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb: delete every tracked resource."""
    parser = _common_parser('destroy', needs_document=False)
    _add_apply_options(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        registry = build_registry(settings)
    except INVALID_INPUT_ERRORS as e:
        _error(str(e))
        return EXIT_INVALID

    try:
        with StateStore(settings.state_dir) as store:
            changeset = _planner(None, registry, store, settings).plan_destroy()
            if not args.json_output:
                print(format_changeset(changeset))

            if args.dry_run or changeset.is_empty:
                if args.json_output:
                    _emit_json('destroy', changeset)
                return EXIT_OK

            # Confirmation for destructive operation
            if not args.yes:
                print(f"\nWARNING: This will delete {len(changeset)} tracked resource(s).")
                print(f"State directory: {settings.state_dir}")
                print("This action cannot be undone.")
                response = input("Continue? [y/N] ").strip().lower()
                if response != 'y':
                    print("Aborted.")
                    return EXIT_FAILED

            logger.info(f"Destroying {len(changeset)} resource(s)")
            return _execute('destroy', args, settings, registry, store, changeset, 'destroy')
    except INVALID_INPUT_ERRORS as e:
        _error(str(e))
        return EXIT_INVALID
    except RUNTIME_ERRORS as e:
        _error(str(e))
        return EXIT_FAILED


def validate_main(argv: list) -> int:
    """Handle 'validate' verb: document, graph and provider kinds only."""
    parser = _common_parser('validate')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        _settings, manifest, graph, _registry = _prepare(args)
    except INVALID_INPUT_ERRORS as e:
        _error(str(e))
        return EXIT_INVALID

    order = [spec.identifier for spec in graph.topological_order()]
    if args.json_output:
        print(json.dumps({'name': manifest.name, 'valid': True, 'order': order}, indent=2))
    else:
        count = len(graph)
        print(f"Document '{manifest.name}' is valid ({count} resource{'s' if count != 1 else ''})")
        for spec in graph.topological_order():
            deps = f" <- {', '.join(spec.dependencies)}" if spec.dependencies else ''
            logger.debug(f"  {spec.identifier}{deps}")
    return EXIT_OK


def show_main(argv: list) -> int:
    """Handle 'show' verb: print tracked resource state."""
    parser = _common_parser('show', needs_document=False)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        with StateStore(settings.state_dir) as store:
            states = store.list()
    except ConfigError as e:
        _error(str(e))
        return EXIT_INVALID
    except StateStoreError as e:
        _error(str(e))
        return EXIT_FAILED

    if args.json_output:
        print(json.dumps([s.to_dict() for s in states], indent=2))
        return EXIT_OK

    if not states:
        print(f"No resources tracked in {settings.state_dir}")
        return EXIT_OK
    for state in states:
        print(f"{state.identifier}  id={state.external_id}")
        for key in sorted(state.attributes):
            print(f"    {key} = {json.dumps(state.attributes[key])}")
    return EXIT_OK
