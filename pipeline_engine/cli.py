"""Command line interface for the pipeline engine."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as ModelValidationError

from .config import (
    AppConfig,
    LogLevel,
    get_development_config,
    get_testing_config,
    load_config,
    validate_config
)
from .core.exceptions import WorkflowEngineError
from .core.logging import configure_logging, get_logger
from .models.core import ExecutionRequest, NodeStatus, RunOutcome, RunRecord, Workflow
from .templates import instantiate_template, list_templates

_EXIT_CODES = {
    RunOutcome.SUCCEEDED: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.PARTIAL: 2,
}


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="pipeline-engine",
        description="Pipeline Engine - validate and execute node-based generation workflows"
    )

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument(
        "--config",
        help="Path to a .env configuration file"
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides configuration)"
    )
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level (overrides configuration)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow JSON file")
    validate_parser.add_argument("file", type=Path, help="Workflow JSON file")

    run_parser = subparsers.add_parser("run", help="Execute a workflow and print its run record")
    source = run_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("file", type=Path, nargs="?", help="Workflow JSON file; saved before running")
    source.add_argument("--workflow-id", help="ID of a stored workflow")
    run_parser.add_argument("--concurrency", type=int, help="Maximum nodes in flight")
    run_parser.add_argument("--timeout-ms", type=int, help="Per-node timeout in milliseconds")
    run_parser.add_argument("--max-attempts", type=int, help="Maximum attempts per node")
    run_parser.add_argument("--output", type=Path, help="Write the full run record as JSON to this file")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve_parser.add_argument("--host", help="Host to bind the server to")
    serve_parser.add_argument("--port", type=int, help="Port to bind the server to")

    subparsers.add_parser("init-db", help="Create database tables")

    templates_parser = subparsers.add_parser("templates", help="List workflow templates")
    templates_parser.add_argument("--create", metavar="NAME", help="Save a new workflow from the named template")
    templates_parser.add_argument("--workflow-id", help="ID for the created workflow")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = LogLevel(args.log_level)
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    return config.model_copy(update=overrides) if overrides else config


def read_workflow(path: Path) -> Workflow:
    """Parse a workflow JSON file."""
    with open(path, "r", encoding="utf-8") as handle:
        return Workflow.model_validate(json.load(handle))


def validate_command(config: AppConfig, path: Path) -> int:
    from .core.validator import GraphValidator

    report = GraphValidator().check(read_workflow(path))
    print(json.dumps(report.to_json_dict(), indent=2))
    return 0 if report.is_valid else 1


def print_run_summary(record: RunRecord) -> None:
    print(f"Run {record.run_id} of workflow {record.workflow_id}: {record.outcome.value if record.outcome else 'unfinished'}")
    for node_id, node in record.nodes.items():
        line = f"  {node_id}: {node.status.value} (attempts={node.attempts})"
        if node.status == NodeStatus.FAILED and node.error is not None:
            line += f" - {node.error.error_code}: {node.error.message}"
        print(line)


async def run_command(config: AppConfig, args: argparse.Namespace) -> int:
    from .factory import build_components

    components = build_components(config)
    try:
        workflow_id = args.workflow_id
        if args.file is not None:
            saved = await asyncio.to_thread(components.store.save, read_workflow(args.file))
            workflow_id = saved.id

        request = ExecutionRequest(
            workflow_id=workflow_id,
            concurrency_limit=args.concurrency,
            per_node_timeout_ms=args.timeout_ms,
            max_retries=args.max_attempts,
        )
        record = await components.engine.run(request)
    finally:
        await components.aclose()

    print_run_summary(record)
    if args.output:
        args.output.write_text(json.dumps(record.to_json_dict(), indent=2), encoding="utf-8")
    return _EXIT_CODES.get(record.outcome, 1)


def run_server(config: AppConfig):
    """Run the HTTP API server."""
    import uvicorn

    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server on {config.host}:{config.port}")
    uvicorn.run(create_app(config), **{**config.get_uvicorn_config(), "reload": False})


def init_database(config: AppConfig):
    from .storage.database import create_tables, get_database_engine

    logger = get_logger(__name__)
    logger.info("Initializing database tables...")
    engine = get_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )
    create_tables(engine)
    logger.info("Database tables created successfully")


def templates_command(config: AppConfig, create: Optional[str], workflow_id: Optional[str]) -> int:
    if create is None:
        for summary in list_templates():
            print(f"{summary.id}: {summary.name} ({summary.node_count} nodes, {summary.edge_count} edges)")
        return 0

    from .factory import build_components

    workflow = instantiate_template(create, workflow_id=workflow_id)
    components = build_components(config)
    try:
        saved = components.store.save(workflow)
    finally:
        asyncio.run(components.aclose())
    print(f"Created workflow {saved.id} from template '{create}'")
    return 0


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrency: {config.max_concurrency}")
    print(f"  Node Timeout: {config.node_timeout}s")
    print(f"  Max Attempts: {config.max_retries}")
    print(f"  Service URL: {config.service_base_url or '(not configured)'}")
    print(f"  Download Dir: {config.download_dir}")


def main(argv=None) -> int:
    """Main entry point for the command line interface."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    try:
        config = load_configuration(args)
        validate_config(config)
        configure_logging(config)

        if args.command == "validate":
            return validate_command(config, args.file)
        elif args.command == "run":
            return asyncio.run(run_command(config, args))
        elif args.command == "serve":
            run_server(config)
        elif args.command == "init-db":
            init_database(config)
        elif args.command == "templates":
            return templates_command(config, args.create, args.workflow_id)
        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                print("Configuration validation: PASSED")
            else:
                print("Configuration command required. Use --help for options.")
                return 1
        return 0

    except (WorkflowEngineError, ModelValidationError, OSError, KeyError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
