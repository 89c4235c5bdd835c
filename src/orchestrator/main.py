"""Main entry point for the tier orchestrator.

Loads the deployment manifest, provisions every tier through the shell
adapters, binds secrets and logs the terminal report. SIGINT/SIGTERM raise
the run-level cancellation signal: in-flight tasks finish or abort, nothing
new starts.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC
from pathlib import Path

from .actions import CommandContentionProbe, ShellCommandAction, binding_client_for
from .config import ConfigurationError, OrchestratorConfig
from .deployment import Orchestrator, binding_requests_from_manifest, plan_from_manifest
from .graph import PlanValidationError
from .scheduler import RunState
from .spec_loader import SpecLoadError, load_manifest

EXIT_CODES: dict[RunState, int] = {
    RunState.COMPLETED: 0,
    RunState.PARTIALLY_FAILED: 3,
    RunState.CANCELLED: 4,
}


def setup_logging() -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        reserved = frozenset(
            {
                "name",
                "msg",
                "args",
                "created",
                "filename",
                "funcName",
                "levelname",
                "levelno",
                "lineno",
                "module",
                "msecs",
                "pathname",
                "process",
                "processName",
                "relativeCreated",
                "stack_info",
                "exc_info",
                "exc_text",
                "thread",
                "threadName",
                "taskName",
                "message",
            }
        )

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in self.reserved:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


async def main() -> int:
    """Run one deployment.

    Returns:
        Exit code: 0 Completed, 1 configuration or load error, 3 PartiallyFailed,
        4 Cancelled.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = OrchestratorConfig.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting tier orchestrator",
        extra={
            "manifest_path": config.manifest_path,
            "max_concurrency": config.max_concurrency,
            "dry_run": config.dry_run,
        },
    )

    try:
        manifest = load_manifest(Path(config.manifest_path))
        plan = plan_from_manifest(manifest)
    except SpecLoadError as e:
        logger.error("Manifest loading failed", extra={"error": str(e)})
        return 1
    except PlanValidationError as e:
        logger.error("Deployment plan is invalid", extra={"error": str(e)})
        return 1

    if config.dry_run:
        logger.info(
            "Dry run: deployment order",
            extra={"order": plan.topological_order()},
        )
        return 0

    orchestrator = Orchestrator(
        config,
        action=ShellCommandAction(),
        binding_client=binding_client_for(config, manifest.bind_command),
        contention_probe=CommandContentionProbe(manifest.contention),
    )

    # Set up signal handlers for graceful shutdown
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling deployment", extra={"signal": sig.name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        report = await orchestrator.deploy(
            plan, binding_requests_from_manifest(manifest), cancel_event
        )
    except Exception as e:
        logger.exception("Deployment failed unexpectedly", extra={"error": str(e)})
        return 1

    logger.info("Deployment report", extra={"report": report.to_dict()})
    return EXIT_CODES.get(report.state, 1)


def run() -> None:
    """Entry point for the orchestrator CLI."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
