"""Main entry point for the contact-legacy provisioner.

Reads the engine configuration and deployment context from the environment,
loads the stack settings, declares the stack and realizes it.

SECURITY:
- Secret values never reach a log line: the JSON formatter masks secret
  DeferredValues and pydantic secret wrappers found in record extras
- SIGTERM/SIGINT cancel the run; in-flight provider calls finish on their own

Exit codes: 0 when every node was realized, 1 otherwise.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from typing import IO, Any

from .azure_provider import AzureResourceProvider, get_credential
from .config import ConfigurationError, EngineConfig
from .context import DeploymentContext
from .deferred import MASKED_VALUE, DeferredValue, is_secret_wrapper
from .engine import ProvisioningEngine, ProvisioningReport
from .provider import PlanProvider, Provider
from .settings import SecretSink
from .stack import build_contact_legacy_stack
from .stack_config import StackLoadError, StackSettings, load_stack_settings

# LogRecord attributes that are not extras
RESERVED_RECORD_ATTRS = frozenset(
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


def redact(value: Any) -> Any:
    """Replace secret values with a masked marker, recursing into containers."""
    if isinstance(value, DeferredValue):
        return MASKED_VALUE if value.is_secret else repr(value)
    if is_secret_wrapper(value):
        return MASKED_VALUE
    if isinstance(value, dict):
        return {key: redact(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [redact(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_RECORD_ATTRS:
                log_data[key] = redact(value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: IO[str] | None = None) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_provider(ctx: DeploymentContext, config: EngineConfig) -> Provider:
    """Pick the provider for a run: dry-run plan or Azure.

    Raises:
        ConfigurationError: If an Azure run has no subscription.
    """
    if config.dry_run:
        if ctx.subscription_id:
            return PlanProvider(ctx.subscription_id)
        return PlanProvider()

    if not ctx.subscription_id:
        raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required unless PROVISIONER_DRY_RUN")

    credential = get_credential(os.environ.get("AZURE_CLIENT_ID"))
    return AzureResourceProvider(credential, ctx.subscription_id, ctx.location)


async def run_stack(
    ctx: DeploymentContext,
    settings: StackSettings,
    config: EngineConfig,
    provider: Provider,
    sink: SecretSink | None = None,
) -> ProvisioningReport:
    """Declare the stack and realize it, cancelling on SIGTERM/SIGINT."""
    logger = logging.getLogger(__name__)
    stack = build_contact_legacy_stack(ctx, settings)
    engine = ProvisioningEngine(provider, ctx, config, sink)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        engine.cancel()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            continue
        installed.append(sig)

    try:
        return await engine.run(stack.nodes, stack.exports)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def main() -> int:
    """Run the provisioner.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = EngineConfig.from_env()
        settings = load_stack_settings(
            config.stacks_dir, os.environ.get("PROVISIONER_STACK", "")
        )
        ctx = DeploymentContext.from_env(default_tenant_id=settings.tenant_id)
        provider = create_provider(ctx, config)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1
    except StackLoadError as e:
        logger.error("Stack settings loading failed", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting contact-legacy provisioner",
        extra={
            "stack": ctx.stack_name,
            "subscription_id": ctx.subscription_id,
            "location": ctx.location,
            "dry_run": config.dry_run,
        },
    )

    try:
        report = await run_stack(ctx, settings, config, provider)
    except ConfigurationError as e:
        logger.error("Stack composition failed", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    return 0 if report.success else 1


def run() -> None:
    """Entry point for the provisioner runner."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
