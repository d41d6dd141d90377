"""Provisioning engine: realizes a resource graph against a provider.

For a run over a list of nodes the engine:
1. Builds the dependency graph from the nodes' registered inputs
2. Rejects cycles and foreign dependencies before any provider call
3. Starts one task per node in topological order (declaration order breaks ties)
4. Each task waits only on its own inputs, then calls the provider under a
   concurrency semaphore, then resolves the node's outputs
5. A failed node fails its outputs; every transitive dependent observes that
   failure on its inputs and is reported as skipped. Independent branches
   continue (partial-failure isolation, not all-or-nothing).

RETRIES: TransientProviderError (throttling, timeouts) is retried with
bounded exponential backoff and jitter; exhausting retries converts it into
ProvisioningFailure. Everything else fails the node immediately.

CANCELLATION: cancel() stops new provider calls, including retries waiting on
backoff; in-flight calls are left to finish or fail on their own.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import BACKOFF_JITTER_RATIO, ConfigurationError, EngineConfig
from .context import DeploymentContext
from .deferred import MASKED_VALUE, DeferredValue
from .dependency import DependencyGraph
from .provider import Provider, ProviderError, ProvisioningFailure, TransientProviderError
from .resources import ResourceNode, ResourceStatus
from .settings import LoggingSecretSink, SecretSink

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


class UpstreamFailedError(Exception):
    """Delivered to dependents through the outputs of a failed or skipped node.

    Carries the name of the node that originally failed.
    """

    def __init__(self, blocked_by: str, cause: BaseException | None = None) -> None:
        self.blocked_by = blocked_by
        self.cause = cause
        super().__init__(f"Blocked by '{blocked_by}'")


@dataclass
class NodeResult:
    """Terminal status of one node."""

    name: str
    kind: str
    status: ResourceStatus
    error: BaseException | None = None
    blocked_by: str | None = None
    attempts: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "status": self.status.value,
            "attempts": self.attempts,
            "duration_seconds": self.duration_seconds,
        }
        if self.error is not None:
            data["error"] = str(self.error)
            data["error_type"] = type(self.error).__name__
        if self.blocked_by is not None:
            data["blocked_by"] = self.blocked_by
        return data


@dataclass
class ProvisioningReport:
    """Result of one engine run: every node's terminal status plus exports."""

    stack_name: str
    results: dict[str, NodeResult] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    exports: dict[str, DeferredValue[Any]] = field(default_factory=dict)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return all(r.status is ResourceStatus.REALIZED for r in self.results.values())

    def names_with_status(self, status: ResourceStatus) -> list[str]:
        return [name for name in self.order if self.results[name].status is status]

    @property
    def realized(self) -> list[str]:
        return self.names_with_status(ResourceStatus.REALIZED)

    @property
    def failed(self) -> list[str]:
        return self.names_with_status(ResourceStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self.names_with_status(ResourceStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        """Serializable summary; secret exports are masked."""
        exports: dict[str, Any] = {}
        for name, value in self.exports.items():
            if not value.done():
                exports[name] = None
            elif value.is_failed:
                exports[name] = {"error": str(value.error)}
            elif value.is_secret:
                exports[name] = MASKED_VALUE
            else:
                exports[name] = value.result()

        return {
            "stack": self.stack_name,
            "success": self.success,
            "cancelled": self.cancelled,
            "duration_seconds": self.duration_seconds,
            "resources": [self.results[name].to_dict() for name in self.order],
            "exports": exports,
        }


class ProvisioningEngine:
    """Walks a resource graph and realizes nodes through a provider.

    The engine is the only component that performs outward calls.
    """

    def __init__(
        self,
        provider: Provider,
        context: DeploymentContext,
        config: EngineConfig | None = None,
        sink: SecretSink | None = None,
    ) -> None:
        self._provider = provider
        self._context = context
        self._config = config or EngineConfig()
        self._sink: SecretSink = sink or LoggingSecretSink()
        self._cancel_event = asyncio.Event()

    @property
    def config(self) -> EngineConfig:
        return self._config

    def cancel(self) -> None:
        """Stop issuing new provider calls."""
        logger.info("Cancellation requested", extra={"stack": self._context.stack_name})
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def run(
        self,
        nodes: Sequence[ResourceNode],
        exports: Mapping[str, DeferredValue[Any]] | None = None,
    ) -> ProvisioningReport:
        """Realize all nodes.

        Args:
            nodes: Nodes in declaration order.
            exports: Stack outputs to report; secret exports go through the sink.

        Returns:
            Report with one terminal status per node.

        Raises:
            CyclicDependencyError: If the graph has a cycle (no provider call made).
            ConfigurationError: On duplicate names, foreign dependencies or
                nodes that were already realized.
        """
        graph = DependencyGraph.from_nodes(nodes)
        order = graph.topological_sort()
        by_name = {node.logical_name: node for node in nodes}

        for node in nodes:
            if node.status is not ResourceStatus.CREATED:
                raise ConfigurationError(
                    f"'{node.logical_name}' is already {node.status.value}; "
                    f"nodes are realized once"
                )

        report = ProvisioningReport(
            stack_name=self._context.stack_name,
            order=order,
            exports=dict(exports or {}),
        )

        logger.info(
            "Starting provisioning run",
            extra={
                "stack": self._context.stack_name,
                "node_count": len(order),
                "order": order,
                "max_concurrency": self._config.max_concurrency,
            },
        )

        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        tasks = []
        for name in order:
            node = by_name[name]
            node.mark_queued()
            report.results[name] = NodeResult(
                name=name, kind=node.kind.value, status=ResourceStatus.QUEUED
            )
            tasks.append(
                asyncio.create_task(
                    self._realize(node, semaphore, report.results[name]),
                    name=f"realize:{name}",
                )
            )

        await asyncio.gather(*tasks)

        self._emit_exports(report)
        report.cancelled = self.cancelled
        report.end_time = datetime.now(UTC)
        self._log_report(report)
        return report

    async def _realize(
        self, node: ResourceNode, semaphore: asyncio.Semaphore, result: NodeResult
    ) -> None:
        try:
            await self._wait_for_inputs(node)
        except UpstreamFailedError as e:
            self._skip(node, result, e)
            return
        except Exception as e:
            # Input transformations raising configuration errors (e.g. an empty
            # identity bound into an access policy) fail this node
            self._fail(node, result, e)
            return

        async with semaphore:
            if self.cancelled:
                self._skip(node, result, UpstreamFailedError(CANCELLED))
                return

            result.start_time = datetime.now(UTC)
            try:
                inputs = node.resolved_inputs(on_secret=self._sink.write)
                outputs = await self._create_with_retry(node, inputs, result)
            except Exception as e:
                result.end_time = datetime.now(UTC)
                self._fail(node, result, e)
                return

        result.end_time = datetime.now(UTC)
        try:
            node.realize(outputs)
        except Exception as e:
            self._fail(node, result, e)
            return

        result.status = ResourceStatus.REALIZED
        logger.info(
            "Resource realized",
            extra={
                "resource": node.logical_name,
                "kind": node.kind.value,
                "attempts": result.attempts,
                "duration_seconds": result.duration_seconds,
            },
        )

    async def _wait_for_inputs(self, node: ResourceNode) -> None:
        handles = node.wait_handles()
        if handles:
            await asyncio.gather(*(handle.wait() for handle in handles))

    async def _create_with_retry(
        self, node: ResourceNode, inputs: dict[str, Any], result: NodeResult
    ) -> Mapping[str, Any]:
        """Call the provider with exponential backoff on transient errors.

        Raises:
            ProvisioningFailure: When retries are exhausted or the error is fatal.
        """
        last_error: TransientProviderError | None = None
        max_attempts = self._config.max_attempts

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                return await self._execute_with_timeout(node, inputs)
            except TransientProviderError as e:
                last_error = e

                if attempt < max_attempts:
                    if self.cancelled:
                        break
                    backoff = self._config.backoff_seconds(attempt)
                    jitter = random.uniform(0, backoff * BACKOFF_JITTER_RATIO)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Provider call failed, retrying",
                        extra={
                            "resource": node.logical_name,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    # Wait for the backoff or cancellation, whichever comes first
                    try:
                        await asyncio.wait_for(self._cancel_event.wait(), timeout=wait_time)
                    except TimeoutError:
                        pass
                    if self.cancelled:
                        break
            except ProviderError:
                raise
            except ConfigurationError:
                raise
            except Exception as e:
                raise ProvisioningFailure(
                    f"Provider error for '{node.logical_name}': {type(e).__name__}: {e}"
                ) from e

        # SAFETY: the loop runs at least once (max_attempts >= 1)
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise ProvisioningFailure(
            f"'{node.logical_name}' failed after {result.attempts} attempts: {last_error}",
            status_code=last_error.status_code,
        ) from last_error

    async def _execute_with_timeout(
        self, node: ResourceNode, inputs: dict[str, Any]
    ) -> Mapping[str, Any]:
        """Run the provider call in the default executor with a timeout.

        A timeout abandons the wait, not the call: the executor thread runs
        the external operation to completion.

        Raises:
            TransientProviderError: If the call exceeds the timeout.
        """
        loop = asyncio.get_running_loop()
        call = functools.partial(self._provider.create, node.kind, inputs)

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=self._config.call_timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                "Provider call timed out",
                extra={
                    "resource": node.logical_name,
                    "timeout_seconds": self._config.call_timeout_seconds,
                },
            )
            raise TransientProviderError(
                f"Provider call for '{node.logical_name}' timed out after "
                f"{self._config.call_timeout_seconds}s"
            ) from e

    def _fail(self, node: ResourceNode, result: NodeResult, error: BaseException) -> None:
        result.status = ResourceStatus.FAILED
        result.error = error
        node.abandon(
            ResourceStatus.FAILED, error, UpstreamFailedError(node.logical_name, error)
        )
        logger.error(
            "Resource failed",
            extra={
                "resource": node.logical_name,
                "kind": node.kind.value,
                "error": str(error),
                "error_type": type(error).__name__,
                "attempts": result.attempts,
            },
        )

    def _skip(self, node: ResourceNode, result: NodeResult, error: UpstreamFailedError) -> None:
        result.status = ResourceStatus.SKIPPED
        result.error = error
        result.blocked_by = error.blocked_by
        node.abandon(ResourceStatus.SKIPPED, error, error)
        logger.warning(
            "Resource skipped",
            extra={"resource": node.logical_name, "blocked_by": error.blocked_by},
        )

    def _emit_exports(self, report: ProvisioningReport) -> None:
        for name, value in report.exports.items():
            if value.is_resolved and value.is_secret:
                self._sink.write(f"export.{name}", value)

    def _log_result(self, result: NodeResult) -> None:
        extra = result.to_dict()
        # "name" is reserved on LogRecord
        extra["resource"] = extra.pop("name")
        if result.status is ResourceStatus.FAILED:
            logger.error("Resource result", extra=extra)
        elif result.status is ResourceStatus.SKIPPED:
            logger.warning("Resource result", extra=extra)
        else:
            logger.info("Resource result", extra=extra)

    def _log_report(self, report: ProvisioningReport) -> None:
        """Log the run summary with structured data."""
        for name in report.order:
            self._log_result(report.results[name])

        extra = {
            "stack": report.stack_name,
            "duration_seconds": report.duration_seconds,
            "realized": len(report.realized),
            "failed": len(report.failed),
            "skipped": len(report.skipped),
            "cancelled": report.cancelled,
        }
        if report.success:
            logger.info("Provisioning run complete", extra=extra)
        else:
            logger.error("Provisioning run incomplete", extra=extra)
