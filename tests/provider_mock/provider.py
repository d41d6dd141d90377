"""Mock provider with call recording and failure injection."""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from provisioner.provider import PlanProvider, ProvisioningFailure, TransientProviderError
from provisioner.resources import ResourceKind


@dataclass
class MockCall:
    """A single recorded create() call."""

    kind: ResourceKind
    name: str
    inputs: dict[str, Any]
    started_at: float = field(default_factory=time.monotonic)


class MockProvider:
    """Thread-safe in-memory provider.

    Resources are addressed by physical name (slots as "app/slot").
    Outputs are fabricated by PlanProvider unless overridden.
    """

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        """Initialize the mock.

        Args:
            delay_seconds: Time every call spends "in flight".
        """
        self._delay_seconds = delay_seconds
        self._lock = threading.Lock()
        self._plan = PlanProvider()
        self._calls: list[MockCall] = []
        self._fatal: dict[str, Exception] = {}
        self._transient: dict[str, int] = {}
        self._transient_status = 429
        self._outputs: dict[str, dict[str, Any]] = {}
        self._gates: dict[str, threading.Event] = {}
        self._in_flight = 0
        self.max_in_flight = 0

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def fail(self, name: str, error: Exception | None = None) -> None:
        """Make every call for name raise (ProvisioningFailure by default)."""
        self._fatal[name] = error or ProvisioningFailure(f"Injected failure for '{name}'")

    def fail_transiently(self, name: str, times: int, status_code: int = 429) -> None:
        """Make the next `times` calls for name raise TransientProviderError."""
        self._transient[name] = times
        self._transient_status = status_code

    def set_outputs(self, name: str, **outputs: Any) -> None:
        """Override fabricated outputs for name."""
        self._outputs[name] = outputs

    def block(self, name: str) -> threading.Event:
        """Hold calls for name until the returned event is set."""
        gate = threading.Event()
        self._gates[name] = gate
        return gate

    # ------------------------------------------------------------------
    # Assertions
    # ------------------------------------------------------------------

    @property
    def calls(self) -> list[MockCall]:
        with self._lock:
            return list(self._calls)

    def names_called(self) -> list[str]:
        return [call.name for call in self.calls]

    def call_count(self, name: str) -> int:
        return sum(1 for call in self.calls if call.name == name)

    def inputs_for(self, name: str) -> dict[str, Any]:
        """Inputs of the last call for name.

        Raises:
            KeyError: If name was never called.
        """
        for call in reversed(self.calls):
            if call.name == name:
                return call.inputs
        raise KeyError(name)

    # ------------------------------------------------------------------
    # Provider
    # ------------------------------------------------------------------

    def create(self, kind: ResourceKind, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        name = str(inputs["name"])
        if kind is ResourceKind.WEB_APP_SLOT:
            name = f"{name}/{inputs['slot']}"

        with self._lock:
            self._calls.append(MockCall(kind=kind, name=name, inputs=dict(inputs)))
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)

        try:
            gate = self._gates.get(name)
            if gate is not None:
                gate.wait(timeout=5)
            if self._delay_seconds:
                time.sleep(self._delay_seconds)

            if name in self._fatal:
                raise self._fatal[name]

            with self._lock:
                remaining = self._transient.get(name, 0)
                if remaining > 0:
                    self._transient[name] = remaining - 1
            if remaining > 0:
                raise TransientProviderError(
                    f"Injected throttling for '{name}'", status_code=self._transient_status
                )

            outputs = dict(self._plan.create(kind, inputs))
            outputs.update(self._outputs.get(name, {}))
            return outputs
        finally:
            with self._lock:
                self._in_flight -= 1
