"""Provider contract and provisioning error taxonomy.

The engine is the only component that talks to a provider, through one call
per resource kind:

    create(kind, resolved_inputs) -> outputs

Providers signal failures by raising:
- TransientProviderError: rate limiting, timeouts, throttled or unavailable
  backends; the engine retries with backoff
- ProvisioningFailure: validation or permission errors; never retried
"""

from __future__ import annotations

import base64
import hashlib
import logging
import threading
import uuid
from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import SecretStr

from .resources import NODE_TYPES, ResourceKind

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for errors raised by providers."""

    pass


class TransientProviderError(ProviderError):
    """A provider error that may succeed when retried."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProvisioningFailure(ProviderError):
    """A provider error that is fatal to the node and all of its dependents."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Provider(Protocol):
    """External collaborator that makes desired state real."""

    def create(self, kind: ResourceKind, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        """Create or update a resource and return its outputs.

        Secret inputs arrive wrapped in pydantic secret types. Outputs that
        are pydantic secret wrappers resolve as secret values.

        Raises:
            TransientProviderError: For retryable failures.
            ProvisioningFailure: For non-retryable failures.
        """
        ...


# Namespace for deterministic fake principal ids
PLAN_NAMESPACE = uuid.UUID("6f1f5c52-3a43-4b5e-9a3e-3c9d2f0a7b11")


class PlanProvider:
    """Dry-run provider that fabricates deterministic outputs.

    Records every call so a plan can be shown without touching Azure.
    Thread-safe: calls may arrive concurrently from executor threads.
    """

    def __init__(self, subscription_id: str = "00000000-0000-0000-0000-000000000000") -> None:
        self._subscription_id = subscription_id
        self._lock = threading.Lock()
        self._calls: list[tuple[ResourceKind, dict[str, Any]]] = []

    @property
    def calls(self) -> list[tuple[ResourceKind, dict[str, Any]]]:
        with self._lock:
            return list(self._calls)

    def create(self, kind: ResourceKind, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        with self._lock:
            self._calls.append((kind, dict(inputs)))

        name = str(inputs["name"])
        if kind is ResourceKind.WEB_APP_SLOT:
            name = f"{name}/{inputs['slot']}"
        outputs: dict[str, Any] = {
            "id": fake_resource_id(self._subscription_id, kind, name, inputs),
            "name": name,
        }

        node_type = NODE_TYPES[kind]
        for field_name in node_type.output_fields:
            if field_name in outputs:
                continue
            outputs[field_name] = _fabricate_output(kind, name, field_name, inputs)

        logger.info(
            "Planned resource",
            extra={"kind": kind.value, "resource_name": name},
        )
        return outputs


def fake_resource_id(
    subscription_id: str, kind: ResourceKind, name: str, inputs: Mapping[str, Any]
) -> str:
    """Build an ARM-shaped resource id for fabricated outputs."""
    if kind is ResourceKind.RESOURCE_GROUP:
        return f"/subscriptions/{subscription_id}/resourceGroups/{name}"
    resource_group = inputs.get("resource_group_name", "unknown")
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{kind.value}/{name}"
    )


def _fabricate_output(
    kind: ResourceKind, name: str, field_name: str, inputs: Mapping[str, Any]
) -> Any:
    match field_name:
        case "location":
            return inputs.get("location") or "westeurope"
        case "primary_key":
            digest = hashlib.sha256(f"{kind.value}/{name}".encode()).digest()
            return SecretStr(base64.b64encode(digest).decode())
        case "primary_blob_endpoint":
            return f"https://{name}.blob.core.windows.net/"
        case "principal_id":
            return str(uuid.uuid5(PLAN_NAMESPACE, f"{kind.value}/{name}"))
        case "instrumentation_key":
            return str(uuid.uuid5(PLAN_NAMESPACE, f"ikey/{name}"))
        case "default_host_name":
            return f"{name.replace('/', '-')}.azurewebsites.net"
        case "vault_uri":
            return f"https://{name}.vault.azure.net/"
        case "url":
            return (
                f"https://{inputs.get('account_name')}.blob.core.windows.net/"
                f"{inputs.get('container_name')}/{name}"
            )
        case _:
            return None
