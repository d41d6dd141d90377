"""Resource nodes and their per-kind argument models.

A ResourceNode is a unit of desired state: a logical name, a kind and a typed
argument model whose fields are literals or DeferredValues. Outputs are
DeferredValues that exist from construction and resolve once the engine has
realized the node.

DESIGN:
- Argument models are pydantic models with extra="forbid", one per kind, so a
  misspelled or foreign field fails at declaration time
- Inputs are registered at construction: every DeferredValue reachable from
  the argument model is recorded, and the dependency graph is derived from
  the lineage of those registrations
- Secret inputs reach providers wrapped in pydantic secret types
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from .config import ConfigurationError
from .deferred import DeferredValue, is_secret_wrapper, wrap_secret

logger = logging.getLogger(__name__)

# A literal string or a deferred string produced by another node
StrInput = str | DeferredValue


class ResourceKind(str, Enum):
    """Supported resource kinds, keyed by ARM resource type."""

    RESOURCE_GROUP = "Microsoft.Resources/resourceGroups"
    STORAGE_ACCOUNT = "Microsoft.Storage/storageAccounts"
    BLOB_CONTAINER = "Microsoft.Storage/storageAccounts/blobServices/containers"
    BLOB = "Microsoft.Storage/storageAccounts/blobServices/containers/blobs"
    COMPONENT = "Microsoft.Insights/components"
    APP_SERVICE_PLAN = "Microsoft.Web/serverfarms"
    WEB_APP = "Microsoft.Web/sites"
    WEB_APP_SLOT = "Microsoft.Web/sites/slots"
    VAULT = "Microsoft.KeyVault/vaults"


class ResourceStatus(str, Enum):
    """Lifecycle of a node within one engine run."""

    CREATED = "created"  # Inputs fixed, not yet part of a run
    QUEUED = "queued"  # Accepted by the engine, waiting on inputs
    REALIZED = "realized"  # Outputs populated, immutable thereafter
    FAILED = "failed"  # Provider or configuration error on this node
    SKIPPED = "skipped"  # Blocked by a failed dependency or cancellation


# =============================================================================
# Provider enums
# =============================================================================


class StorageSkuName(str, Enum):
    STANDARD_LRS = "Standard_LRS"
    STANDARD_GRS = "Standard_GRS"
    STANDARD_ZRS = "Standard_ZRS"
    PREMIUM_LRS = "Premium_LRS"


class StorageKind(str, Enum):
    STORAGE_V2 = "StorageV2"
    BLOB_STORAGE = "BlobStorage"


class PublicAccess(str, Enum):
    NONE = "None"
    BLOB = "Blob"
    CONTAINER = "Container"


class BlobType(str, Enum):
    BLOCK = "Block"
    APPEND = "Append"


class ApplicationType(str, Enum):
    WEB = "web"
    OTHER = "other"


class ManagedServiceIdentityType(str, Enum):
    SYSTEM_ASSIGNED = "SystemAssigned"
    NONE = "None"


class SecretPermission(str, Enum):
    GET = "get"
    LIST = "list"
    SET = "set"
    DELETE = "delete"


class KeyPermission(str, Enum):
    GET = "get"
    LIST = "list"
    CREATE = "create"
    SIGN = "sign"
    VERIFY = "verify"


class VaultSkuName(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"


# =============================================================================
# Argument models
# =============================================================================


class ResourceArgs(BaseModel):
    """Base arguments shared by every kind.

    name: physical name; defaults to the node's logical name.
    """

    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    name: StrInput | None = None


class ResourceGroupArgs(ResourceArgs):
    location: StrInput | None = None


class StorageSku(BaseModel):
    model_config = {"extra": "forbid"}

    name: StorageSkuName = StorageSkuName.STANDARD_LRS


class StorageAccountArgs(ResourceArgs):
    resource_group_name: StrInput
    sku: StorageSku = Field(default_factory=StorageSku)
    kind: StorageKind = StorageKind.STORAGE_V2
    location: StrInput | None = None


class BlobContainerArgs(ResourceArgs):
    account_name: StrInput
    resource_group_name: StrInput
    public_access: PublicAccess = PublicAccess.NONE


class BlobArgs(ResourceArgs):
    account_name: StrInput
    container_name: StrInput
    resource_group_name: StrInput
    type: BlobType = BlobType.BLOCK
    source: Path | None = None
    content_type: str | None = None


class ComponentArgs(ResourceArgs):
    resource_group_name: StrInput
    application_type: ApplicationType = ApplicationType.WEB
    kind: str = "web"
    location: StrInput | None = None


class SkuDescription(BaseModel):
    model_config = {"extra": "forbid"}

    tier: str
    name: str


class AppServicePlanArgs(ResourceArgs):
    resource_group_name: StrInput
    kind: str = "Linux"
    sku: SkuDescription
    reserved: bool = False
    location: StrInput | None = None


class NameValuePair(BaseModel):
    """A single application setting."""

    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    name: str
    value: StrInput


class SiteConfig(BaseModel):
    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    app_settings: list[NameValuePair] = Field(default_factory=list)


class ManagedServiceIdentity(BaseModel):
    model_config = {"extra": "forbid"}

    type: ManagedServiceIdentityType = ManagedServiceIdentityType.SYSTEM_ASSIGNED


class WebAppArgs(ResourceArgs):
    resource_group_name: StrInput
    kind: str = "FunctionApp"
    server_farm_id: StrInput
    site_config: SiteConfig = Field(default_factory=SiteConfig)
    identity: ManagedServiceIdentity | None = None
    location: StrInput | None = None


class WebAppSlotArgs(WebAppArgs):
    slot: str


class VaultSku(BaseModel):
    model_config = {"extra": "forbid"}

    family: str = "A"
    name: VaultSkuName = VaultSkuName.STANDARD


class VaultPermissions(BaseModel):
    model_config = {"extra": "forbid"}

    secrets: list[SecretPermission] = Field(default_factory=list)
    keys: list[KeyPermission] = Field(default_factory=list)


class AccessPolicyEntry(BaseModel):
    """Vault access grant for a principal that may not exist yet."""

    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    object_id: StrInput
    tenant_id: str
    permissions: VaultPermissions


class VaultProperties(BaseModel):
    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    tenant_id: str
    sku: VaultSku = Field(default_factory=VaultSku)
    access_policies: list[AccessPolicyEntry] = Field(default_factory=list)
    enabled_for_deployment: bool = False
    enabled_for_disk_encryption: bool = False
    enabled_for_template_deployment: bool = False


class VaultArgs(ResourceArgs):
    resource_group_name: StrInput
    location: StrInput | None = None
    properties: VaultProperties


# =============================================================================
# Input traversal
# =============================================================================


def iter_deferred(value: Any) -> Iterator[DeferredValue[Any]]:
    """Yield every DeferredValue reachable from an input structure."""
    if isinstance(value, DeferredValue):
        yield value
    elif isinstance(value, BaseModel):
        for name in type(value).model_fields:
            yield from iter_deferred(getattr(value, name))
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_deferred(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from iter_deferred(item)


def resolve_structure(
    value: Any,
    on_secret: Callable[[str, Any], None] | None = None,
    path: str = "",
) -> Any:
    """Replace DeferredValues with their resolved values.

    Models become dicts keyed by field name and enums become their values.
    Secret values are wrapped in pydantic secret types and reported to
    on_secret(path, wrapped) so they can be routed through a secret sink.

    Raises:
        RuntimeError: If a DeferredValue is still pending.
    """
    if isinstance(value, DeferredValue):
        resolved = resolve_structure(value.result(), None, path)
        if value.is_secret:
            wrapped = wrap_secret(resolved)
            if on_secret is not None:
                on_secret(path, wrapped)
            return wrapped
        return resolved
    if is_secret_wrapper(value):
        if on_secret is not None:
            on_secret(path, value)
        return value
    if isinstance(value, BaseModel):
        return {
            name: resolve_structure(getattr(value, name), on_secret, _join(path, name))
            for name in type(value).model_fields
        }
    if isinstance(value, Mapping):
        return {
            key: resolve_structure(item, on_secret, _join(path, str(key)))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [
            resolve_structure(item, on_secret, f"{path}[{index}]")
            for index, item in enumerate(value)
        ]
    if isinstance(value, Enum):
        return value.value
    return value


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


# =============================================================================
# Nodes
# =============================================================================


class OutputField:
    """Declares a node output, exposed as a DeferredValue attribute."""

    def __init__(self, *, secret: bool = False) -> None:
        self.secret = secret
        self.name = ""

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __get__(self, instance: ResourceNode | None, owner: type) -> Any:
        if instance is None:
            return self
        return instance.output(self.name)


# Registry of node classes by kind, used by providers that fabricate outputs
NODE_TYPES: dict[ResourceKind, type[ResourceNode]] = {}


class ResourceNode:
    """A typed unit of desired state.

    Subclasses set `kind`, `args_type` and declare outputs with OutputField.
    Nodes compare by identity; logical names must be unique within a run.
    """

    kind: ClassVar[ResourceKind]
    args_type: ClassVar[type[ResourceArgs]] = ResourceArgs
    output_fields: ClassVar[dict[str, OutputField]] = {}

    id = OutputField()
    name = OutputField()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        fields: dict[str, OutputField] = {}
        for klass in reversed(cls.__mro__):
            for attr, value in vars(klass).items():
                if isinstance(value, OutputField):
                    fields[attr] = value
        cls.output_fields = fields
        if "kind" in cls.__dict__:
            NODE_TYPES[cls.kind] = cls

    def __init__(
        self,
        logical_name: str,
        args: ResourceArgs,
        *,
        depends_on: Sequence[ResourceNode] = (),
    ) -> None:
        """Declare a node.

        Args:
            logical_name: Unique name within the run.
            args: Argument model for this kind.
            depends_on: Extra ordering dependencies not expressed by inputs.

        Raises:
            TypeError: If args is not the argument model of this kind.
        """
        if not logical_name:
            raise ConfigurationError("Resource logical name cannot be empty")
        if not isinstance(args, self.args_type):
            raise TypeError(
                f"{type(self).__name__} requires {self.args_type.__name__}, "
                f"got {type(args).__name__}"
            )

        self.logical_name = logical_name
        self.args = args
        self.status = ResourceStatus.CREATED
        self.error: BaseException | None = None
        self._explicit_dependencies = tuple(depends_on)
        self._inputs: list[DeferredValue[Any]] = list(iter_deferred(args))
        self._outputs: dict[str, DeferredValue[Any]] = {
            field_name: DeferredValue(
                secret=field.secret,
                lineage=(self,),
                label=f"{logical_name}.{field_name}",
            )
            for field_name, field in self.output_fields.items()
        }
        self._ready: DeferredValue[None] = DeferredValue(
            lineage=(self,), label=f"{logical_name}.ready"
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.logical_name!r})"

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def input_values(self) -> tuple[DeferredValue[Any], ...]:
        """DeferredValues registered as inputs of this node."""
        return tuple(self._inputs)

    def register_input(self, value: DeferredValue[Any]) -> None:
        """Register an input added after construction.

        Raises:
            ConfigurationError: If the node was already handed to an engine.
        """
        if self.status is not ResourceStatus.CREATED:
            raise ConfigurationError(
                f"Cannot add inputs to '{self.logical_name}' in state {self.status.value}"
            )
        self._inputs.append(value)

    def dependencies(self) -> list[ResourceNode]:
        """Nodes whose realization this node waits on, in discovery order."""
        found: dict[int, ResourceNode] = {}
        for node in self._explicit_dependencies:
            found.setdefault(id(node), node)
        for value in self._inputs:
            for node in sorted(value.lineage, key=lambda n: n.logical_name):
                found.setdefault(id(node), node)
        found.pop(id(self), None)
        return list(found.values())

    def wait_handles(self) -> list[DeferredValue[Any]]:
        """Values to await before the provider call."""
        return [*self._inputs, *(node.ready for node in self._explicit_dependencies)]

    def resolved_inputs(
        self, on_secret: Callable[[str, Any], None] | None = None
    ) -> dict[str, Any]:
        """Resolved provider inputs; "name" defaults to the logical name.

        Raises:
            RuntimeError: If an input is still pending.
        """
        inputs = resolve_structure(self.args, on_secret, self.logical_name)
        if inputs.get("name") is None:
            inputs["name"] = self.logical_name
        return inputs

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    @property
    def ready(self) -> DeferredValue[None]:
        """Resolves when the node is realized; fails when it fails or is skipped."""
        return self._ready

    @property
    def outputs(self) -> dict[str, DeferredValue[Any]]:
        return dict(self._outputs)

    def output(self, name: str) -> DeferredValue[Any]:
        try:
            return self._outputs[name]
        except KeyError:
            raise AttributeError(f"{type(self).__name__} has no output {name!r}") from None

    # ------------------------------------------------------------------
    # Lifecycle (driven by the engine)
    # ------------------------------------------------------------------

    def mark_queued(self) -> None:
        if self.status is not ResourceStatus.CREATED:
            raise ConfigurationError(
                f"'{self.logical_name}' is already {self.status.value}; nodes are realized once"
            )
        self.status = ResourceStatus.QUEUED

    def realize(self, outputs: Mapping[str, Any]) -> None:
        """Populate outputs from a provider result."""
        for field_name, value in self._outputs.items():
            if field_name not in outputs:
                logger.debug(
                    "Provider returned no value for output",
                    extra={"resource": self.logical_name, "output": field_name},
                )
            value.resolve(outputs.get(field_name))
        self.status = ResourceStatus.REALIZED
        self._ready.resolve(None)

    def abandon(self, status: ResourceStatus, error: BaseException, propagate: BaseException) -> None:
        """Mark the node failed or skipped and fail its outputs.

        Args:
            status: FAILED or SKIPPED.
            error: Cause recorded on this node.
            propagate: Error delivered to dependents through the outputs.
        """
        self.status = status
        self.error = error
        for value in self._outputs.values():
            value._try_fail(propagate)
        self._ready._try_fail(propagate)


class ResourceGroup(ResourceNode):
    kind = ResourceKind.RESOURCE_GROUP
    args_type = ResourceGroupArgs

    location = OutputField()


class StorageAccount(ResourceNode):
    kind = ResourceKind.STORAGE_ACCOUNT
    args_type = StorageAccountArgs

    primary_key = OutputField(secret=True)
    primary_blob_endpoint = OutputField()


class BlobContainer(ResourceNode):
    kind = ResourceKind.BLOB_CONTAINER
    args_type = BlobContainerArgs


class Blob(ResourceNode):
    kind = ResourceKind.BLOB
    args_type = BlobArgs

    url = OutputField()


class Component(ResourceNode):
    """Application Insights telemetry component."""

    kind = ResourceKind.COMPONENT
    args_type = ComponentArgs

    instrumentation_key = OutputField()


class AppServicePlan(ResourceNode):
    kind = ResourceKind.APP_SERVICE_PLAN
    args_type = AppServicePlanArgs


class WebApp(ResourceNode):
    kind = ResourceKind.WEB_APP
    args_type = WebAppArgs

    default_host_name = OutputField()
    principal_id = OutputField()


class WebAppSlot(ResourceNode):
    kind = ResourceKind.WEB_APP_SLOT
    args_type = WebAppSlotArgs

    default_host_name = OutputField()
    principal_id = OutputField()


class Vault(ResourceNode):
    kind = ResourceKind.VAULT
    args_type = VaultArgs

    vault_uri = OutputField()
