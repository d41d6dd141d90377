"""Signed, time-boxed blob URLs (service SAS).

build_signed_url() is pure given the signing key: the token is an
HMAC-SHA256 signature over the canonical string-to-sign computed by
azure-storage-blob, so identical requests and keys yield identical URLs.

SECURITY: the token encodes signing authority, so the URL is secret whenever
the signing key is secret.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from azure.storage.blob import (
    BlobSasPermissions,
    ContainerSasPermissions,
    generate_blob_sas,
    generate_container_sas,
)

from .config import ConfigurationError
from .context import Clock
from .deferred import DeferredValue, all_of
from .resources import StrInput

logger = logging.getLogger(__name__)

DEFAULT_BLOB_ENDPOINT = "blob.core.windows.net"


class InvalidWindowError(ConfigurationError):
    """Raised when a validity window does not satisfy start < end."""

    pass


class PermissionScopeMismatchError(ConfigurationError):
    """Raised when the permission set exceeds what the access scope allows."""

    pass


class SasProtocol(str, Enum):
    HTTPS = "https"
    HTTPS_HTTP = "https,http"


class SignedResource(str, Enum):
    """Resource the signature is scoped to (the `sr` field)."""

    BLOB = "b"
    CONTAINER = "c"


class SasPermission(str, Enum):
    READ = "r"
    ADD = "a"
    CREATE = "c"
    WRITE = "w"
    DELETE = "d"
    LIST = "l"


class AccessProfile(str, Enum):
    READ_ONLY = "read-only"
    READ_WRITE = "read-write"


# Canonical order of permission characters in a SAS token
PERMISSION_ORDER: tuple[SasPermission, ...] = tuple(SasPermission)

WRITE_SCOPED_PERMISSIONS: frozenset[SasPermission] = frozenset(
    {SasPermission.ADD, SasPermission.CREATE, SasPermission.WRITE, SasPermission.DELETE}
)

# Permissions that only make sense on a container-scoped signature
CONTAINER_ONLY_PERMISSIONS: frozenset[SasPermission] = frozenset({SasPermission.LIST})


@dataclass(frozen=True)
class SignedUrlRequest:
    """Everything needed to sign a URL except the key."""

    account_name: StrInput
    container_name: StrInput
    blob_name: StrInput
    start: datetime
    expiry: datetime
    resource: SignedResource = SignedResource.CONTAINER
    permissions: frozenset[SasPermission] = field(
        default_factory=lambda: frozenset({SasPermission.READ})
    )
    access: AccessProfile = AccessProfile.READ_ONLY
    protocol: SasProtocol = SasProtocol.HTTPS
    content_type: str | None = None
    cache_control: str | None = None
    content_disposition: str | None = None
    content_encoding: str | None = None
    endpoint: str = DEFAULT_BLOB_ENDPOINT

    def __post_init__(self) -> None:
        """Validate the window and permission scope.

        Raises:
            InvalidWindowError: If start >= expiry.
            PermissionScopeMismatchError: If permissions exceed the access profile
                or the signed resource.
        """
        if self.start >= self.expiry:
            raise InvalidWindowError(
                f"Validity window start {self.start.isoformat()} must be before "
                f"end {self.expiry.isoformat()}"
            )

        if not self.permissions:
            raise PermissionScopeMismatchError("Permission set cannot be empty")

        if self.access is AccessProfile.READ_ONLY:
            write_scoped = self.permissions & WRITE_SCOPED_PERMISSIONS
            if write_scoped:
                raise PermissionScopeMismatchError(
                    f"Read-only access cannot grant write-scoped permissions: "
                    f"{sorted(p.value for p in write_scoped)}"
                )

        if self.resource is SignedResource.BLOB:
            container_only = self.permissions & CONTAINER_ONLY_PERMISSIONS
            if container_only:
                raise PermissionScopeMismatchError(
                    f"Blob-scoped signatures cannot grant "
                    f"{sorted(p.value for p in container_only)}"
                )

    @classmethod
    def starting_now(cls, clock: Clock, validity: timedelta, **kwargs: Any) -> SignedUrlRequest:
        """Build a request whose window starts at the clock's current time."""
        start = clock.now()
        return cls(start=start, expiry=start + validity, **kwargs)

    @property
    def permission_string(self) -> str:
        return "".join(p.value for p in PERMISSION_ORDER if p in self.permissions)


CredentialsResolver = Callable[[StrInput], Any]


def build_signed_url(
    request: SignedUrlRequest, credentials_resolver: CredentialsResolver
) -> DeferredValue[str]:
    """Compose https://{account}.{endpoint}/{container}/{blob}?{token}.

    Args:
        request: Validated URL request.
        credentials_resolver: Returns the account key for an account name,
            as a literal, a pydantic SecretStr or a DeferredValue.

    Returns:
        Deferred URL; secret whenever the key is secret.
    """
    key = credentials_resolver(request.account_name)

    def _assemble(values: tuple[Any, ...]) -> str:
        account, container, blob, account_key = values
        token = _sign(request, account, container, blob, account_key)
        if not token:
            raise ConfigurationError("Signing produced an empty token")
        logger.debug(
            "Signed URL composed",
            extra={
                "account": account,
                "container": container,
                "resource": request.resource.value,
                "permissions": request.permission_string,
                "expiry": request.expiry.isoformat(),
            },
        )
        return f"https://{account}.{request.endpoint}/{container}/{blob}?{token}"

    return all_of(request.account_name, request.container_name, request.blob_name, key).map(
        _assemble
    )


def _sign(
    request: SignedUrlRequest, account: str, container: str, blob: str, account_key: str
) -> str:
    overrides: dict[str, Any] = {
        "protocol": request.protocol.value,
        "content_type": request.content_type,
        "cache_control": request.cache_control,
        "content_disposition": request.content_disposition,
        "content_encoding": request.content_encoding,
    }
    overrides = {name: value for name, value in overrides.items() if value is not None}

    match request.resource:
        case SignedResource.CONTAINER:
            return generate_container_sas(
                account_name=account,
                container_name=container,
                account_key=account_key,
                permission=ContainerSasPermissions.from_string(request.permission_string),
                expiry=request.expiry,
                start=request.start,
                **overrides,
            )
        case SignedResource.BLOB:
            return generate_blob_sas(
                account_name=account,
                container_name=container,
                blob_name=blob,
                account_key=account_key,
                permission=BlobSasPermissions.from_string(request.permission_string),
                expiry=request.expiry,
                start=request.start,
                **overrides,
            )
        case _:
            raise ValueError(f"Unsupported signed resource: {request.resource}")
