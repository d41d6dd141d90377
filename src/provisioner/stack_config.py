"""Per-stack settings loaded from stacks/<stack>.yaml.

SECURITY: File reads enforce a size limit and use yaml.safe_load. Settings
never carry secrets; keys are produced by the provider at run time.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import MAX_STACK_FILE_SIZE_BYTES
from .context import VALID_STACK_NAME_PATTERN
from .resources import StorageSkuName, VaultSkuName

logger = logging.getLogger(__name__)

GUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

DEFAULT_TENANT_ID = "88a91815-758a-48c5-8810-c5520e8f581a"

VALID_WORKER_RUNTIMES = ("dotnet", "dotnet-isolated", "node", "python", "java", "powershell")


class StackLoadError(Exception):
    """Raised when stack settings cannot be loaded or fail validation."""

    pass


class PlanSettings(BaseModel):
    """App Service plan SKU; consumption (Dynamic/Y1) by default."""

    model_config = {"extra": "forbid"}

    tier: str = "Dynamic"
    size: str = "Y1"


class CodeBlobSettings(BaseModel):
    """Function package published to blob storage with a signed read URL."""

    model_config = {"extra": "forbid"}

    source: Path
    container_name: str = "zips-container"
    blob_name: str = "zip"
    content_type: str = "application/json"
    cache_control: str = "max-age=5"
    content_disposition: str = "inline"
    content_encoding: str = "deflate"
    sas_start: date = date(2021, 1, 1)
    sas_expiry: date = date(2030, 1, 1)

    @model_validator(mode="after")
    def validate_window(self) -> CodeBlobSettings:
        if self.sas_start >= self.sas_expiry:
            raise ValueError(
                f"sas_start ({self.sas_start}) must be before sas_expiry ({self.sas_expiry})"
            )
        return self


class StackSettings(BaseModel):
    """Literal configuration for one stack."""

    model_config = {"extra": "forbid"}

    tenant_id: str = Field(default=DEFAULT_TENANT_ID, pattern=GUID_PATTERN)
    location: str | None = None
    storage_sku: StorageSkuName = StorageSkuName.STANDARD_LRS
    plan: PlanSettings = Field(default_factory=PlanSettings)
    worker_runtime: str = "dotnet"
    functions_extension_version: str = "~4"
    scm_do_build_during_deployment: bool = False
    vault_sku: VaultSkuName = VaultSkuName.STANDARD
    staging_slot: str = "staging"
    publish_code_blob: bool = False
    code_blob: CodeBlobSettings | None = None

    @field_validator("worker_runtime")
    @classmethod
    def validate_worker_runtime(cls, v: str) -> str:
        if v not in VALID_WORKER_RUNTIMES:
            raise ValueError(f"worker_runtime must be one of {list(VALID_WORKER_RUNTIMES)}: {v}")
        return v

    @field_validator("functions_extension_version")
    @classmethod
    def validate_extension_version(cls, v: str) -> str:
        if not re.match(r"^~\d+$", v):
            raise ValueError(f"functions_extension_version must look like '~4': {v}")
        return v

    @model_validator(mode="after")
    def validate_code_blob(self) -> StackSettings:
        if self.publish_code_blob and self.code_blob is None:
            raise ValueError("code_blob is required when publish_code_blob is enabled")
        return self


def load_stack_settings(stacks_dir: Path, stack_name: str) -> StackSettings:
    """Load and validate the settings of a stack.

    A missing file is not an error: every setting has a default.

    Args:
        stacks_dir: Directory containing <stack>.yaml files.
        stack_name: The stack name (e.g., "dev").

    Returns:
        Validated settings.

    Raises:
        StackLoadError: If the file cannot be read or fails validation.
    """
    # SECURITY: The stack name becomes part of a path
    if not re.match(VALID_STACK_NAME_PATTERN, stack_name):
        raise StackLoadError(
            f"Stack name must match pattern {VALID_STACK_NAME_PATTERN}: {stack_name!r}"
        )

    stack_path = stacks_dir / f"{stack_name}.yaml"

    if not stack_path.exists():
        logger.info("No stack file, using defaults", extra={"stack_file": str(stack_path)})
        return StackSettings()

    # SECURITY: Check file size before reading
    try:
        file_size = stack_path.stat().st_size
    except OSError as e:
        raise StackLoadError(f"Failed to stat stack file {stack_path}: {e}") from e

    if file_size > MAX_STACK_FILE_SIZE_BYTES:
        raise StackLoadError(
            f"Stack file exceeds maximum size of {MAX_STACK_FILE_SIZE_BYTES} bytes: {stack_path}"
        )

    try:
        content = stack_path.read_text(encoding="utf-8")
    except OSError as e:
        raise StackLoadError(f"Failed to read stack file {stack_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise StackLoadError(f"Invalid YAML in {stack_path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise StackLoadError(f"Stack file must contain a YAML mapping: {stack_path}")

    try:
        settings = StackSettings.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise StackLoadError(f"Validation failed for {stack_path}:\n{error_list}") from e

    logger.info("Loaded settings for stack '%s' from %s", stack_name, stack_path)
    return settings
