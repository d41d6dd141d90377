"""Tests for stack settings loading."""

from datetime import date
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.resources import StorageSkuName
from provisioner.stack_config import (
    DEFAULT_TENANT_ID,
    StackLoadError,
    StackSettings,
    load_stack_settings,
)


class TestStackSettings:
    """Tests for StackSettings validation."""

    def test_defaults(self) -> None:
        """Test the defaults describe a consumption function app."""
        settings = StackSettings()

        assert settings.tenant_id == DEFAULT_TENANT_ID
        assert settings.plan.tier == "Dynamic"
        assert settings.plan.size == "Y1"
        assert settings.worker_runtime == "dotnet"
        assert settings.functions_extension_version == "~4"
        assert settings.staging_slot == "staging"
        assert settings.publish_code_blob is False

    def test_invalid_runtime(self) -> None:
        """Test unknown worker runtimes are rejected."""
        with pytest.raises(ValueError, match="worker_runtime"):
            StackSettings(worker_runtime="cobol")

    def test_invalid_extension_version(self) -> None:
        """Test the extension version must be a ~major pin."""
        with pytest.raises(ValueError, match="functions_extension_version"):
            StackSettings(functions_extension_version="4.0")

    def test_code_blob_required_when_publishing(self) -> None:
        """Test publishing needs code blob settings."""
        with pytest.raises(ValueError, match="code_blob is required"):
            StackSettings(publish_code_blob=True)

    def test_code_blob_window(self) -> None:
        """Test the signed URL window must not be empty."""
        with pytest.raises(ValueError, match="must be before"):
            StackSettings.model_validate(
                {
                    "code_blob": {
                        "source": "dist",
                        "sas_start": "2030-01-01",
                        "sas_expiry": "2021-01-01",
                    }
                }
            )


class TestLoadStackSettings:
    """Tests for load_stack_settings."""

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        """Test a stack without a file gets default settings."""
        assert load_stack_settings(tmp_path, "dev") == StackSettings()

    def test_load_valid_file(self, tmp_path: Path) -> None:
        """Test loading a complete stack file."""
        (tmp_path / "prod.yaml").write_text(
            """
location: northeurope
storage_sku: Standard_GRS
worker_runtime: python
scm_do_build_during_deployment: true
publish_code_blob: true
code_blob:
  source: dist/app.zip
  sas_start: 2024-01-01
  sas_expiry: 2025-01-01
"""
        )

        settings = load_stack_settings(tmp_path, "prod")

        assert settings.location == "northeurope"
        assert settings.storage_sku is StorageSkuName.STANDARD_GRS
        assert settings.worker_runtime == "python"
        assert settings.scm_do_build_during_deployment is True
        assert settings.code_blob is not None
        assert settings.code_blob.source == Path("dist/app.zip")
        assert settings.code_blob.sas_start == date(2024, 1, 1)
        assert settings.code_blob.container_name == "zips-container"

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        """Test an empty file is treated as an empty mapping."""
        (tmp_path / "dev.yaml").write_text("")

        assert load_stack_settings(tmp_path, "dev") == StackSettings()

    def test_invalid_stack_name(self, tmp_path: Path) -> None:
        """Test stack names cannot escape the stacks directory."""
        with pytest.raises(StackLoadError, match="Stack name must match"):
            load_stack_settings(tmp_path, "../etc")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test malformed YAML is reported."""
        (tmp_path / "dev.yaml").write_text("location: [unclosed")

        with pytest.raises(StackLoadError, match="Invalid YAML"):
            load_stack_settings(tmp_path, "dev")

    def test_non_mapping(self, tmp_path: Path) -> None:
        """Test a YAML list is rejected."""
        (tmp_path / "dev.yaml").write_text("- westeurope\n")

        with pytest.raises(StackLoadError, match="YAML mapping"):
            load_stack_settings(tmp_path, "dev")

    def test_validation_errors_listed(self, tmp_path: Path) -> None:
        """Test validation failures name the offending fields."""
        (tmp_path / "dev.yaml").write_text("worker_runtime: cobol\nunknown_key: 1\n")

        with pytest.raises(StackLoadError) as exc_info:
            load_stack_settings(tmp_path, "dev")

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "worker_runtime" in message
        assert "unknown_key" in message

    def test_file_size_limit(self, tmp_path: Path) -> None:
        """Test oversized files are rejected before reading."""
        (tmp_path / "dev.yaml").write_text("location: westeurope\n")

        with patch("provisioner.stack_config.MAX_STACK_FILE_SIZE_BYTES", 4):
            with pytest.raises(StackLoadError, match="exceeds maximum size"):
                load_stack_settings(tmp_path, "dev")
