"""Tests for connection strings, app settings and the secret sink."""

from __future__ import annotations

import logging

import pytest
from pydantic import SecretStr

from provisioner.deferred import MASKED_VALUE, DeferredValue
from provisioner.resources import NameValuePair
from provisioner.settings import LoggingSecretSink, app_settings, build_connection_string


class TestConnectionString:
    """Tests for build_connection_string."""

    def test_connection_string_is_secret(self) -> None:
        """Test account acct1 and secret key k1."""
        value = build_connection_string("acct1", DeferredValue.secret("k1"))

        assert value.is_secret
        assert value.result() == "DefaultEndpointsProtocol=https;AccountName=acct1;AccountKey=k1"

    def test_secret_wrapper_key(self) -> None:
        """Test a SecretStr key taints the connection string."""
        value = build_connection_string("acct1", SecretStr("k1"))

        assert value.is_secret
        assert value.result().endswith("AccountKey=k1")

    def test_deferred_account_and_key(self) -> None:
        """Test composition before either input is known."""
        account: DeferredValue[str] = DeferredValue()
        key: DeferredValue[str] = DeferredValue(secret=True)
        value = build_connection_string(account, key)

        assert value.is_secret
        assert not value.done()

        account.resolve("acct1")
        key.resolve("k1")

        assert value.result() == "DefaultEndpointsProtocol=https;AccountName=acct1;AccountKey=k1"

    def test_repr_masks_key(self) -> None:
        """Test printing the connection string never shows the key."""
        value = build_connection_string("acct1", DeferredValue.secret("k1"))

        assert "k1" not in repr(value)


class TestAppSettings:
    """Tests for app_settings."""

    def test_declaration_order(self) -> None:
        """Test settings keep declaration order."""
        settings = app_settings({"B": "2", "A": "1"})

        assert [s.name for s in settings] == ["B", "A"]
        assert all(isinstance(s, NameValuePair) for s in settings)

    def test_deferred_values_kept(self) -> None:
        """Test deferred values are stored, not resolved."""
        key = DeferredValue.secret("k1")
        settings = app_settings({"AzureWebJobsStorage": key})

        assert settings[0].value is key


class TestLoggingSecretSink:
    """Tests for LoggingSecretSink."""

    def test_write_retains_plaintext(self) -> None:
        """Test the sink keeps plaintext for its consumer."""
        sink = LoggingSecretSink()
        sink.write("a", SecretStr("k1"))
        sink.write("b", DeferredValue.secret("k2"))

        assert sink.names() == ["a", "b"]
        assert sink.reveal("a") == "k1"
        assert sink.reveal("b") == "k2"

    def test_write_logs_masked(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test the log record carries only the masked marker."""
        sink = LoggingSecretSink()

        with caplog.at_level(logging.INFO, logger="provisioner.settings"):
            sink.write("conn", SecretStr("k1-plaintext"))

        assert "k1-plaintext" not in caplog.text
        record = caplog.records[-1]
        assert record.secret_name == "conn"  # type: ignore[attr-defined]
        assert record.value == MASKED_VALUE  # type: ignore[attr-defined]

    def test_reveal_unknown_name(self) -> None:
        """Test revealing an unknown name raises KeyError."""
        with pytest.raises(KeyError):
            LoggingSecretSink().reveal("missing")
