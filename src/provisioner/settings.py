"""Connection strings, application settings and the secret sink.

INVARIANT: a secret value is only ever emitted through a SecretSink. The
sink keeps the plaintext for the consumer that needs it and logs a masked
placeholder; nothing else in the codebase logs or prints a secret.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any, Protocol

from .deferred import MASKED_VALUE, DeferredValue, format_deferred, is_secret_wrapper, reveal
from .resources import NameValuePair, StrInput

logger = logging.getLogger(__name__)

CONNECTION_STRING_TEMPLATE = (
    "DefaultEndpointsProtocol=https;AccountName={account_name};AccountKey={account_key}"
)


def build_connection_string(account_name: StrInput, key: Any) -> DeferredValue[str]:
    """Compose a storage connection string.

    The result inherits the secret taint of the key.

    Args:
        account_name: Storage account name (literal or deferred).
        key: Account key; a secret DeferredValue, a pydantic SecretStr or a literal.
    """
    return format_deferred(
        CONNECTION_STRING_TEMPLATE, account_name=account_name, account_key=key
    )


def app_settings(values: Mapping[str, StrInput]) -> list[NameValuePair]:
    """Build application settings in declaration order."""
    return [NameValuePair(name=name, value=value) for name, value in values.items()]


class SecretSink(Protocol):
    """Secret-aware destination for tainted values."""

    def write(self, name: str, value: Any) -> None:
        """Accept a secret value (a pydantic secret wrapper or secret DeferredValue)."""
        ...


class LoggingSecretSink:
    """Default sink: retains plaintext in memory, logs only a masked marker.

    Thread-safe.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, Any] = {}

    def write(self, name: str, value: Any) -> None:
        plaintext = _plaintext(value)
        with self._lock:
            self._values[name] = plaintext
        logger.info(
            "Secret value written",
            extra={"secret_name": name, "value": MASKED_VALUE},
        )

    def names(self) -> list[str]:
        with self._lock:
            return list(self._values)

    def reveal(self, name: str) -> Any:
        """Return the plaintext stored under name.

        Raises:
            KeyError: If nothing was written under name.
        """
        with self._lock:
            return self._values[name]


def _plaintext(value: Any) -> Any:
    if isinstance(value, DeferredValue):
        return value.result()
    if is_secret_wrapper(value):
        return reveal(value)
    return value
