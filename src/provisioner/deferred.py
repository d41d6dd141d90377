"""Deferred values with secret taint tracking.

A DeferredValue is a single-assignment value that becomes known at some point
after it is declared, typically once the resource that produces it has been
realized. Values can be composed before they are known:

    name = account.name.map(str.upper)
    conn = all_of(account.name, account.primary_key).map(lambda v: ";".join(v))

SEMANTICS:
- resolve() / fail() settle a value exactly once (DoubleResolutionError otherwise)
- Callbacks registered before settlement run once, in registration order,
  at settlement time; callbacks registered afterwards run immediately and
  synchronously in the caller's thread
- Secret taint is monotonic: anything derived from a secret is secret, unless
  explicitly declassified with unsecret()
- Lineage records which resource nodes a value was derived from. The
  dependency graph is built from lineage, never from runtime side effects.

SECURITY: repr()/str() never expose the plaintext of a secret value.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pydantic import Secret, SecretBytes, SecretStr

if TYPE_CHECKING:
    from .resources import ResourceNode

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

# Wrapper types that mark a plain value as secret when it crosses a boundary
SECRET_WRAPPER_TYPES: tuple[type, ...] = (SecretStr, SecretBytes, Secret)

MASKED_VALUE = "[secret]"


class DoubleResolutionError(Exception):
    """Raised when a DeferredValue is settled more than once.

    This is a programming-contract violation and is always fatal.
    """

    pass


class _State(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


def is_secret_wrapper(value: Any) -> bool:
    """Check whether a value is wrapped in a pydantic secret type."""
    return isinstance(value, SECRET_WRAPPER_TYPES)


def reveal(value: Any) -> Any:
    """Return the plaintext of a secret wrapper, or the value unchanged."""
    if is_secret_wrapper(value):
        return value.get_secret_value()
    return value


def wrap_secret(value: Any) -> Any:
    """Wrap a plaintext value in the matching pydantic secret type."""
    if is_secret_wrapper(value):
        return value
    if isinstance(value, str):
        return SecretStr(value)
    if isinstance(value, bytes):
        return SecretBytes(value)
    return Secret(value)


class DeferredValue(Generic[T]):
    """A single-assignment, lazily composed value with a secret taint bit.

    Thread-safe: settlement and callback registration are serialized by a lock,
    callbacks themselves always run outside of it.
    """

    def __init__(
        self,
        *,
        secret: bool = False,
        lineage: Iterable[ResourceNode] = (),
        label: str | None = None,
    ) -> None:
        """Create a pending value.

        Args:
            secret: Whether the value is known to be secret up front.
            lineage: Resource nodes this value is derived from.
            label: Human-readable name used in logs and errors.
        """
        self._lock = threading.Lock()
        self._state = _State.PENDING
        self._value: Any = None
        self._error: BaseException | None = None
        self._secret = secret
        self._callbacks: list[Callable[[DeferredValue[T]], None]] = []
        self._lineage: frozenset[ResourceNode] = frozenset(lineage)
        self.label = label

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def of(cls, value: Any, *, secret: bool = False) -> DeferredValue[Any]:
        """Create an already-resolved value.

        Pydantic secret wrappers are unwrapped and mark the value secret.
        An existing DeferredValue is returned unchanged.
        """
        if isinstance(value, DeferredValue):
            return value.as_secret() if secret else value
        deferred: DeferredValue[Any] = cls(secret=secret)
        deferred.resolve(value)
        return deferred

    @classmethod
    def secret(cls, value: Any) -> DeferredValue[Any]:
        """Create an already-resolved secret value."""
        return cls.of(value, secret=True)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_secret(self) -> bool:
        return self._secret

    @property
    def lineage(self) -> frozenset[ResourceNode]:
        """Resource nodes whose outputs this value depends on."""
        return self._lineage

    @property
    def is_resolved(self) -> bool:
        return self._state is _State.RESOLVED

    @property
    def is_failed(self) -> bool:
        return self._state is _State.FAILED

    def done(self) -> bool:
        """Return True once the value is resolved or failed."""
        return self._state is not _State.PENDING

    @property
    def error(self) -> BaseException | None:
        return self._error

    def result(self) -> T:
        """Return the resolved value.

        Raises:
            RuntimeError: If the value is still pending.
            BaseException: The failure cause if the value failed.
        """
        if self._state is _State.PENDING:
            raise RuntimeError(f"{self!r} is not resolved yet")
        if self._state is _State.FAILED:
            assert self._error is not None
            raise self._error
        return self._value

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def resolve(self, value: T, *, secret: bool = False) -> None:
        """Set the value exactly once.

        Args:
            value: The value. A pydantic secret wrapper is unwrapped and
                taints the value.
            secret: Mark the value secret in addition to any existing taint.

        Raises:
            DoubleResolutionError: If the value was already settled.
        """
        if is_secret_wrapper(value):
            value = reveal(value)
            secret = True

        with self._lock:
            if self._state is not _State.PENDING:
                raise DoubleResolutionError(
                    f"{self._describe()} was already {self._state.value}"
                )
            self._value = value
            self._secret = self._secret or secret
            self._state = _State.RESOLVED
            callbacks, self._callbacks = self._callbacks, []

        self._run_callbacks(callbacks)

    def fail(self, error: BaseException) -> None:
        """Settle the value as failed.

        Raises:
            DoubleResolutionError: If the value was already settled.
        """
        if not self._try_fail(error):
            raise DoubleResolutionError(f"{self._describe()} was already {self._state.value}")

    def _try_fail(self, error: BaseException) -> bool:
        with self._lock:
            if self._state is not _State.PENDING:
                return False
            self._error = error
            self._state = _State.FAILED
            callbacks, self._callbacks = self._callbacks, []

        self._run_callbacks(callbacks)
        return True

    def add_done_callback(self, callback: Callable[[DeferredValue[T]], None]) -> None:
        """Run callback(self) once the value settles.

        If the value is already settled the callback runs immediately in the
        caller's thread.
        """
        with self._lock:
            if self._state is _State.PENDING:
                self._callbacks.append(callback)
                return

        self._run_callbacks([callback])

    def _run_callbacks(self, callbacks: list[Callable[[DeferredValue[T]], None]]) -> None:
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(
                    "Deferred value callback raised",
                    extra={"deferred": self._describe()},
                )

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def map(self, fn: Callable[[T], Any]) -> DeferredValue[Any]:
        """Derive a new value by applying fn once this value resolves.

        The result is secret if this value is secret, or if fn returns a
        pydantic secret wrapper or a secret DeferredValue (which is flattened).
        An exception raised by fn fails the derived value; a failure of this
        value propagates unchanged. A flattened value joins the lineage once fn
        runs, so only lineage known by the time the graph is built orders nodes.
        """
        derived: DeferredValue[Any] = DeferredValue(
            secret=self._secret, lineage=self._lineage, label=self.label
        )

        def _apply(source: DeferredValue[T]) -> None:
            if source.is_failed:
                assert source.error is not None
                derived._try_fail(source.error)
                return
            try:
                produced = fn(source._value)
            except Exception as e:
                derived._try_fail(e)
                return
            derived._adopt(produced, secret=source.is_secret)

        self.add_done_callback(_apply)
        return derived

    def combine(
        self, others: Iterable[Any], fn: Callable[[tuple[Any, ...]], Any]
    ) -> DeferredValue[Any]:
        """Apply fn to the tuple of this and all other values once every one resolved.

        The result is secret if any input is secret.
        """
        return all_of(self, *others).map(fn)

    def as_secret(self) -> DeferredValue[T]:
        """Return a secret view of this value."""
        if self._secret:
            return self
        derived: DeferredValue[T] = DeferredValue(
            secret=True, lineage=self._lineage, label=self.label
        )
        self.add_done_callback(lambda source: derived._settle_from(source, secret=True))
        return derived

    def unsecret(self) -> DeferredValue[T]:
        """Explicitly declassify this value.

        The only way to drop secret taint; use for values that are known to
        be safe to surface (e.g. a resource name derived from a secret).
        """
        derived: DeferredValue[T] = DeferredValue(lineage=self._lineage, label=self.label)

        def _declassify(source: DeferredValue[T]) -> None:
            if source.is_failed:
                assert source.error is not None
                derived._try_fail(source.error)
            else:
                derived.resolve(source._value)

        self.add_done_callback(_declassify)
        return derived

    def _adopt(self, produced: Any, *, secret: bool) -> None:
        if isinstance(produced, DeferredValue):
            # A flattened value also depends on whatever produced the inner value
            with self._lock:
                self._lineage = self._lineage | produced.lineage
            produced.add_done_callback(lambda inner: self._settle_from(inner, secret=secret))
            return
        self.resolve(produced, secret=secret)

    def _settle_from(self, source: DeferredValue[Any], *, secret: bool) -> None:
        if source.is_failed:
            assert source.error is not None
            self._try_fail(source.error)
            return
        self.resolve(source._value, secret=secret or source.is_secret)

    # ------------------------------------------------------------------
    # asyncio bridge
    # ------------------------------------------------------------------

    async def wait(self) -> T:
        """Wait for settlement from a coroutine.

        Safe to call when the value is settled from another thread.

        Raises:
            BaseException: The failure cause if the value failed.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()

        def _wake(source: DeferredValue[T]) -> None:
            loop.call_soon_threadsafe(_settle_future, future, source)

        self.add_done_callback(_wake)
        return await future

    # ------------------------------------------------------------------
    # Representation
    # ------------------------------------------------------------------

    def _describe(self) -> str:
        return f"DeferredValue {self.label!r}" if self.label else "DeferredValue"

    def __repr__(self) -> str:
        label = f"{self.label}=" if self.label else ""
        if self._state is _State.PENDING:
            shown = "<pending>"
        elif self._state is _State.FAILED:
            shown = f"<failed: {type(self._error).__name__}>"
        elif self._secret:
            shown = MASKED_VALUE
        else:
            shown = repr(self._value)
        return f"DeferredValue({label}{shown})"

    __str__ = __repr__


def _settle_future(future: asyncio.Future[Any], source: DeferredValue[Any]) -> None:
    if future.done():
        return
    if source.is_failed:
        assert source.error is not None
        future.set_exception(source.error)
    else:
        future.set_result(source._value)


def all_of(*values: Any) -> DeferredValue[tuple[Any, ...]]:
    """Join values (deferred or literal) into a deferred tuple.

    Resolves once every input resolved. Fails as soon as any input fails, with
    that input's error. Secret if any input is secret.
    """
    inputs = [DeferredValue.of(value) for value in values]
    lineage: set[ResourceNode] = set()
    for item in inputs:
        lineage.update(item.lineage)

    joined: DeferredValue[tuple[Any, ...]] = DeferredValue(
        secret=any(item.is_secret for item in inputs), lineage=lineage
    )
    if not inputs:
        joined.resolve(())
        return joined

    remaining = len(inputs)
    counter_lock = threading.Lock()

    def _on_settled(source: DeferredValue[Any]) -> None:
        nonlocal remaining
        if source.is_failed:
            assert source.error is not None
            joined._try_fail(source.error)
            return
        with counter_lock:
            remaining -= 1
            complete = remaining == 0
        if complete and not joined.done():
            joined.resolve(
                tuple(item._value for item in inputs),
                secret=any(item.is_secret for item in inputs),
            )

    for item in inputs:
        item.add_done_callback(_on_settled)

    return joined


def format_deferred(template: str, **values: Any) -> DeferredValue[str]:
    """Interpolate deferred and literal values into a string template.

    The result is secret if any interpolated value is secret.
    """
    names = list(values)
    return all_of(*(values[name] for name in names)).map(
        lambda resolved: template.format(**dict(zip(names, resolved, strict=True)))
    )
