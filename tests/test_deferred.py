"""Tests for deferred values and secret taint."""

from __future__ import annotations

import asyncio
import threading

import pytest
from pydantic import SecretStr

from provisioner.deferred import (
    MASKED_VALUE,
    DeferredValue,
    DoubleResolutionError,
    all_of,
    format_deferred,
    reveal,
    wrap_secret,
)
from provisioner.resources import ResourceGroup, ResourceGroupArgs


class TestResolution:
    """Tests for single-assignment settlement."""

    def test_resolve_once(self) -> None:
        """Test a resolved value exposes its result."""
        value: DeferredValue[int] = DeferredValue()
        assert not value.done()

        value.resolve(42)

        assert value.done()
        assert value.is_resolved
        assert value.result() == 42

    def test_double_resolution_fails(self) -> None:
        """Test resolving twice raises DoubleResolutionError."""
        value: DeferredValue[int] = DeferredValue(label="acct.id")
        value.resolve(1)

        with pytest.raises(DoubleResolutionError, match="acct.id"):
            value.resolve(2)
        assert value.result() == 1

    def test_fail_after_resolve_fails(self) -> None:
        """Test failing a resolved value is also a double resolution."""
        value: DeferredValue[int] = DeferredValue()
        value.resolve(1)

        with pytest.raises(DoubleResolutionError):
            value.fail(RuntimeError("late"))

    def test_result_pending_raises(self) -> None:
        """Test reading a pending value raises RuntimeError."""
        with pytest.raises(RuntimeError, match="not resolved"):
            DeferredValue().result()

    def test_result_failed_raises_cause(self) -> None:
        """Test reading a failed value raises the original error."""
        value: DeferredValue[int] = DeferredValue()
        error = ValueError("boom")
        value.fail(error)

        assert value.is_failed
        assert value.error is error
        with pytest.raises(ValueError, match="boom"):
            value.result()

    def test_of_returns_existing_deferred(self) -> None:
        """Test DeferredValue.of does not wrap a DeferredValue twice."""
        value = DeferredValue.of("x")
        assert DeferredValue.of(value) is value


class TestCallbacks:
    """Tests for exactly-once callback delivery."""

    def test_callbacks_before_resolution_run_in_order(self) -> None:
        """Test callbacks registered before resolution run once, in order."""
        value: DeferredValue[int] = DeferredValue()
        seen: list[tuple[str, int]] = []

        value.add_done_callback(lambda v: seen.append(("first", v.result())))
        value.add_done_callback(lambda v: seen.append(("second", v.result())))
        assert seen == []

        value.resolve(7)

        assert seen == [("first", 7), ("second", 7)]

    def test_callback_after_resolution_runs_immediately(self) -> None:
        """Test callbacks registered after resolution run synchronously."""
        value = DeferredValue.of(3)
        seen: list[int] = []

        value.add_done_callback(lambda v: seen.append(v.result()))

        assert seen == [3]

    def test_map_fires_once_regardless_of_registration_order(self) -> None:
        """Test map delivers exactly once whether registered before or after resolve."""
        calls: list[int] = []

        def record(x: int) -> int:
            calls.append(x)
            return x + 1

        early: DeferredValue[int] = DeferredValue()
        before = early.map(record)
        early.resolve(1)

        late = DeferredValue.of(10)
        after = late.map(record)

        assert before.result() == 2
        assert after.result() == 11
        assert calls == [1, 10]

    def test_failing_callback_does_not_block_others(self) -> None:
        """Test an exception in one callback does not stop the next."""
        value: DeferredValue[int] = DeferredValue()
        seen: list[int] = []

        def broken(_: DeferredValue[int]) -> None:
            raise RuntimeError("callback bug")

        value.add_done_callback(broken)
        value.add_done_callback(lambda v: seen.append(v.result()))
        value.resolve(5)

        assert seen == [5]

    def test_concurrent_registration_and_resolution(self) -> None:
        """Test every callback fires exactly once under concurrent registration."""
        value: DeferredValue[int] = DeferredValue()
        counter = 0
        counter_lock = threading.Lock()
        start = threading.Barrier(9)

        def increment(_: DeferredValue[int]) -> None:
            nonlocal counter
            with counter_lock:
                counter += 1

        def register() -> None:
            start.wait()
            for _ in range(100):
                value.add_done_callback(increment)

        def resolver() -> None:
            start.wait()
            value.resolve(1)

        threads = [threading.Thread(target=register) for _ in range(8)]
        threads.append(threading.Thread(target=resolver))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter == 800


class TestComposition:
    """Tests for map, combine and all_of."""

    def test_map_transforms(self) -> None:
        """Test map applies the function once the source resolves."""
        source: DeferredValue[str] = DeferredValue()
        upper = source.map(str.upper)

        source.resolve("acct")

        assert upper.result() == "ACCT"

    def test_map_exception_fails_derived(self) -> None:
        """Test an exception raised by fn fails the derived value."""
        derived = DeferredValue.of(0).map(lambda x: 1 / x)

        assert derived.is_failed
        assert isinstance(derived.error, ZeroDivisionError)

    def test_map_propagates_failure_unchanged(self) -> None:
        """Test a failed source fails the derived value with the same error."""
        source: DeferredValue[int] = DeferredValue()
        derived = source.map(lambda x: x + 1)
        error = RuntimeError("upstream")

        source.fail(error)

        assert derived.error is error

    def test_map_flattens_deferred_result(self) -> None:
        """Test a DeferredValue returned by fn is flattened."""
        inner: DeferredValue[str] = DeferredValue()
        outer = DeferredValue.of("x").map(lambda _: inner)
        assert not outer.done()

        inner.resolve("y")

        assert outer.result() == "y"

    def test_flattened_value_adopts_inner_lineage(self) -> None:
        """Test a DeferredValue returned by fn carries its producer into the lineage."""
        rg = ResourceGroup("rg", ResourceGroupArgs())
        outer = DeferredValue.of("x").map(lambda _: rg.name)

        assert rg in outer.lineage
        assert not outer.done()

    def test_combine_joins(self) -> None:
        """Test combine waits for every input."""
        a: DeferredValue[int] = DeferredValue()
        b: DeferredValue[int] = DeferredValue()
        total = a.combine([b, 3], sum)

        a.resolve(1)
        assert not total.done()
        b.resolve(2)

        assert total.result() == 6

    def test_all_of_fails_fast(self) -> None:
        """Test all_of fails as soon as one input fails."""
        a: DeferredValue[int] = DeferredValue()
        b: DeferredValue[int] = DeferredValue()
        joined = all_of(a, b)
        error = RuntimeError("b failed")

        b.fail(error)

        assert joined.is_failed
        assert joined.error is error
        a.resolve(1)  # Late resolution is ignored by the failed join

    def test_all_of_empty(self) -> None:
        """Test all_of with no inputs resolves to an empty tuple."""
        assert all_of().result() == ()

    def test_format_deferred(self) -> None:
        """Test string interpolation over deferred and literal values."""
        name: DeferredValue[str] = DeferredValue()
        url = format_deferred("https://{account}.blob.core.windows.net/{path}", account=name, path="x")

        name.resolve("acct1")

        assert url.result() == "https://acct1.blob.core.windows.net/x"


class TestSecretTaint:
    """Tests for monotonic secret taint."""

    def test_map_over_secret_is_secret(self) -> None:
        """Test deriving from a secret yields a secret."""
        key = DeferredValue.secret("k1")
        assert key.map(str.upper).is_secret

    def test_combine_with_secret_is_secret(self) -> None:
        """Test a join is secret if any input is secret."""
        joined = DeferredValue.of("acct").combine([DeferredValue.secret("k1")], ";".join)
        assert joined.is_secret
        assert joined.result() == "acct;k1"

    def test_pending_secret_output_taints_before_resolution(self) -> None:
        """Test taint is known before the value resolves."""
        key: DeferredValue[str] = DeferredValue(secret=True)
        derived = key.map(len)
        assert derived.is_secret

        key.resolve("abc")
        assert derived.is_secret
        assert derived.result() == 3

    def test_fn_returning_secret_wrapper_taints(self) -> None:
        """Test fn can introduce taint by returning a pydantic secret."""
        derived = DeferredValue.of("plain").map(lambda v: SecretStr(v))

        assert derived.is_secret
        assert derived.result() == "plain"

    def test_resolve_with_secret_wrapper_unwraps(self) -> None:
        """Test resolving with a SecretStr stores plaintext and taints."""
        value: DeferredValue[str] = DeferredValue()
        value.resolve(SecretStr("k1"))

        assert value.is_secret
        assert value.result() == "k1"

    def test_unsecret_declassifies(self) -> None:
        """Test unsecret is the only way to drop taint."""
        key = DeferredValue.secret("k1")
        plain = key.unsecret()

        assert not plain.is_secret
        assert plain.result() == "k1"
        assert key.is_secret

    def test_as_secret(self) -> None:
        """Test as_secret returns a secret view."""
        name = DeferredValue.of("acct")
        secret = name.as_secret()

        assert secret.is_secret
        assert not name.is_secret
        assert secret.result() == "acct"

    def test_repr_masks_secret(self) -> None:
        """Test repr and str never expose a secret."""
        key = DeferredValue.secret("super-secret-key")

        assert "super-secret-key" not in repr(key)
        assert "super-secret-key" not in str(key)
        assert MASKED_VALUE in repr(key)

    def test_wrap_and_reveal(self) -> None:
        """Test secret wrapper helpers."""
        wrapped = wrap_secret("k1")
        assert isinstance(wrapped, SecretStr)
        assert reveal(wrapped) == "k1"
        assert reveal("plain") == "plain"
        assert wrap_secret(wrapped) is wrapped


class TestAsyncBridge:
    """Tests for awaiting deferred values."""

    @pytest.mark.asyncio
    async def test_wait_resolved(self) -> None:
        """Test awaiting an already resolved value."""
        assert await DeferredValue.of(5).wait() == 5

    @pytest.mark.asyncio
    async def test_wait_resolved_from_thread(self) -> None:
        """Test a value resolved from another thread wakes the waiter."""
        value: DeferredValue[str] = DeferredValue()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, lambda: threading.Thread(target=value.resolve, args=("x",)).start())

        assert await asyncio.wait_for(value.wait(), timeout=2) == "x"

    @pytest.mark.asyncio
    async def test_wait_failed_raises(self) -> None:
        """Test awaiting a failed value raises its error."""
        value: DeferredValue[int] = DeferredValue()
        value.fail(KeyError("missing"))

        with pytest.raises(KeyError):
            await value.wait()
