"""Lifecycle, recovery and resource ownership of ``Feature``."""

from __future__ import annotations

import asyncio

import pytest

from featureflex.core.bus import EventBus
from featureflex.core.contracts import (
    FEATURE_ERROR,
    FEATURE_FALLBACK,
    FEATURE_STATE_CHANGED,
    Event,
    FeatureContext,
    FeaturePhase,
    FeatureState,
)
from featureflex.core.feature import Feature
from featureflex.core.scheduler import ManualScheduler


def _record_states(bus: EventBus) -> list[tuple[FeatureState, int]]:
    seen: list[tuple[FeatureState, int]] = []
    bus.on(
        FEATURE_STATE_CHANGED,
        lambda event: seen.append((event.payload["newState"], event.payload["retryCount"])),
    )
    return seen


@pytest.mark.asyncio
async def test_init_retries_with_linear_backoff_until_success(
    make_feature, bus: EventBus, scheduler: ManualScheduler, context: FeatureContext
) -> None:
    feature = make_feature(
        "unit-a", init_failures=2, error_recovery={"max_retries": 2, "retry_delay": 0.1}
    )
    seen = _record_states(bus)

    with pytest.raises(RuntimeError):
        await feature.init(context)
    assert feature.state is FeatureState.ERROR
    assert feature.retry_count == 1

    await scheduler.advance(0.1)
    assert feature.state is FeatureState.ERROR
    assert feature.retry_count == 2

    # second backoff is twice the base delay
    await scheduler.advance(0.15)
    assert feature.state is FeatureState.ERROR
    await scheduler.advance(0.1)

    assert feature.state is FeatureState.INITIALIZED
    assert feature.retry_count == 0
    assert [state for state, _ in seen] == [
        FeatureState.INITIALIZING,
        FeatureState.ERROR,
        FeatureState.INITIALIZING,
        FeatureState.ERROR,
        FeatureState.INITIALIZING,
        FeatureState.INITIALIZED,
    ]
    assert [count for _, count in seen] == [0, 1, 1, 2, 2, 0]


@pytest.mark.asyncio
async def test_start_failures_exhaust_retries_into_fallback_with_cleanup(
    make_feature, bus: EventBus, scheduler: ManualScheduler, context: FeatureContext
) -> None:
    feature = make_feature(
        "unit-z", start_failures=2, error_recovery={"max_retries": 1, "retry_delay": 0.5}
    )
    fallbacks: list[Event] = []
    bus.on(FEATURE_FALLBACK, fallbacks.append)
    cleanups: list[str] = []
    timer_fired: list[str] = []

    await feature.init(context)
    timer = feature.set_timeout(lambda: timer_fired.append("timer"), 10.0)
    interval = feature.set_interval(lambda: timer_fired.append("interval"), 5.0)
    feature.add_cleanup_task(lambda: cleanups.append("cleanup"))

    with pytest.raises(RuntimeError):
        await feature.start(context)
    assert feature.state is FeatureState.ERROR
    assert cleanups == []

    await scheduler.advance(0.5)

    assert feature.state is FeatureState.FALLBACK
    assert cleanups == ["cleanup"]
    assert timer.cancelled and interval.cancelled
    assert fallbacks and fallbacks[0].payload == {
        "feature": "unit-z",
        "reason": "max_retries_exceeded",
    }

    await scheduler.advance(30.0)
    await feature.destroy()

    assert timer_fired == []
    assert cleanups == ["cleanup"]
    assert feature.state is FeatureState.FALLBACK


@pytest.mark.asyncio
async def test_exhausted_retries_without_fallback_disable_feature(
    make_feature, bus: EventBus, context: FeatureContext
) -> None:
    feature = make_feature(
        "strict", init_failures=1, error_recovery={"max_retries": 0, "fallback_mode": False}
    )
    errors: list[Event] = []
    bus.on(FEATURE_ERROR, errors.append)

    with pytest.raises(RuntimeError):
        await feature.init(context)

    assert feature.state is FeatureState.DISABLED
    assert errors[0].payload["canRetry"] is False
    assert errors[0].payload["error"].phase is FeaturePhase.INIT
    assert feature.last_error is not None
    assert feature.last_error.message == "strict init failure"
    assert feature.last_error.context == context.snapshot()
    assert not feature.should_activate(context)


@pytest.mark.asyncio
async def test_full_lifecycle_releases_owned_resources(
    make_feature, bus: EventBus, context: FeatureContext
) -> None:
    calls: list[str] = []
    feature = make_feature("full", calls=calls)

    class _Handle:
        closed = False

        def close(self) -> None:
            self.closed = True

    handle = _Handle()
    received: list[Event] = []

    await feature.init(context)
    await feature.start(context)
    feature.add_resource("socket", handle)
    feature.on_event("external:ping", received.append)
    bus.emit("external:ping")
    assert feature.state is FeatureState.RUNNING

    await feature.stop()
    bus.emit("external:ping")
    assert feature.state is FeatureState.STOPPED
    assert handle.closed
    assert len(received) == 1
    assert feature.get_resource("socket") is None

    await feature.destroy()
    assert feature.state is FeatureState.IDLE
    assert calls == ["full:init", "full:start", "full:stop", "full:destroy"]


@pytest.mark.asyncio
async def test_destroy_stops_running_feature_first(
    make_feature, context: FeatureContext
) -> None:
    calls: list[str] = []
    feature = make_feature("busy", calls=calls)
    await feature.init(context)
    await feature.start(context)

    await feature.destroy()

    assert calls[-2:] == ["busy:stop", "busy:destroy"]
    assert feature.state is FeatureState.IDLE


@pytest.mark.asyncio
async def test_disallowed_transitions_are_ignored(make_feature, context: FeatureContext) -> None:
    calls: list[str] = []
    feature = make_feature("guarded", calls=calls)

    await feature.start(context)
    await feature.stop()
    assert feature.state is FeatureState.IDLE

    await feature.init(context)
    await feature.init(context)
    assert calls == ["guarded:init"]
    assert feature.state is FeatureState.INITIALIZED


@pytest.mark.asyncio
async def test_stop_failure_is_not_retried(
    make_feature, scheduler: ManualScheduler, context: FeatureContext
) -> None:
    feature = make_feature("stubborn", stop_error=RuntimeError("cannot stop"))
    await feature.init(context)
    await feature.start(context)

    with pytest.raises(RuntimeError):
        await feature.stop()

    assert feature.state is FeatureState.ERROR
    assert feature.last_error is not None
    assert feature.last_error.phase is FeaturePhase.STOP
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_reset_returns_error_feature_to_idle(
    make_feature, scheduler: ManualScheduler, context: FeatureContext
) -> None:
    feature = make_feature("flaky", init_failures=1, error_recovery={"retry_delay": 60.0})
    with pytest.raises(RuntimeError):
        await feature.init(context)

    feature.reset()

    assert feature.state is FeatureState.IDLE
    assert feature.retry_count == 0
    assert feature.last_error is None


@pytest.mark.asyncio
async def test_timer_failures_are_routed_through_error_handling(
    make_feature, scheduler: ManualScheduler, context: FeatureContext
) -> None:
    feature = make_feature("ticker")
    await feature.init(context)
    await feature.start(context)

    def broken() -> None:
        raise ValueError("tick failed")

    feature.set_timeout(broken, 1.0)
    await scheduler.advance(1.0)

    assert feature.state is FeatureState.ERROR
    assert feature.last_error is not None
    assert feature.last_error.phase is FeaturePhase.TIMER


@pytest.mark.asyncio
async def test_cleared_interval_stops_firing(
    make_feature, scheduler: ManualScheduler, context: FeatureContext
) -> None:
    feature = make_feature("poller")
    ticks: list[float] = []
    handle = feature.set_interval(lambda: ticks.append(scheduler.time()), 1.0)

    await scheduler.advance(2.0)
    feature.clear_timer(handle)
    await scheduler.advance(3.0)

    assert len(ticks) == 2


@pytest.mark.asyncio
async def test_wait_for_polls_through_scheduler(
    make_feature, scheduler: ManualScheduler
) -> None:
    feature = make_feature("waiter")
    flag = {"ready": False}
    scheduler.call_later(0.3, lambda: flag.update(ready=True))

    task = asyncio.create_task(
        feature.wait_for(lambda: flag["ready"], timeout=1.0, interval=0.1)
    )
    await asyncio.sleep(0)
    await scheduler.advance(0.5)

    assert await asyncio.wait_for(task, timeout=0.5) is True


@pytest.mark.asyncio
async def test_wait_for_gives_up_after_timeout(make_feature, scheduler: ManualScheduler) -> None:
    feature = make_feature("impatient")
    task = asyncio.create_task(feature.wait_for(lambda: None, timeout=0.3, interval=0.1))
    await asyncio.sleep(0)
    await scheduler.advance(1.0)

    assert await asyncio.wait_for(task, timeout=0.5) is None


def test_should_activate_rules(make_feature) -> None:
    context = FeatureContext(url="https://shop.example.com/cart")

    assert make_feature("any").should_activate(context)
    assert make_feature("shop", matches=["*shop.example.com*"]).should_activate(context)
    assert not make_feature("blog", matches=["*blog.example.com*"]).should_activate(context)
    assert not make_feature("off", enabled=False).should_activate(context)

    def broken(ctx: FeatureContext) -> bool:
        raise RuntimeError("predicate failed")

    assert not make_feature("predicate", should_activate=broken).should_activate(context)
    assert make_feature(
        "custom", matches=[], should_activate=lambda ctx: ctx.url.endswith("/cart")
    ).should_activate(context)

    def broken_rule(url: str, ctx: FeatureContext) -> bool:
        raise RuntimeError("rule failed")

    assert make_feature("second", matches=[broken_rule, "*cart*"]).should_activate(context)


class _Detached(Feature):
    def on_init(self, context: FeatureContext) -> None:
        return None

    def on_start(self, context: FeatureContext) -> None:
        return None


def test_bus_access_requires_attachment() -> None:
    feature = _Detached({"name": "detached"})
    with pytest.raises(RuntimeError):
        _ = feature.bus
    # emitting through the helper is best effort
    feature.emit_event("detached:ping")
