"""Property tests for the cleanup pipeline.

Validates that every run leaves the resource registry empty and always
records the four phases, whatever mix of healthy and failing resources
was registered.
"""

from __future__ import annotations

import asyncio

from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import FakeBrowser, FakeResource, MemorySeries
from cyclecore.cleanup.pipeline import PHASES, CleanupPipeline
from cyclecore.cleanup.registry import ResourceRegistry
from cyclecore.config.profiles import CleanupConfig


def _run_async(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


_CONFIG = CleanupConfig(
    browser_close_timeout=1,
    browser_verification_retries=1,
    browser_verification_delay=0,
    gc_iterations=0,
    gc_delay=0,
    validation_retry_delay=0,
)

resource_flags = st.lists(st.tuples(st.booleans(), st.booleans()), max_size=5)


@settings(max_examples=40, deadline=None)
@given(
    browsers=st.lists(st.tuples(st.booleans(), st.booleans()), max_size=4),
    refs=resource_flags,
    sessions=resource_flags,
)
def test_registry_empty_after_every_run(
    browsers: list[tuple[bool, bool]],
    refs: list[tuple[bool, bool]],
    sessions: list[tuple[bool, bool]],
) -> None:
    registry = ResourceRegistry()
    pipeline = CleanupPipeline(
        registry,
        _CONFIG,
        memory_sampler=MemorySeries(64 * 1024 * 1024),
        liveness_probe=lambda pid: False,
        killer=lambda pid: True,
    )
    for i, (stays_connected, fail_close) in enumerate(browsers):
        pipeline.register_browser(
            f"b{i}", FakeBrowser(stays_connected=stays_connected, fail_close=fail_close)
        )
    for i, (fail, is_async) in enumerate(refs):
        pipeline.register_memory_ref(f"m{i}", FakeResource(fail=fail, is_async=is_async))
    for i, (fail, is_async) in enumerate(sessions):
        pipeline.register_session(f"s{i}", FakeResource(fail=fail, is_async=is_async))

    job = _run_async(pipeline.execute("cycle"))

    assert registry.is_empty()
    assert [s.name for s in job.steps] == list(PHASES)
    any_failure = (
        any(fail for fail, _ in refs)
        or any(fail for fail, _ in sessions)
        or any(fail_close for _, fail_close in browsers)
    )
    if any_failure:
        assert job.errors
    assert pipeline.get_stats()["total_cleanups"] == 1
