import threading

import pytest

from drift_images.image_engine.errors import DecodeError, NetworkError
from drift_images.image_engine.fetcher import FetchCoordinator
from drift_images.image_engine.memory_cache import CacheStore
from drift_images.image_engine.metrics import metrics
from drift_images.image_engine.provider import ImageProvider
from drift_images.image_engine.types import CacheKey, Phase, PhaseState, ResourceRef, TargetSize
from tests.helpers.fakes import FakeDecoder, GatedTransport, solid_bitmap

URL = "https://cdn.example.com/activity/42.jpg"
OTHER = "https://cdn.example.com/activity/43.jpg"
THUMB = TargetSize(56, 56)


@pytest.fixture
def stack():
    transport = GatedTransport()
    decoder = FakeDecoder(scale=3.0)
    provider = ImageProvider(CacheStore(10 * 1024 * 1024), FetchCoordinator(transport), decoder, decode_workers=2)
    yield provider, transport, decoder
    transport.release.set()
    provider.shutdown()


def test_concurrent_requests_trigger_one_fetch(stack) -> None:
    provider, transport, decoder = stack
    reqs = [provider.request(URL, THUMB) for _ in range(10)]
    assert all(r.phase.is_loading for r in reqs)

    transport.release.set()
    phases = [r.result(timeout=5) for r in reqs]

    assert all(p.is_success for p in phases)
    assert transport.calls_for(URL) == 1
    assert provider.coordinator.pending_count() == 0


def test_cache_hit_is_synchronous_and_emits_no_loading(stack) -> None:
    provider, transport, decoder = stack
    transport.release.set()
    assert provider.load(URL, THUMB, timeout=5).is_success

    seen: list[Phase] = []
    req = provider.request(URL, THUMB, listener=seen.append)

    assert req.phase.is_success
    assert [p.state for p in seen] == [PhaseState.SUCCESS]
    assert req.result(timeout=0).is_success
    assert transport.calls_for(URL) == 1
    assert len(decoder.calls) == 1
    assert metrics.count("provider.sync_hits") == 1


def test_sizes_share_fetch_but_cache_separately(stack) -> None:
    provider, transport, decoder = stack
    small = provider.request(URL, THUMB)
    large = provider.request(URL, TargetSize(120, 120))
    native = provider.request(URL)

    transport.release.set()
    results = [r.result(timeout=5) for r in (small, large, native)]

    assert transport.calls_for(URL) == 1
    assert [p.bitmap.width for p in results] == [168, 360, 400]
    assert len(provider.cache) == 3
    assert provider.cached(URL, THUMB) is results[0].bitmap
    assert provider.cached(URL) is results[2].bitmap


def test_fetch_error_reaches_every_caller(stack) -> None:
    provider, transport, decoder = stack
    boom = NetworkError("HTTP 503")
    transport.errors[URL] = boom

    reqs = [provider.request(URL, THUMB) for _ in range(3)]
    transport.release.set()
    phases = [r.result(timeout=5) for r in reqs]

    assert all(p.is_failure and p.error is boom for p in phases)
    assert not provider.coordinator.is_pending(ResourceRef(URL))
    assert CacheKey(ResourceRef(URL), THUMB) not in provider.cache
    assert decoder.calls == []


def test_failure_is_not_cached_and_retry_starts_fresh_fetch(stack) -> None:
    provider, transport, decoder = stack
    transport.errors[URL] = NetworkError("timeout")
    transport.release.set()

    req = provider.request(URL, THUMB)
    assert req.result(timeout=5).is_failure

    del transport.errors[URL]
    # Same identity after FAILURE retries.
    assert req.update(URL, THUMB).is_loading
    assert req.result(timeout=5).is_success
    assert transport.calls_for(URL) == 2


def test_decode_error_surfaces_as_failure(stack) -> None:
    provider, transport, decoder = stack
    transport.payloads[URL] = b"corrupt"
    transport.release.set()

    phase = provider.load(URL, THUMB, timeout=5)
    assert phase.is_failure
    assert isinstance(phase.error, DecodeError)
    assert phase.error.resource == ResourceRef(URL)
    assert len(provider.cache) == 0


def test_idempotent_rerequest_does_not_refetch_or_redecode(stack) -> None:
    provider, transport, decoder = stack
    transport.release.set()
    req = provider.request(URL, THUMB)
    first = req.result(timeout=5)

    second = req.update(URL, THUMB)
    third = req.update(ResourceRef(URL), TargetSize(56, 56))

    assert first.bitmap is second.bitmap is third.bitmap
    assert transport.calls_for(URL) == 1
    assert len(decoder.calls) == 1
    assert metrics.count("provider.pipelines") == 1


def test_rerequest_while_loading_is_a_noop(stack) -> None:
    provider, transport, decoder = stack
    req = provider.request(URL, THUMB)
    assert req.update(URL, THUMB).is_loading
    transport.release.set()
    assert req.result(timeout=5).is_success
    assert metrics.count("provider.pipelines") == 1


def test_identity_change_supersedes_old_pipeline(stack) -> None:
    provider, transport, decoder = stack
    seen: list[Phase] = []
    req = provider.request(URL, THUMB, listener=seen.append)
    bystander = provider.request(URL, THUMB)
    assert provider.coordinator.waiters(ResourceRef(URL)) == 2

    req.update(OTHER, THUMB)
    # The switching caller left; the shared fetch keeps running for the bystander.
    assert provider.coordinator.waiters(ResourceRef(URL)) == 1
    assert provider.coordinator.is_pending(ResourceRef(URL))

    transport.release.set()
    assert req.result(timeout=5).is_success
    assert req.identity == CacheKey(ResourceRef(OTHER), THUMB)
    assert bystander.result(timeout=5).is_success

    # The old identity never reached this caller.
    assert [p.state for p in seen] == [PhaseState.LOADING, PhaseState.LOADING, PhaseState.SUCCESS]
    assert transport.calls_for(URL) == 1
    assert transport.calls_for(OTHER) == 1


def test_cancel_moves_to_empty_and_drops_result(stack) -> None:
    provider, transport, decoder = stack
    req = provider.request(URL, THUMB)
    req.cancel()
    assert req.phase.is_empty
    assert req.identity is None

    bystander = provider.request(URL, THUMB)
    transport.release.set()
    assert req.result(timeout=5).is_empty
    # The shared fetch still completed for the other caller.
    assert bystander.result(timeout=5).is_success
    assert req.phase.is_empty


def test_waiter_on_superseded_identity_gets_new_outcome(stack) -> None:
    provider, transport, decoder = stack
    req = provider.request(URL, THUMB)
    got: list[Phase] = []
    waiting = threading.Event()

    def _wait() -> None:
        waiting.set()
        got.append(req.result(timeout=5))

    waiter = threading.Thread(target=_wait)
    waiter.start()
    assert waiting.wait(timeout=5)

    req.update(OTHER, THUMB)
    transport.release.set()
    waiter.join(timeout=10)

    assert not waiter.is_alive()
    assert len(got) == 1 and got[0].is_success
    assert req.identity == CacheKey(ResourceRef(OTHER), THUMB)


def test_cancel_wakes_waiter_with_empty(stack) -> None:
    provider, transport, decoder = stack
    req = provider.request(URL, THUMB)
    pending = req._done
    req.cancel()
    assert pending.result(timeout=1).is_empty


def test_update_returns_phase_settled_during_the_call(stack) -> None:
    provider, transport, decoder = stack
    provider.coordinator.shutdown()
    req = provider.request(None)

    phase = req.update(URL, THUMB)

    assert phase.is_failure
    assert isinstance(phase.error, NetworkError)
    assert req.phase == phase


def test_none_resource_is_empty(stack) -> None:
    provider, transport, decoder = stack
    req = provider.request(None)
    assert req.phase == Phase.empty()
    assert transport.calls == []


def test_listener_exception_does_not_break_pipeline(stack) -> None:
    provider, transport, decoder = stack

    def _bad(phase: Phase) -> None:
        raise RuntimeError("listener blew up")

    req = provider.request(URL, THUMB, listener=_bad)
    transport.release.set()
    assert req.result(timeout=5).is_success


def test_prefetch_warms_cache(stack) -> None:
    provider, transport, decoder = stack
    transport.release.set()
    reqs = provider.prefetch([URL, OTHER], THUMB)
    assert all(r.result(timeout=5).is_success for r in reqs)
    assert provider.cached(URL, THUMB) is not None
    assert provider.cached(OTHER, THUMB) is not None


def test_invalidate_forces_reload(stack) -> None:
    provider, transport, decoder = stack
    transport.release.set()
    assert provider.load(URL, THUMB, timeout=5).is_success
    assert provider.load(URL, timeout=5).is_success

    assert provider.invalidate(URL) == 2
    seen: list[Phase] = []
    provider.request(URL, THUMB, listener=seen.append)
    assert seen[0].is_loading


def test_precached_variant_reused_without_decode(stack) -> None:
    provider, transport, decoder = stack
    key = CacheKey(ResourceRef(URL), THUMB)
    bmp = solid_bitmap(168, 168)
    provider.cache.insert(key, bmp)

    req = provider.request(URL, THUMB)
    assert req.phase.bitmap is bmp
    assert decoder.calls == []


def test_requests_from_many_threads(stack) -> None:
    provider, transport, decoder = stack
    barrier = threading.Barrier(12)
    reqs = []
    lock = threading.Lock()

    def _caller(i: int) -> None:
        barrier.wait()
        size = THUMB if i % 2 else TargetSize(100, 100)
        r = provider.request(URL, size)
        with lock:
            reqs.append(r)

    threads = [threading.Thread(target=_caller, args=(i,)) for i in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    transport.release.set()

    assert all(r.result(timeout=5).is_success for r in reqs)
    assert transport.calls_for(URL) == 1
    assert len(provider.cache) == 2


def test_stats_reports_cache_and_fetch_activity(stack) -> None:
    provider, transport, decoder = stack
    provider.request(URL, THUMB)
    assert provider.stats()["pending_fetches"] == 1

    transport.release.set()
    provider.load(URL, THUMB, timeout=5)
    stats = provider.stats()
    assert stats["cache_entries"] == 1
    assert stats["cache_cost"] == 168 * 168 * 3
    assert stats["counters"]["fetch.started"] == 1
