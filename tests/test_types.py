import numpy as np
import pytest

from drift_images.image_engine.types import Bitmap, CacheKey, Phase, PhaseState, ResourceRef, TargetSize


def test_resource_ref_identity_and_coercion() -> None:
    a = ResourceRef("https://cdn.example.com/a.jpg")
    assert ResourceRef.of("https://cdn.example.com/a.jpg") == a
    assert ResourceRef.of(a) is a
    assert str(a) == "https://cdn.example.com/a.jpg"
    assert sorted([ResourceRef("b"), ResourceRef("a")])[0] == ResourceRef("a")


@pytest.mark.parametrize("location", ["", "   "])
def test_resource_ref_rejects_blank(location: str) -> None:
    with pytest.raises(ValueError):
        ResourceRef(location)


def test_cache_key_distinguishes_sizes() -> None:
    res = ResourceRef("https://cdn.example.com/a.jpg")
    keys = {CacheKey(res), CacheKey(res, TargetSize(56, 56)), CacheKey(res, TargetSize(56.0, 56.0))}
    assert len(keys) == 2


def test_target_size_longest_edge() -> None:
    assert TargetSize(56, 56).longest_edge_px(3.0) == 168
    assert TargetSize(100, 40).longest_edge_px(2.0) == 200
    assert TargetSize(0.1, 0.1).longest_edge_px(1.0) == 1


@pytest.mark.parametrize("w,h", [(0, 10), (10, -1), (float("nan"), 5), (float("inf"), 5)])
def test_target_size_rejects_invalid(w: float, h: float) -> None:
    with pytest.raises(ValueError):
        TargetSize(w, h)


def test_bitmap_cost_and_read_only() -> None:
    bmp = Bitmap(np.zeros((4, 6, 3), dtype=np.uint8))
    assert (bmp.width, bmp.height, bmp.cost) == (6, 4, 72)
    assert not bmp.pixels.flags.writeable


def test_bitmap_rejects_wrong_layout() -> None:
    with pytest.raises(ValueError):
        Bitmap(np.zeros((4, 6, 4), dtype=np.uint8))
    with pytest.raises(ValueError):
        Bitmap(np.zeros((4, 6, 3), dtype=np.float32))


def test_phase_constructors() -> None:
    err = RuntimeError("x")
    bmp = Bitmap(np.zeros((1, 1, 3), dtype=np.uint8))
    assert Phase.empty().is_empty
    assert Phase.loading().is_loading
    assert Phase.success(bmp).bitmap is bmp
    assert Phase.failure(err).error is err
    assert Phase.failure(err).state is PhaseState.FAILURE
