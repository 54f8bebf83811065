import numpy as np
import pytest

from stemsplit.buffer import AudioBuffer
from stemsplit.chunking import segment
from stemsplit.errors import InvalidBuffer
from stemsplit.reconstruct import chunk_window, fade_in, fade_out, reconstruct
from stemsplit.stems import StemSet

SOURCES = ["drums", "bass", "other", "vocals"]


def noise(length: int, channels: int = 2) -> AudioBuffer:
    rng = np.random.default_rng(length)
    return AudioBuffer(
        samples=rng.uniform(-1, 1, (channels, length)).astype(np.float32),
        sample_rate=1000,
    )


def identity_outputs(buffer: AudioBuffer, chunk_len: int, overlap_len: int):
    seg = segment(buffer, chunk_len, overlap_len)
    outputs = [np.stack([c.samples] * len(SOURCES)) for c in seg]
    return seg, outputs


class TestWindow:
    """测试交叉淡化窗"""

    @pytest.mark.parametrize("overlap", [1, 2, 7, 100])
    def test_fades_sum_to_one(self, overlap):
        np.testing.assert_allclose(fade_in(overlap) + fade_out(overlap), 1.0, atol=1e-6)
        assert np.all(fade_in(overlap) > 0)
        assert np.all(fade_out(overlap) > 0)

    def test_first_and_last_chunk_edges_unweighted(self):
        w = chunk_window(10, 3, first=True, last=True)
        assert np.all(w == 1)
        w = chunk_window(10, 3, first=False, last=True)
        assert np.all(w[3:] == 1) and np.all(w[:3] < 1)
        w = chunk_window(10, 3, first=True, last=False)
        assert np.all(w[:7] == 1) and np.all(w[7:] < 1)

    def test_no_overlap(self):
        assert np.all(chunk_window(10, 0, first=False, last=False) == 1)


class TestReconstruct:
    """测试 overlap-add 重建"""

    @pytest.mark.parametrize(
        "length, chunk_len, overlap_len",
        [
            (1000, 128, 32),
            (100 + 3 * 75, 100, 25),  # 正好整除步长
            (30, 100, 25),  # 比一块还短
            (1000, 100, 0),
            (1000, 100, 80),  # 多块重叠
            (257, 256, 255),
        ],
    )
    def test_identity_chunks_rebuild_input(self, length, chunk_len, overlap_len):
        buffer = noise(length)
        seg, outputs = identity_outputs(buffer, chunk_len, overlap_len)
        stems = reconstruct(outputs, seg.offsets, overlap_len, length, SOURCES, 1000)

        assert list(stems) == SOURCES
        for stem in stems.values():
            assert stem.length == length
            assert stem.channels == 2
            np.testing.assert_allclose(stem.samples, buffer.samples, atol=1e-5)

    def test_three_second_scenario_length(self):
        buffer = noise(3 * 44100)
        seg, outputs = identity_outputs(buffer, 44100, 11025)
        assert len(outputs) == 4
        stems = reconstruct(outputs, seg.offsets, 11025, buffer.length, SOURCES, 44100)
        assert all(s.samples.shape == (2, 3 * 44100) for s in stems.values())

    def test_deterministic(self):
        buffer = noise(999)
        seg, outputs = identity_outputs(buffer, 100, 30)
        a = reconstruct(outputs, seg.offsets, 30, 999, SOURCES, 1000)
        b = reconstruct(outputs, seg.offsets, 30, 999, SOURCES, 1000)
        for name in SOURCES:
            assert a[name].samples.tobytes() == b[name].samples.tobytes()

    def test_single_coverage_unweighted_and_crossfade_between(self):
        """只被一块覆盖的区域原样保留, 重叠区在两块之间线性过渡"""
        outputs = [np.full((1, 1, 10), 1.0, np.float32), np.full((1, 1, 10), 3.0, np.float32)]
        stems = reconstruct(outputs, [0, 6], 4, 16, ["vocals"], 1000)
        data = stems["vocals"].samples[0]
        np.testing.assert_allclose(data[:6], 1.0)
        np.testing.assert_allclose(data[10:], 3.0)
        np.testing.assert_allclose(data[6:10], [1.4, 1.8, 2.2, 2.6], atol=1e-6)

    def test_padding_discarded(self):
        """末块补零部分中的任何值都不能进入输出"""
        buffer = noise(150)
        seg, outputs = identity_outputs(buffer, 100, 20)
        outputs[-1][..., seg.total_length - seg.offsets[-1] :] = 99.0
        stems = reconstruct(outputs, seg.offsets, 20, 150, SOURCES, 1000)
        assert float(np.abs(stems["bass"].samples).max()) <= 1.0

    def test_missing_chunk_output(self):
        buffer = noise(500)
        seg, outputs = identity_outputs(buffer, 100, 20)
        with pytest.raises(InvalidBuffer):
            reconstruct(outputs[:-1], seg.offsets, 20, 500, SOURCES, 1000)

    def test_shape_mismatch(self):
        outputs = [np.zeros((3, 2, 100), np.float32)]
        with pytest.raises(InvalidBuffer):
            reconstruct(outputs, [0], 0, 100, SOURCES, 1000)


class TestStemSet:
    def test_read_only(self):
        buf = noise(10)
        stems = StemSet({"vocals": buf, "drums": buf.with_samples(buf.samples * 2)})
        assert list(stems) == ["vocals", "drums"]
        with pytest.raises(TypeError):
            stems["bass"] = buf  # type: ignore[index]
        with pytest.raises(ValueError):
            stems["vocals"].samples[0, 0] = 1.0

    def test_two_stems(self):
        buf = noise(10)
        stems = StemSet(
            {name: buf.with_samples(buf.samples * (i + 1)) for i, name in enumerate(SOURCES)}
        )
        two = stems.to_two_stems()
        assert list(two) == ["vocals", "instrumental"]
        np.testing.assert_allclose(two["vocals"].samples, buf.samples * 4, atol=1e-6)
        np.testing.assert_allclose(two["instrumental"].samples, buf.samples * 6, atol=1e-5)

    def test_two_stems_unknown_target(self):
        stems = StemSet({"vocals": noise(10)})
        with pytest.raises(ValueError):
            stems.to_two_stems("guitar")
