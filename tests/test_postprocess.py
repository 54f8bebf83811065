import numpy as np

from conftest import sine

from stemsplit.buffer import AudioBuffer
from stemsplit.postprocess import (
    band_pass,
    high_pass,
    low_pass,
    post_process_stem,
    reduce_noise,
    remove_clicks,
)

SR = 8000


def rms(data: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.square(data, dtype=np.float64))))


class TestFilters:
    """测试一阶 RC 滤波器"""

    def test_high_pass_removes_dc(self):
        data = np.full((2, SR), 0.5, dtype=np.float32)
        out = high_pass(data, SR, 80.0)
        assert out.dtype == np.float32
        assert float(np.abs(out[:, SR // 2 :]).max()) < 1e-3

    def test_low_pass_attenuates_high_freq(self):
        high = sine(3000, 1.0, SR, channels=1).samples
        low = sine(30, 1.0, SR, channels=1).samples
        assert rms(low_pass(high, SR, 400.0)) < rms(high) * 0.2
        assert rms(low_pass(low, SR, 400.0)) > rms(low) * 0.9

    def test_band_pass(self):
        mid = sine(1000, 1.0, SR, channels=1).samples
        dc = np.full((1, SR), 0.5, dtype=np.float32)
        assert rms(band_pass(mid, SR, 300.0, 3400.0)) > rms(mid) * 0.6
        assert float(np.abs(band_pass(dc, SR, 300.0, 3400.0)[:, SR // 2 :]).max()) < 1e-3


class TestCleanup:
    """测试降噪与爆音去除"""

    def test_remove_clicks(self):
        data = np.full((1, 1000), 0.1, dtype=np.float32)
        data[0, 500] = 1.0
        data[0, 700] = -1.0
        out = remove_clicks(data, SR)
        assert abs(out[0, 500] - 0.1) < 1e-6
        assert abs(out[0, 700] + 0.1) < 1e-6
        np.testing.assert_array_equal(np.delete(out, [500, 700], axis=1), np.float32(0.1))
        assert data[0, 500] == 1.0

    def test_repaired_click_feeds_next_average(self):
        """相邻两个爆音: 前一个修复后的值参与后一个的前向平均"""
        data = np.full((1, 1000), 0.1, dtype=np.float32)
        data[0, 500] = 1.0
        data[0, 501] = 0.95
        out = remove_clicks(data, SR)
        first = (0.1 + (0.95 + 7 * 0.1) / 8) / 2
        second = ((7 * 0.1 + first) / 8 + 0.1) / 2
        assert abs(out[0, 500] - first) < 1e-6
        assert abs(out[0, 501] - second) < 1e-6

    def test_loud_signal_is_not_a_click(self):
        data = np.full((2, 1000), 0.95, dtype=np.float32)
        np.testing.assert_array_equal(remove_clicks(data, SR), data)

    def test_reduce_noise(self):
        rng = np.random.default_rng(0)
        noise = rng.uniform(-0.1, 0.1, (2, SR)).astype(np.float32)
        out = reduce_noise(noise, SR)
        assert out.shape == noise.shape
        assert out.dtype == np.float32
        assert rms(out) < rms(noise)

    def test_short_input_unchanged(self):
        data = np.ones((1, 10), dtype=np.float32)
        assert reduce_noise(data, SR) is data
        assert remove_clicks(data, SR) is data


class TestPostProcessStem:
    def test_drums_untouched(self):
        buffer = sine(440, 0.5, SR)
        out = post_process_stem(buffer, "drums")
        np.testing.assert_array_equal(out.samples, buffer.samples)

    def test_each_stem_keeps_shape(self):
        buffer = sine(440, 0.5, SR)
        for stem in ("other", "bass", "vocals", "guitar", "piano", "drums"):
            out = post_process_stem(buffer, stem)
            assert isinstance(out, AudioBuffer)
            assert out.samples.shape == buffer.samples.shape
            assert out.samples.dtype == np.float32
            assert out.sample_rate == SR

    def test_read_only_input(self):
        buffer = sine(440, 0.5, SR)
        buffer.samples.setflags(write=False)
        out = post_process_stem(buffer, "other")
        assert out.samples.flags.writeable

    def test_instrumental_filtered_as_other(self):
        buffer = sine(440, 0.5, SR)
        np.testing.assert_array_equal(
            post_process_stem(buffer, "instrumental").samples,
            post_process_stem(buffer, "other").samples,
        )
