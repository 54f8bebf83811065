import numpy as np
import pytest

from conftest import sine

from stemsplit.buffer import AudioBuffer
from stemsplit.chunking import segment
from stemsplit.errors import InvalidChunking


def ramp(length: int, channels: int = 2, sample_rate: int = 100) -> AudioBuffer:
    data = np.tile(np.arange(length, dtype=np.float32), (channels, 1))
    return AudioBuffer(samples=data, sample_rate=sample_rate)


class TestSegment:
    """测试分块的各种边界情况"""

    def test_three_seconds_one_second_chunks(self):
        """3 秒 / 1 秒块 / 0.25 秒重叠 -> 4 块, 末块补零"""
        buffer = sine(440, 3.0, 44100)
        chunks = list(segment(buffer, 44100, 11025))

        assert len(chunks) == 4
        assert [c.offset for c in chunks] == [0, 33075, 66150, 99225]
        assert all(c.samples.shape == (2, 44100) for c in chunks)
        last = chunks[-1]
        assert last.length == 33075
        assert last.pad == 11025
        assert np.all(last.samples[:, last.length :] == 0)
        assert all(c.pad == 0 for c in chunks[:-1])

    def test_offsets_strictly_increase(self):
        seg = segment(ramp(1000), 128, 48)
        offsets = [c.offset for c in seg]
        assert offsets == seg.offsets
        assert all(b - a == 80 for a, b in zip(offsets, offsets[1:]))

    @pytest.mark.parametrize(
        "length, chunk_len, overlap_len",
        [(1000, 128, 48), (1000, 100, 0), (1000, 999, 998), (37, 10, 3), (5, 10, 3)],
    )
    def test_chunks_cover_input_exactly(self, length, chunk_len, overlap_len):
        buffer = ramp(length)
        covered = np.zeros(length, dtype=int)
        for chunk in segment(buffer, chunk_len, overlap_len):
            covered[chunk.offset : chunk.offset + chunk.length] += 1
            np.testing.assert_array_equal(
                chunk.valid, buffer.samples[:, chunk.offset : chunk.offset + chunk.length]
            )
        assert np.all(covered >= 1)

    def test_exact_multiple_of_step_has_no_padding(self):
        """长度 = chunk_len + k * step 时末块正好填满"""
        seg = segment(ramp(100 + 3 * 75), 100, 25)
        chunks = list(seg)
        assert len(chunks) == 4
        assert chunks[-1].pad == 0
        assert chunks[-1].offset + chunks[-1].length == 325

    def test_shorter_than_one_chunk(self):
        chunks = list(segment(ramp(30), 100, 25))
        assert len(chunks) == 1
        assert chunks[0].length == 30
        assert chunks[0].pad == 70

    def test_restartable(self):
        seg = segment(ramp(500), 64, 16)
        first = [(c.offset, c.samples.copy()) for c in seg]
        second = [(c.offset, c.samples) for c in seg]
        assert len(first) == len(second) == len(seg)
        for (o1, s1), (o2, s2) in zip(first, second):
            assert o1 == o2
            np.testing.assert_array_equal(s1, s2)

    def test_lazy(self):
        seg = segment(ramp(10_000), 100, 10)
        it = iter(seg)
        assert next(it).index == 0
        assert next(it).offset == 90

    @pytest.mark.parametrize("chunk_len, overlap_len", [(10, 10), (10, 11), (10, -1), (0, 0)])
    def test_invalid_parameters(self, chunk_len, overlap_len):
        with pytest.raises(InvalidChunking):
            segment(ramp(100), chunk_len, overlap_len)

    def test_empty_buffer(self):
        empty = AudioBuffer(samples=np.zeros((2, 0), dtype=np.float32), sample_rate=100)
        with pytest.raises(InvalidChunking):
            segment(empty, 10, 2)
