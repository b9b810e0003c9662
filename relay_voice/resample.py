"""
Streaming sample rate conversion for PCM16 mono audio

Linear interpolation with an exact integer ratio. Input samples that are
still needed by future output positions stay in a carry buffer, so splitting
the input at arbitrary byte offsets never changes the output.
"""

import logging
from math import gcd

import numpy as np

logger = logging.getLogger(__name__)

INT16_MIN = -32768
INT16_MAX = 32767


class SampleRateConverter:
    """
    Convert a PCM16 little-endian mono stream from one fixed rate to another

    Output sample ``i`` sits at source position ``i * source / target``. It is
    emitted once the input has reached the position of output ``i + 1``, so a
    single call over ``N`` samples produces ``floor(N * target / source)``
    samples and the concatenated output of many calls is identical.
    """

    def __init__(self, source_rate: int = 24000, target_rate: int = 16000):
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError("sample rates must be positive")
        self.source_rate = source_rate
        self.target_rate = target_rate

        divisor = gcd(source_rate, target_rate)
        # Positions are tracked in units of 1/up source samples
        self._up = target_rate // divisor
        self._down = source_rate // divisor

        self._carry = np.zeros(0, dtype=np.int16)
        self._odd_byte = b""
        self._phase = 0

    def reset(self) -> None:
        """Drop all carried state (start of a new capture session)"""
        self._carry = np.zeros(0, dtype=np.int16)
        self._odd_byte = b""
        self._phase = 0

    @property
    def carried_samples(self) -> int:
        return len(self._carry)

    def process(self, chunk: bytes) -> bytes:
        """
        Resample one chunk

        Args:
            chunk: PCM16 little-endian mono bytes at the source rate

        Returns:
            PCM16 little-endian mono bytes at the target rate (may be empty)
        """
        data = self._odd_byte + chunk
        whole = len(data) - (len(data) % 2)
        self._odd_byte = data[whole:]

        incoming = np.frombuffer(data[:whole], dtype="<i2").astype(np.int16)
        if len(self._carry):
            samples = np.concatenate([self._carry, incoming])
        else:
            samples = incoming

        n = len(samples)
        up, down = self._up, self._down

        count = max(0, (n * up - self._phase) // down)
        if count == 0:
            self._carry = samples
            return b""

        positions = self._phase + np.arange(count, dtype=np.int64) * down
        index = positions // up
        frac = positions % up

        # Upsampling can reach past the last sample; stop before a missing bracket
        has_bracket = (frac == 0) | (index + 1 < n)
        if not has_bracket.all():
            count = int(np.argmin(has_bracket))
            positions = positions[:count]
            index = index[:count]
            frac = frac[:count]

        s0 = samples[index].astype(np.int64)
        s1 = samples[np.minimum(index + 1, n - 1)].astype(np.int64)
        # Round half up: s0 + frac * (s1 - s0) / up
        interpolated = np.floor(s0 + (frac * (s1 - s0)) / up + 0.5)
        output = np.clip(interpolated, INT16_MIN, INT16_MAX).astype("<i2")

        next_phase = self._phase + count * down
        consumed = min(next_phase // up, n)
        self._carry = samples[consumed:].copy()
        self._phase = next_phase - consumed * up

        return output.tobytes()
