import io
import logging
from typing import Tuple

import numpy as np
from scipy.io import wavfile

from services.errors import AudioEncodeError

logger = logging.getLogger(__name__)

PCM16_SCALE = 32767.0
WAV_HEADER_SIZE = 44


class LoudnessNormalizer:
    """Rescale a waveform to a safe, audible level.

    "peak" scales so the loudest sample sits at target_peak; "lufs" measures
    integrated loudness (ITU-R BS.1770, via pyloudnorm) and applies gain to
    reach target_lufs, then soft-limits with tanh. Silence, and buffers too
    short for a loudness measurement, come back unchanged.
    """

    POLICIES = ("peak", "lufs")

    def __init__(self, sample_rate: int, policy: str = "peak", target_peak: float = 0.7, target_lufs: float = -14.0):
        if policy not in self.POLICIES:
            raise ValueError(f"Unknown loudness policy '{policy}'. Choose from: {', '.join(self.POLICIES)}")
        self.sample_rate = sample_rate
        self.policy = policy
        self.target_peak = target_peak
        self.target_lufs = target_lufs

    def normalize(self, pcm: np.ndarray) -> np.ndarray:
        audio_np = np.asarray(pcm, dtype=np.float32)
        if len(audio_np) == 0:
            return audio_np
        if self.policy == "lufs":
            return self._normalize_lufs(audio_np)
        return self._normalize_peak(audio_np)

    def _normalize_peak(self, audio_np: np.ndarray) -> np.ndarray:
        max_val = float(np.max(np.abs(audio_np)))
        if max_val == 0.0:
            return audio_np
        return (audio_np.astype(np.float64) * (self.target_peak / max_val)).astype(np.float32)

    def _normalize_lufs(self, audio_np: np.ndarray) -> np.ndarray:
        import pyloudnorm as ln

        meter = ln.Meter(self.sample_rate)
        try:
            loudness = meter.integrated_loudness(audio_np.astype(np.float64))
        except ValueError as e:
            # shorter than one gating block
            logger.debug(f"Skipping loudness normalization: {e}")
            return audio_np

        if not np.isfinite(loudness):
            return audio_np
        gain = 10.0 ** ((self.target_lufs - loudness) / 20.0)
        return np.tanh(audio_np.astype(np.float64) * gain).astype(np.float32)


class WavEncoder:
    """Serialize float PCM into a mono 16-bit linear PCM WAV file."""

    def encode(self, pcm: np.ndarray, sample_rate: int) -> bytes:
        if sample_rate <= 0:
            raise AudioEncodeError(f"Invalid sample rate: {sample_rate}")
        audio_np = np.asarray(pcm, dtype=np.float32)
        if audio_np.ndim != 1:
            raise AudioEncodeError(f"Expected mono PCM, got shape {audio_np.shape}")

        audio_np = np.clip(np.nan_to_num(audio_np, nan=0.0, posinf=1.0, neginf=-1.0), -1.0, 1.0)
        pcm16 = np.round(audio_np * PCM16_SCALE).astype(np.int16)

        buffer = io.BytesIO()
        try:
            wavfile.write(buffer, sample_rate, pcm16)
        except Exception as e:
            raise AudioEncodeError(f"WAV serialization failed: {e}") from e
        return buffer.getvalue()


def read_wav(data: bytes) -> Tuple[int, np.ndarray]:
    """Parse a 16-bit WAV produced by WavEncoder back into (sample_rate, float32 PCM)."""
    sample_rate, pcm16 = wavfile.read(io.BytesIO(data))
    return sample_rate, (pcm16.astype(np.float32) / PCM16_SCALE)
