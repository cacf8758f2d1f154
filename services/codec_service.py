import logging

import numpy as np
import torch

from services.errors import AudioDecodeError
from tts_model_def.config import ParlerConfig

logger = logging.getLogger(__name__)


class AudioCodec:
    """Decodes a [num_codebooks, frames] code matrix into mono float32 PCM."""

    def __init__(self, model, config: ParlerConfig, device: torch.device):
        self.model = model
        self.config = config
        self.device = device

    @property
    def sample_rate(self) -> int:
        return self.config.audio_encoder.sampling_rate

    def _validate(self, codes: torch.Tensor) -> None:
        expected = self.config.audio_encoder.num_codebooks
        if codes.dim() != 2:
            raise AudioDecodeError(f"code matrix must be 2-D, got shape {tuple(codes.shape)}")
        if codes.shape[0] != expected:
            raise AudioDecodeError(f"expected {expected} codebooks, got {codes.shape[0]}")
        if codes.dtype.is_floating_point or codes.dtype == torch.bool:
            raise AudioDecodeError(f"code matrix must hold integers, got {codes.dtype}")
        if codes.numel() and (int(codes.min()) < 0 or int(codes.max()) >= self.config.audio_encoder.codebook_size):
            raise AudioDecodeError("code matrix holds codes outside the codebook range")

    def decode(self, codes: torch.Tensor) -> np.ndarray:
        self._validate(codes)
        if codes.shape[1] == 0:
            return np.zeros(0, dtype=np.float32)

        try:
            with torch.inference_mode():
                pcm = self.model.decode_codes(codes.to(torch.long).unsqueeze(0).to(self.device))
        except Exception as e:
            raise AudioDecodeError(f"codec failed to decode {codes.shape[1]} frames: {e}") from e

        audio_np = pcm[0, 0].float().cpu().numpy()
        logger.debug(f"decoded {codes.shape[1]} frames into {len(audio_np)} samples")
        return audio_np.astype(np.float32)
