# tts_model_def/config.py

# Typed view of a Parler-TTS configuration (config.json, or the loaded
# model's config.to_dict()). The decode loop and codec read ids, codebook
# geometry and the sample rate from here.

from dataclasses import dataclass, field
from typing import Any, Dict


def _first_set(*values):
    return next(v for v in values if v is not None)


@dataclass(frozen=True)
class TextEncoderConfig:
    # Encoder for the style description
    hidden_size: int = 1024
    num_layers: int = 4
    num_heads: int = 16


@dataclass(frozen=True)
class DecoderConfig:
    # Autoregressive audio-token decoder
    vocab_size: int = 1088
    num_codebooks: int = 9
    hidden_size: int = 1536
    num_hidden_layers: int = 30
    num_attention_heads: int = 24
    ffn_dim: int = 6144
    max_position_embeddings: int = 4096
    bos_token_id: int = 1025
    pad_token_id: int = 1024
    eos_token_id: int = 1024


@dataclass(frozen=True)
class AudioEncoderConfig:
    # DAC codec; these values match parler-tts-large-v1
    sampling_rate: int = 44100
    codebook_size: int = 1024
    num_codebooks: int = 9
    latent_dim: int = 1024
    frame_rate: int = 86
    hop_length: int = 512


@dataclass(frozen=True)
class ParlerConfig:
    vocab_size: int = 32128
    pad_token_id: int = 1024
    decoder_start_token_id: int = 1025
    text_encoder: TextEncoderConfig = field(default_factory=TextEncoderConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    audio_encoder: AudioEncoderConfig = field(default_factory=AudioEncoderConfig)

    @property
    def sample_rate(self) -> int:
        return self.audio_encoder.sampling_rate

    @property
    def num_codebooks(self) -> int:
        return self.decoder.num_codebooks

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ParlerConfig":
        text_raw = raw.get("text_encoder", {}) or {}
        decoder_raw = raw.get("decoder", {}) or {}
        audio_raw = raw.get("audio_encoder", {}) or {}

        text_encoder = TextEncoderConfig(
            hidden_size=int(text_raw.get("d_model", text_raw.get("hidden_size", TextEncoderConfig.hidden_size))),
            num_layers=int(text_raw.get("num_layers", TextEncoderConfig.num_layers)),
            num_heads=int(text_raw.get("num_heads", TextEncoderConfig.num_heads)),
        )

        pad_token_id = int(decoder_raw.get("pad_token_id", raw.get("pad_token_id", DecoderConfig.pad_token_id)))
        decoder = DecoderConfig(
            vocab_size=int(decoder_raw.get("vocab_size", DecoderConfig.vocab_size)),
            num_codebooks=int(decoder_raw.get("num_codebooks", DecoderConfig.num_codebooks)),
            hidden_size=int(decoder_raw.get("hidden_size", DecoderConfig.hidden_size)),
            num_hidden_layers=int(decoder_raw.get("num_hidden_layers", DecoderConfig.num_hidden_layers)),
            num_attention_heads=int(decoder_raw.get("num_attention_heads", DecoderConfig.num_attention_heads)),
            ffn_dim=int(decoder_raw.get("ffn_dim", DecoderConfig.ffn_dim)),
            max_position_embeddings=int(
                decoder_raw.get("max_position_embeddings", DecoderConfig.max_position_embeddings)
            ),
            bos_token_id=int(decoder_raw.get("bos_token_id", DecoderConfig.bos_token_id)),
            pad_token_id=pad_token_id,
            eos_token_id=int(_first_set(decoder_raw.get("eos_token_id"), pad_token_id)),
        )

        sampling_rate = int(audio_raw.get("sampling_rate", AudioEncoderConfig.sampling_rate))
        frame_rate = int(audio_raw.get("frame_rate", AudioEncoderConfig.frame_rate))
        audio_encoder = AudioEncoderConfig(
            sampling_rate=sampling_rate,
            codebook_size=int(audio_raw.get("codebook_size", AudioEncoderConfig.codebook_size)),
            num_codebooks=int(audio_raw.get("num_codebooks", decoder.num_codebooks)),
            latent_dim=int(audio_raw.get("latent_dim", AudioEncoderConfig.latent_dim)),
            frame_rate=frame_rate,
            hop_length=int(audio_raw.get("hop_length", max(1, sampling_rate // max(1, frame_rate)))),
        )

        if audio_encoder.num_codebooks != decoder.num_codebooks:
            raise ValueError(
                f"codebook mismatch: decoder has {decoder.num_codebooks}, "
                f"audio encoder has {audio_encoder.num_codebooks}"
            )
        if min(decoder.pad_token_id, decoder.eos_token_id) < audio_encoder.codebook_size:
            raise ValueError("pad and eos token ids must lie outside the codebook range")

        return cls(
            vocab_size=int(raw.get("vocab_size", cls.vocab_size)),
            pad_token_id=pad_token_id,
            decoder_start_token_id=int(raw.get("decoder_start_token_id", decoder.bos_token_id)),
            text_encoder=text_encoder,
            decoder=decoder,
            audio_encoder=audio_encoder,
        )
