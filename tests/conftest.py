"""Pytest configuration and fixtures."""
import threading
import time

import pytest
import torch

from services.model_loader import build_model_bundle
from services.tokenizer_service import FallbackCharTokenizer
from settings import ServerConfig

SPOKEN_TOKEN = 5
TEXT_VOCAB = 64
CODEBOOK_SIZE = 16
PAD_ID = 16
BOS_ID = 17
INIT_SEED = 0


def make_tiny_parler_config(max_positions: int = 128):
    """A few-parameter ParlerTTSConfig: 1-layer T5, 1-layer decoder, 3-codebook DAC."""
    from parler_tts import ParlerTTSConfig, ParlerTTSDecoderConfig
    from parler_tts.dac_wrapper import DACConfig
    from transformers import T5Config

    text_encoder = T5Config(vocab_size=TEXT_VOCAB, d_model=16, d_kv=8, d_ff=32, num_layers=1, num_heads=2)
    audio_encoder = DACConfig(
        num_codebooks=3,
        model_bitrate=8,
        codebook_size=CODEBOOK_SIZE,
        latent_dim=8,
        frame_rate=86,
        sampling_rate=44100,
    )
    decoder = ParlerTTSDecoderConfig(
        vocab_size=BOS_ID + 1,
        max_position_embeddings=max_positions,
        num_hidden_layers=1,
        ffn_dim=32,
        num_attention_heads=2,
        hidden_size=16,
        num_codebooks=3,
        pad_token_id=PAD_ID,
        bos_token_id=BOS_ID,
        eos_token_id=PAD_ID,
    )
    return ParlerTTSConfig.from_sub_models_config(
        text_encoder,
        audio_encoder,
        decoder,
        vocab_size=TEXT_VOCAB,
        pad_token_id=PAD_ID,
        decoder_start_token_id=BOS_ID,
    )


def make_tiny_model(max_positions: int = 128):
    from parler_tts import ParlerTTSForConditionalGeneration

    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(INIT_SEED)
        model = ParlerTTSForConditionalGeneration(make_tiny_parler_config(max_positions))
    return model.eval()


def make_tiny_bundle(model):
    return build_model_bundle(model, FallbackCharTokenizer(TEXT_VOCAB))


def force_constant_token(runner, token: int) -> None:
    """Rig the decoder so every codebook always scores `token` highest."""
    causal_lm = runner.model.decoder
    with torch.no_grad():
        final_norm = causal_lm.model.decoder.layer_norm
        final_norm.weight.zero_()
        final_norm.bias.zero_()
        final_norm.bias[0] = 1.0
        for head in causal_lm.lm_heads:
            head.weight.zero_()
            head.weight[token, 0] = 10.0


class CountingModel:
    """Wraps a runner and counts scoring calls."""

    def __init__(self, model):
        self.model = model
        self.score_calls = 0

    def encode_description(self, input_ids):
        return self.model.encode_description(input_ids)

    def embed_prompt(self, input_ids):
        return self.model.embed_prompt(input_ids)

    def score(self, codes, prompt_hidden_states, encoder_outputs):
        self.score_calls += 1
        return self.model.score(codes, prompt_hidden_states, encoder_outputs)

    def decode_codes(self, codes):
        return self.model.decode_codes(codes)


@pytest.fixture(scope="session")
def _shared_model():
    # the DAC decoder is large even at tiny settings; build it once
    return make_tiny_model()


@pytest.fixture(scope="session")
def _pristine_decoder_state(_shared_model):
    return {name: tensor.clone() for name, tensor in _shared_model.decoder.state_dict().items()}


@pytest.fixture
def tiny_bundle(_shared_model, _pristine_decoder_state):
    """Seeded random model; may stop at any step."""
    _shared_model.decoder.load_state_dict(_pristine_decoder_state)
    return make_tiny_bundle(_shared_model)


@pytest.fixture
def speaking_bundle(tiny_bundle):
    """Model that never emits the stop code, so it always produces audio."""
    force_constant_token(tiny_bundle.model, SPOKEN_TOKEN)
    return tiny_bundle


@pytest.fixture
def tiny_config(tiny_bundle):
    return tiny_bundle.config


@pytest.fixture
def settings(tmp_path):
    return ServerConfig(
        max_steps=24,
        default_temperature=0.0,
        default_seed=0,
        default_top_p=None,
        loudness_policy="peak",
        target_peak=0.7,
        persist_audio=False,
        public_dir=tmp_path / "public",
        audio_dir=tmp_path / "audio",
        max_workers=2,
        serialize_generation=False,
    )


class SlowModel(CountingModel):
    """Runner whose scoring steps take a while, so a request can be abandoned midway."""

    def __init__(self, model, step_seconds: float = 0.05):
        super().__init__(model)
        self.step_seconds = step_seconds

    def score(self, codes, prompt_hidden_states, encoder_outputs):
        time.sleep(self.step_seconds)
        return super().score(codes, prompt_hidden_states, encoder_outputs)


class ProcessRecorder:
    """Records how a service's worker-thread pipeline run ended."""

    def __init__(self, service):
        self.error = None
        self.done = threading.Event()
        self._process = service.process
        service.process = self.process

    def process(self, request, cancel_event=None):
        try:
            return self._process(request, cancel_event)
        except Exception as e:
            self.error = e
            raise
        finally:
            self.done.set()
