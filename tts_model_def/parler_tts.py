# tts_model_def/parler_tts.py

# Step-level access to a pretrained ParlerTTSForConditionalGeneration.
# The decode loop in services/generation_service.py drives generation one
# step at a time through this wrapper; the library model does the scoring
# and the DAC codec does the decoding. Every call re-scores the whole code
# history without a key/value cache, so one instance can serve concurrent
# requests.

import torch


class ParlerTTSRunner:
    """Description encoding, next-code scoring and code-to-PCM decoding."""

    def __init__(self, model):
        self.model = model
        self.num_codebooks = model.decoder.config.num_codebooks

    @property
    def audio_encoder(self):
        return self.model.audio_encoder

    def to(self, device: torch.device) -> "ParlerTTSRunner":
        self.model.to(device)
        return self

    def eval(self) -> "ParlerTTSRunner":
        self.model.eval()
        return self

    def encode_description(self, input_ids: torch.Tensor):
        """T5 encoder outputs for the style description, reused by every step."""
        return self.model.text_encoder(
            input_ids=input_ids,
            attention_mask=torch.ones_like(input_ids),
            return_dict=True,
        )

    def embed_prompt(self, input_ids: torch.Tensor) -> torch.Tensor:
        return self.model.embed_prompts(input_ids)

    def score(self, codes: torch.Tensor, prompt_hidden_states: torch.Tensor, encoder_outputs) -> torch.Tensor:
        """Next-code logits for every codebook, shape [num_codebooks, vocab_size].

        codes is the [1, num_codebooks, steps] history starting with BOS.
        """
        outputs = self.model(
            encoder_outputs=encoder_outputs,
            prompt_hidden_states=prompt_hidden_states,
            decoder_input_ids=codes.reshape(-1, codes.shape[-1]),
            use_cache=False,
            return_dict=True,
        )
        logits = outputs.logits
        # (bsz * K, seq, vocab) or (bsz, K, seq, vocab) depending on the release
        logits = logits.reshape(-1, self.num_codebooks, logits.shape[-2], logits.shape[-1])
        return logits[0, :, -1, :]

    def decode_codes(self, codes: torch.Tensor) -> torch.Tensor:
        """[1, num_codebooks, frames] codes -> [1, 1, samples] waveform."""
        decoded = self.audio_encoder.decode(
            audio_codes=codes.unsqueeze(0),
            audio_scales=[None],
        )
        return decoded.audio_values
