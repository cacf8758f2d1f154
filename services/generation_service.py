import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import torch

from services.errors import GenerationCancelled, GenerationError
from tts_model_def.config import ParlerConfig

logger = logging.getLogger(__name__)

# Below this temperature sampling degrades to argmax
GREEDY_TEMPERATURE = 1e-7
# Text pad id, used when a token sequence comes back empty
TEXT_PAD_ID = 0


@dataclass(frozen=True)
class SamplingConfig:
    temperature: float = 0.0
    seed: int = 0
    top_p: Optional[float] = None

    @property
    def greedy(self) -> bool:
        return self.temperature < GREEDY_TEMPERATURE

    @classmethod
    def from_request(
        cls,
        request,
        default_temperature: float = 0.0,
        default_seed: int = 0,
        default_top_p: Optional[float] = None,
    ) -> "SamplingConfig":
        """Fill absent request fields with server defaults."""
        return cls(
            temperature=request.temperature if request.temperature is not None else default_temperature,
            seed=request.seed if request.seed is not None else default_seed,
            top_p=request.top_p if request.top_p is not None else default_top_p,
        )


def nucleus_filter(probs: torch.Tensor, top_p: float) -> torch.Tensor:
    """Zero out everything outside the smallest top-probability set reaching top_p."""
    sorted_probs, sorted_idx = torch.sort(probs, descending=True, stable=True)
    mass_before = torch.cumsum(sorted_probs, dim=-1) - sorted_probs
    keep = mass_before < top_p
    keep[0] = True
    filtered = torch.zeros_like(probs)
    filtered[sorted_idx[keep]] = sorted_probs[keep]
    return filtered / filtered.sum()


class LogitsSampler:
    """Per-call sampling state. Never shared between generation calls."""

    def __init__(self, sampling: SamplingConfig):
        self.sampling = sampling
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(sampling.seed)

    def sample(self, logits: torch.Tensor) -> int:
        if self.sampling.greedy:
            return int(torch.argmax(logits))

        probs = torch.softmax(logits / self.sampling.temperature, dim=-1)
        top_p = self.sampling.top_p
        if top_p is not None and top_p < 1.0:
            probs = nucleus_filter(probs, top_p)
        return int(torch.multinomial(probs, 1, generator=self.generator))


class GenerationEngine:
    """Autoregressive decode loop producing a [num_codebooks, steps] code matrix.

    Codebook k starts sampling at step k (delay pattern). A codebook that
    emits the pad or EOS id is finished; the loop ends when all are finished or
    after max_steps steps. BOS and pad ids are never recorded.
    """

    def __init__(self, model, config: ParlerConfig, device: torch.device):
        self.model = model
        self.config = config
        self.device = device

        vocab_size = config.decoder.vocab_size
        codebook_size = config.audio_encoder.codebook_size
        # ids the sampler may never pick: specials other than pad and EOS, unused tail
        blocked = torch.ones(vocab_size, dtype=torch.bool)
        blocked[:codebook_size] = False
        self._stop_ids = {config.decoder.pad_token_id, config.decoder.eos_token_id}
        for stop_id in self._stop_ids:
            blocked[stop_id] = False
        self._blocked_ids = blocked

    def _as_input(self, tokens: Sequence[int]) -> torch.Tensor:
        ids = list(tokens) or [TEXT_PAD_ID]
        return torch.tensor(ids, dtype=torch.long, device=self.device).unsqueeze(0)

    def generate(
        self,
        prompt: Sequence[int],
        style: Sequence[int],
        sampling: SamplingConfig,
        max_steps: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> torch.Tensor:
        if max_steps < 0:
            raise GenerationError(f"max_steps must be non-negative, got {max_steps}")

        start = time.time()
        try:
            with torch.inference_mode():
                codes, steps = self._decode_loop(prompt, style, sampling, max_steps, cancel_event)
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"scoring step failed: {e}") from e

        logger.info(f"generated {steps} steps ({codes.shape[1]} frames) in {time.time() - start:.2f}s")
        return codes

    def _decode_loop(self, prompt, style, sampling, max_steps, cancel_event):
        num_codebooks = self.config.num_codebooks
        bos_id = self.config.decoder_start_token_id
        stop_ids = self._stop_ids

        prompt_ids = self._as_input(prompt)
        style_ids = self._as_input(style)
        logger.debug(f"prompt tokens: {prompt_ids.shape[1]}, description tokens: {style_ids.shape[1]}")

        encoded = self.model.encode_description(style_ids)
        prompt_hidden = self.model.embed_prompt(prompt_ids)

        # the prompt occupies decoder positions ahead of the codes
        position_budget = self.config.decoder.max_position_embeddings - prompt_ids.shape[1]
        if position_budget <= 0 and max_steps > 0:
            raise GenerationError(
                f"prompt of {prompt_ids.shape[1]} tokens leaves no room for audio "
                f"({self.config.decoder.max_position_embeddings} positions)"
            )
        step_limit = min(max_steps, max(position_budget, 0))

        sampler = LogitsSampler(sampling)
        current = [bos_id] * num_codebooks
        rows: List[List[int]] = [[] for _ in range(num_codebooks)]
        history = torch.full((1, num_codebooks, 1), bos_id, dtype=torch.long, device=self.device)

        steps = 0
        for step in range(step_limit):
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled(f"generation cancelled at step {step}")

            logits = self.model.score(history, prompt_hidden, encoded).float().cpu()
            if not torch.isfinite(logits).all():
                raise GenerationError(f"non-finite logits at step {step}")
            logits = logits.masked_fill(self._blocked_ids, float("-inf"))

            for k in range(min(step + 1, num_codebooks)):
                if current[k] not in stop_ids:
                    current[k] = sampler.sample(logits[k])
            steps = step + 1

            if all(token in stop_ids for token in current):
                break

            for k, token in enumerate(current):
                if token != bos_id and token not in stop_ids:
                    rows[k].append(token)

            column = torch.tensor(current, dtype=torch.long, device=self.device).view(1, num_codebooks, 1)
            history = torch.cat([history, column], dim=2)

        frames = min(len(row) for row in rows)
        if frames == 0:
            return torch.zeros((num_codebooks, 0), dtype=torch.long), steps
        return torch.tensor([row[:frames] for row in rows], dtype=torch.long), steps
