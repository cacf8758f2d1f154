import asyncio
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

import torch

from services.codec_service import AudioCodec
from services.errors import InvalidRequest, PersistenceError, PipelineError
from services.generation_service import GenerationEngine, SamplingConfig
from services.model_loader import ModelBundle
from utils.audio_utils import LoudnessNormalizer, WavEncoder

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = (
    "A female speaker delivers a slightly expressive and animated speech with a moderate "
    "speed and pitch. The recording is of very high quality, with the speaker's voice "
    "sounding clear and very close up."
)
MAX_SEED = 2**64 - 1


def _field_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidRequest(f"form field is not valid UTF-8: {e}") from e
    return str(value)


def _parse_float(value: Any) -> Optional[float]:
    try:
        parsed = float(_field_text(value).strip())
    except (InvalidRequest, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _parse_seed(value: Any) -> Optional[int]:
    try:
        parsed = int(_field_text(value).strip())
    except (InvalidRequest, ValueError):
        return None
    return parsed if 0 <= parsed <= MAX_SEED else None


@dataclass(frozen=True)
class GenerationRequest:
    text: str
    description: str
    temperature: Optional[float] = None
    seed: Optional[int] = None
    top_p: Optional[float] = None

    @classmethod
    def from_form(
        cls, fields: Mapping[str, Any], default_description: str = DEFAULT_DESCRIPTION
    ) -> "GenerationRequest":
        """Build a request from form fields.

        Missing or blank text is rejected; a blank description falls back to
        the default voice. Malformed or out-of-range numbers count as absent.
        """
        text = _field_text(fields.get("text"))
        if not text.strip():
            raise InvalidRequest("text is required")

        description = _field_text(fields.get("description"))
        if not description.strip():
            description = default_description

        temperature = _parse_float(fields.get("temperature"))
        if temperature is not None and temperature < 0:
            temperature = None
        top_p = _parse_float(fields.get("top_p"))
        if top_p is not None and not 0 < top_p <= 1:
            top_p = None

        return cls(
            text=text,
            description=description,
            temperature=temperature,
            seed=_parse_seed(fields.get("seed")),
            top_p=top_p,
        )


@dataclass(frozen=True)
class SynthesisResult:
    audio: bytes
    filename: str
    sample_rate: int
    path: Optional[Path] = None


def timestamped_filename() -> str:
    return f"generated_audio_{datetime.now():%Y%m%d_%H%M%S_%f}.wav"


class ParlerTTSService:
    """Text + style description -> WAV bytes, against a shared ModelBundle."""

    def __init__(self, bundle: ModelBundle, settings):
        self.bundle = bundle
        self.settings = settings
        self.engine = GenerationEngine(bundle.model, bundle.config, bundle.device)
        self.codec = AudioCodec(bundle.model, bundle.config, bundle.device)
        self.normalizer = LoudnessNormalizer(
            self.codec.sample_rate,
            policy=settings.loudness_policy,
            target_peak=settings.target_peak,
            target_lufs=settings.target_lufs,
        )
        self.wav_encoder = WavEncoder()
        self.executor = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="tts-worker")
        # Only needed when the model's scoring call is not side-effect free
        self._generation_lock = threading.Lock() if settings.serialize_generation else None
        self.is_initialized = True
        logger.info(
            f"✅ TTS service ready: {bundle.config.sample_rate} Hz, {bundle.config.num_codebooks} codebooks, "
            f"{settings.max_workers} workers, tokenizer={bundle.tokenizer.name}"
        )

    @property
    def sample_rate(self) -> int:
        return self.codec.sample_rate

    def parse_request(self, raw_form_fields: Mapping[str, Any]) -> GenerationRequest:
        return GenerationRequest.from_form(raw_form_fields)

    def handle(
        self, raw_form_fields: Mapping[str, Any], cancel_event: Optional[threading.Event] = None
    ) -> SynthesisResult:
        """Run the full pipeline synchronously on the calling thread."""
        return self.process(self.parse_request(raw_form_fields), cancel_event)

    def process(
        self, request: GenerationRequest, cancel_event: Optional[threading.Event] = None
    ) -> SynthesisResult:
        try:
            return self._synthesize_real(request, cancel_event)
        except PipelineError:
            raise
        except Exception as e:
            raise PipelineError(f"unexpected pipeline failure: {e}") from e

    def _synthesize_real(self, request: GenerationRequest, cancel_event) -> SynthesisResult:
        start = time.time()
        sampling = SamplingConfig.from_request(
            request,
            default_temperature=self.settings.default_temperature,
            default_seed=self.settings.default_seed,
            default_top_p=self.settings.default_top_p,
        )
        logger.info(f"Synthesizing '{request.text[:30]}...' with {sampling}")

        tokenizer = self.bundle.tokenizer
        prompt_tokens = tokenizer.encode(request.text)
        style_tokens = tokenizer.encode(request.description)
        logger.debug(f"Prompt tokens: {len(prompt_tokens)}, description tokens: {len(style_tokens)}")

        codes = self._generate_codes(prompt_tokens, style_tokens, sampling, cancel_event)
        pcm = self.codec.decode(codes)
        pcm = self.normalizer.normalize(pcm)
        audio = self.wav_encoder.encode(pcm, self.sample_rate)

        filename = timestamped_filename()
        path = self._persist(audio, filename) if self.settings.persist_audio else None

        logger.info(f"Generated {len(pcm)} audio samples in {time.time() - start:.2f}s")
        return SynthesisResult(audio=audio, filename=path.name if path else filename, sample_rate=self.sample_rate, path=path)

    def _generate_codes(self, prompt_tokens, style_tokens, sampling, cancel_event) -> torch.Tensor:
        max_steps = self.settings.max_steps
        if self._generation_lock is None:
            return self.engine.generate(prompt_tokens, style_tokens, sampling, max_steps, cancel_event)
        with self._generation_lock:
            return self.engine.generate(prompt_tokens, style_tokens, sampling, max_steps, cancel_event)

    def _persist(self, audio: bytes, filename: str) -> Path:
        audio_dir = Path(self.settings.audio_dir)
        try:
            audio_dir.mkdir(parents=True, exist_ok=True)
            path = audio_dir / filename
            suffix = 1
            while True:
                try:
                    with open(path, "xb") as f:
                        f.write(audio)
                    break
                except FileExistsError:
                    path = audio_dir / f"{Path(filename).stem}_{suffix}.wav"
                    suffix += 1
        except OSError as e:
            raise PersistenceError(f"Could not write {filename} to {audio_dir}: {e}") from e

        logger.info(f"Generated audio saved to: {path}")
        return path

    async def synthesize(self, raw_form_fields: Mapping[str, Any]) -> SynthesisResult:
        """Validate on the event loop, then run generation on the worker pool."""
        if not self.is_initialized:
            raise PipelineError("TTS not properly initialized")

        request = self.parse_request(raw_form_fields)
        cancel_event = threading.Event()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self.executor, self.process, request, cancel_event)
        except asyncio.CancelledError:
            cancel_event.set()
            raise

    def shutdown(self) -> None:
        self.is_initialized = False
        self.executor.shutdown(wait=False, cancel_futures=True)
