import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from services.errors import TokenizationError

logger = logging.getLogger(__name__)


class TokenEncoder(ABC):
    """Maps text to token ids. Chosen once at startup, shared by all requests."""

    name = "base"

    @abstractmethod
    def encode(self, text: str) -> List[int]:
        ...


class VocabularyTokenizer(TokenEncoder):
    """Subword tokenizer backed by the model's own vocabulary.

    Whitespace pre-segmentation, subword lookup and unknown-token mapping are
    all handled by the vocabulary file; the end-of-sequence id is appended.
    """

    def __init__(self, backend, kind: str):
        self.backend = backend
        self.kind = kind
        self.name = f"vocabulary:{kind}"

    @classmethod
    def from_tokenizer_json(cls, path: Path) -> "VocabularyTokenizer":
        from transformers import PreTrainedTokenizerFast

        return cls(PreTrainedTokenizerFast(tokenizer_file=str(path)), "tokenizer.json")

    @classmethod
    def from_sentencepiece(cls, path: Path) -> "VocabularyTokenizer":
        import sentencepiece as spm

        processor = spm.SentencePieceProcessor()
        processor.load(str(path))
        return cls(processor, "sentencepiece")

    def encode(self, text: str) -> List[int]:
        try:
            if self.kind == "sentencepiece":
                ids = list(self.backend.encode(text, out_type=int))
                eos_id = self.backend.eos_id()
                if eos_id >= 0:
                    ids.append(eos_id)
            else:
                ids = self.backend.encode(text, add_special_tokens=True)
        except Exception as e:
            raise TokenizationError(f"{self.name} failed to encode text: {e}") from e
        return [int(i) for i in ids]


class FallbackCharTokenizer(TokenEncoder):
    """Degraded-mode tokenizer: one id per character, codepoint mod vocab size.

    The ids carry no vocabulary meaning; this only keeps the pipeline running
    when no vocabulary file could be loaded. Never raises.
    """

    name = "fallback:char"

    def __init__(self, vocab_size: int):
        if vocab_size <= 0:
            raise ValueError("vocab_size must be positive")
        self.vocab_size = vocab_size

    def encode(self, text: str) -> List[int]:
        return [ord(ch) % self.vocab_size for ch in text or ""]


def build_token_encoder(
    tokenizer_json: Optional[Path],
    sentencepiece_model: Optional[Path],
    vocab_size: int,
) -> TokenEncoder:
    """Pick the tokenizer once, trying vocabulary files before the char fallback."""
    candidates = [
        (tokenizer_json, VocabularyTokenizer.from_tokenizer_json),
        (sentencepiece_model, VocabularyTokenizer.from_sentencepiece),
    ]
    for path, loader in candidates:
        if path is None or not Path(path).exists():
            continue
        try:
            encoder = loader(Path(path))
            logger.info(f"✅ Loaded tokenizer from {Path(path).name}")
            return encoder
        except Exception as e:
            logger.warning(f"Could not load tokenizer from {path}: {e}")

    logger.warning(f"⚠️  No usable vocabulary, using character fallback tokenizer (N={vocab_size})")
    return FallbackCharTokenizer(vocab_size)
