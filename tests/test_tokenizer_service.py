import pytest

from services.errors import TokenizationError
from services.tokenizer_service import FallbackCharTokenizer, TokenEncoder, VocabularyTokenizer, build_token_encoder

VOCAB = {"<pad>": 0, "</s>": 1, "<unk>": 2, "hello": 3, "world": 4, "calm": 5, "voice": 6}


@pytest.fixture
def tokenizer_json(tmp_path):
    from tokenizers import Tokenizer
    from tokenizers.models import WordLevel
    from tokenizers.pre_tokenizers import Whitespace
    from tokenizers.processors import TemplateProcessing

    tokenizer = Tokenizer(WordLevel(vocab=VOCAB, unk_token="<unk>"))
    tokenizer.pre_tokenizer = Whitespace()
    tokenizer.post_processor = TemplateProcessing(single="$A </s>", special_tokens=[("</s>", 1)])
    path = tmp_path / "tokenizer.json"
    tokenizer.save(str(path))
    return path


def test_fallback_maps_codepoints_modulo_vocab():
    tokenizer = FallbackCharTokenizer(64)
    assert tokenizer.encode("abc") == [97 % 64, 98 % 64, 99 % 64]


def test_fallback_never_fails():
    tokenizer = FallbackCharTokenizer(100)
    assert tokenizer.encode("") == []
    ids = tokenizer.encode("héllo 👋 \u0000")
    assert len(ids) == 9
    assert all(0 <= i < 100 for i in ids)


def test_fallback_rejects_empty_vocabulary():
    with pytest.raises(ValueError):
        FallbackCharTokenizer(0)


def test_vocabulary_tokenizer_maps_words_and_unknowns(tokenizer_json):
    tokenizer = VocabularyTokenizer.from_tokenizer_json(tokenizer_json)
    assert tokenizer.encode("hello world") == [3, 4, 1]
    assert tokenizer.encode("hello  zebra") == [3, 2, 1]
    assert tokenizer.encode("") == [1]


def test_vocabulary_tokenizer_is_pure(tokenizer_json):
    tokenizer = VocabularyTokenizer.from_tokenizer_json(tokenizer_json)
    assert tokenizer.encode("calm voice") == tokenizer.encode("calm voice")


def test_vocabulary_backend_failure_becomes_tokenization_error():
    class Broken:
        def encode(self, text, add_special_tokens=True):
            raise RuntimeError("corrupt vocabulary")

    with pytest.raises(TokenizationError):
        VocabularyTokenizer(Broken(), "tokenizer.json").encode("hello")


def test_build_prefers_vocabulary_file(tokenizer_json):
    encoder = build_token_encoder(tokenizer_json, None, vocab_size=32)
    assert isinstance(encoder, VocabularyTokenizer)


def test_build_falls_back_when_no_files():
    encoder = build_token_encoder(None, None, vocab_size=32)
    assert isinstance(encoder, FallbackCharTokenizer)
    assert encoder.vocab_size == 32


def test_build_falls_back_on_incompatible_files(tmp_path):
    bad_json = tmp_path / "tokenizer.json"
    bad_json.write_text("{not json")
    bad_spm = tmp_path / "spiece.model"
    bad_spm.write_bytes(b"\x00\x01garbage")

    encoder = build_token_encoder(bad_json, bad_spm, vocab_size=50)
    assert isinstance(encoder, FallbackCharTokenizer)


def test_token_encoder_requires_encode():
    class Incomplete(TokenEncoder):
        name = "incomplete"

    with pytest.raises(TypeError):
        Incomplete()
