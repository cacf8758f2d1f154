"""Error types raised by the TTS pipeline.

Only InvalidRequest is a client error; everything else is reported to the
caller as a generic internal error and logged with its cause.
"""


class PipelineError(Exception):
    """Base class for every failure inside the request pipeline."""

    status_code = 500


class InvalidRequest(PipelineError):
    status_code = 400


class ModelLoadError(PipelineError):
    """Artifact retrieval or config/vocabulary/weight parsing failed at startup."""


class TokenizationError(PipelineError):
    """The vocabulary tokenizer could not encode a text field."""


class GenerationError(PipelineError):
    """Scoring or sampling failed inside the decode loop."""


class GenerationCancelled(GenerationError):
    """The caller went away and the decode loop was abandoned."""


class AudioDecodeError(PipelineError):
    """The code matrix does not fit the codec."""


class AudioEncodeError(PipelineError):
    """PCM could not be serialized to a WAV container."""


class PersistenceError(PipelineError):
    """Writing the generated file to disk failed."""
