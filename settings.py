import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


@dataclass
class ServerConfig:
    """Server settings, overridable through PARLER_* environment variables."""

    model_id: str = field(default_factory=lambda: os.getenv("PARLER_MODEL_ID", "parler-tts/parler-tts-large-v1"))
    revision: str = field(default_factory=lambda: os.getenv("PARLER_MODEL_REVISION", "main"))
    device: str = field(default_factory=lambda: os.getenv("PARLER_DEVICE", "auto"))

    host: str = field(default_factory=lambda: os.getenv("PARLER_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", os.getenv("PARLER_PORT", "8039"))))
    log_level: str = field(default_factory=lambda: os.getenv("PARLER_LOG_LEVEL", "INFO"))

    max_steps: int = field(default_factory=lambda: int(os.getenv("PARLER_MAX_STEPS", "512")))
    default_temperature: float = field(default_factory=lambda: float(os.getenv("PARLER_TEMPERATURE", "0.0")))
    default_seed: int = field(default_factory=lambda: int(os.getenv("PARLER_SEED", "0")))
    default_top_p: Optional[float] = field(default_factory=lambda: _env_optional_float("PARLER_TOP_P"))

    # Loudness policy: "peak" or "lufs"
    loudness_policy: str = field(default_factory=lambda: os.getenv("PARLER_LOUDNESS", "peak"))
    target_peak: float = field(default_factory=lambda: float(os.getenv("PARLER_TARGET_PEAK", "0.7")))
    target_lufs: float = field(default_factory=lambda: float(os.getenv("PARLER_TARGET_LUFS", "-14.0")))

    persist_audio: bool = field(default_factory=lambda: _env_flag("PARLER_PERSIST_AUDIO", "1"))
    public_dir: Path = field(default_factory=lambda: Path(os.getenv("PARLER_PUBLIC_DIR", "public")))
    audio_dir: Path = field(default_factory=lambda: Path(os.getenv("PARLER_AUDIO_DIR", "public/audio")))

    max_workers: int = field(
        default_factory=lambda: int(os.getenv("PARLER_MAX_WORKERS", str(min(4, os.cpu_count() or 1))))
    )
    serialize_generation: bool = field(default_factory=lambda: _env_flag("PARLER_SERIALIZE_GENERATION", "0"))
