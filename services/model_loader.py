import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import torch

from services.errors import ModelLoadError
from services.tokenizer_service import TokenEncoder, build_token_encoder
from tts_model_def.config import ParlerConfig
from tts_model_def.parler_tts import ParlerTTSRunner

logger = logging.getLogger(__name__)

WEIGHT_INDEX_FILE = "model.safetensors.index.json"
SINGLE_WEIGHT_FILE = "model.safetensors"
CONFIG_FILE = "config.json"
TOKENIZER_FILES = ("tokenizer.json", "spiece.model")


@dataclass(frozen=True)
class ModelBundle:
    """Everything loaded at startup. Shared read-only by every request."""

    config: ParlerConfig
    tokenizer: TokenEncoder
    model: ParlerTTSRunner
    device: torch.device
    model_id: str = ""
    weight_files: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class ModelFiles:
    config: Path
    weights: Tuple[Path, ...]
    tokenizer_json: Optional[Path] = None
    sentencepiece_model: Optional[Path] = None

    @property
    def snapshot_dir(self) -> Path:
        # hf_hub_download places every file of one revision in the same snapshot
        return self.config.parent


def resolve_device(name: str) -> torch.device:
    if name == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(name)


def hub_load_safetensors(repo_id: str, index_file: str, revision: str = "main") -> List[Path]:
    """Download every distinct shard named in a safetensors index file."""
    from huggingface_hub import hf_hub_download

    index_path = hf_hub_download(repo_id, index_file, revision=revision)
    try:
        with open(index_path, "r") as f:
            index = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ModelLoadError(f"Unreadable weight index {index_path}: {e}") from e

    weight_map = index.get("weight_map") if isinstance(index, dict) else None
    if weight_map is None:
        raise ModelLoadError(f"no weight map in {index_path}")
    if not isinstance(weight_map, dict):
        raise ModelLoadError(f"weight map in {index_path} is not a map")

    shards = sorted({value for value in weight_map.values() if isinstance(value, str)})
    return [Path(hf_hub_download(repo_id, shard, revision=revision)) for shard in shards]


def fetch_model_files(repo_id: str, revision: str = "main") -> ModelFiles:
    """Resolve config, weight shards and vocabulary files to local paths."""
    from huggingface_hub import hf_hub_download
    from huggingface_hub.utils import EntryNotFoundError

    start = time.time()
    try:
        try:
            weights = hub_load_safetensors(repo_id, WEIGHT_INDEX_FILE, revision)
        except EntryNotFoundError:
            logger.info(f"No {WEIGHT_INDEX_FILE} in {repo_id}, falling back to {SINGLE_WEIGHT_FILE}")
            weights = [Path(hf_hub_download(repo_id, SINGLE_WEIGHT_FILE, revision=revision))]
        config_path = Path(hf_hub_download(repo_id, CONFIG_FILE, revision=revision))
    except ModelLoadError:
        raise
    except Exception as e:
        raise ModelLoadError(f"Failed to retrieve model files for {repo_id}: {e}") from e

    tokenizer_paths = {}
    for filename in TOKENIZER_FILES:
        try:
            tokenizer_paths[filename] = Path(hf_hub_download(repo_id, filename, revision=revision))
        except Exception as e:
            logger.warning(f"{filename} not available for {repo_id}: {e}")

    logger.info(f"retrieved the files in {time.time() - start:.2f}s ({len(weights)} weight shards)")
    return ModelFiles(
        config=config_path,
        weights=tuple(weights),
        tokenizer_json=tokenizer_paths.get("tokenizer.json"),
        sentencepiece_model=tokenizer_paths.get("spiece.model"),
    )


def load_config(path: Path) -> ParlerConfig:
    try:
        with open(path, "r") as f:
            return ParlerConfig.from_dict(json.load(f))
    except (OSError, json.JSONDecodeError, TypeError, ValueError) as e:
        raise ModelLoadError(f"Invalid model config {path}: {e}") from e


def load_pretrained_model(source: Union[str, Path]):
    """Load ParlerTTSForConditionalGeneration from a local snapshot directory.

    Every model parameter must come from the checkpoint; a checkpoint that
    leaves parameters uninitialized is rejected.
    """
    from parler_tts import ParlerTTSForConditionalGeneration

    start = time.time()
    try:
        model, loading_info = ParlerTTSForConditionalGeneration.from_pretrained(
            str(source), output_loading_info=True
        )
    except Exception as e:
        raise ModelLoadError(f"Failed to load Parler-TTS checkpoint from {source}: {e}") from e

    missing = sorted(loading_info.get("missing_keys") or [])
    mismatched = loading_info.get("mismatched_keys") or []
    if missing or mismatched:
        raise ModelLoadError(
            f"checkpoint in {source} does not cover the model: {len(missing)} missing, "
            f"{len(mismatched)} mismatched tensors (first missing: {missing[:3]})"
        )
    unexpected = loading_info.get("unexpected_keys") or []
    if unexpected:
        logger.warning(f"⚠️  Ignoring {len(unexpected)} unused checkpoint tensors")

    logger.info(f"loaded the checkpoint in {time.time() - start:.2f}s")
    return model


def build_model_bundle(
    model,
    tokenizer: Optional[TokenEncoder] = None,
    device: torch.device = torch.device("cpu"),
    model_id: str = "",
    weight_files: Tuple[Path, ...] = (),
    files: Optional[ModelFiles] = None,
) -> ModelBundle:
    """Wrap a loaded ParlerTTSForConditionalGeneration for the request pipeline.

    Without an explicit tokenizer one is chosen from the vocabulary files in
    `files`, falling back to the character tokenizer.
    """
    try:
        config = ParlerConfig.from_dict(model.config.to_dict())
    except (TypeError, ValueError) as e:
        raise ModelLoadError(f"Unsupported model config: {e}") from e

    if tokenizer is None:
        start = time.time()
        tokenizer = build_token_encoder(
            files.tokenizer_json if files else None,
            files.sentencepiece_model if files else None,
            config.vocab_size,
        )
        logger.info(f"tokenizer loaded in {time.time() - start:.2f}s ({tokenizer.name})")

    runner = ParlerTTSRunner(model).to(device).eval()
    return ModelBundle(
        config=config,
        tokenizer=tokenizer,
        model=runner,
        device=device,
        model_id=model_id,
        weight_files=tuple(weight_files),
    )


def load_model_bundle(settings) -> ModelBundle:
    """Blocking startup load. Any failure is fatal and raises ModelLoadError."""
    logger.info(f"Loading {settings.model_id} ({settings.revision})...")
    files = fetch_model_files(settings.model_id, settings.revision)
    # validate the geometry before paying for the weights
    load_config(files.config)

    model = load_pretrained_model(files.snapshot_dir)
    device = resolve_device(settings.device)
    logger.info(f"Using device {device}")
    try:
        return build_model_bundle(model, device=device, model_id=settings.model_id, weight_files=files.weights, files=files)
    except ModelLoadError:
        raise
    except Exception as e:
        raise ModelLoadError(f"Failed to build model: {e}") from e
