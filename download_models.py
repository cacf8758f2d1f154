#!/usr/bin/env python3
"""
Prefetch Parler-TTS artifacts into the Hugging Face cache so server startup
does not wait on the network.
"""
import argparse
import logging
import sys

from huggingface_hub import snapshot_download

from services.errors import ModelLoadError
from services.model_loader import CONFIG_FILE, TOKENIZER_FILES, fetch_model_files
from settings import ServerConfig

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ALLOW_PATTERNS = ["*.safetensors", "*.json", *TOKENIZER_FILES]


def download_parler_model(model_id: str, revision: str = "main", cache_dir=None) -> str:
    """Download the weight shards, config and vocabulary for one model"""
    logger.info(f"Downloading {model_id} ({revision})...")
    path = snapshot_download(
        repo_id=model_id,
        revision=revision,
        cache_dir=cache_dir,
        allow_patterns=ALLOW_PATTERNS,
    )
    logger.info(f"✅ {model_id} downloaded to: {path}")
    return path


def main(argv=None) -> int:
    settings = ServerConfig()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--model-id", default=settings.model_id)
    parser.add_argument("--revision", default=settings.revision)
    parser.add_argument("--cache-dir", default=None)
    parser.add_argument("--verify", action="store_true", help=f"resolve shards and {CONFIG_FILE} like the server does")
    args = parser.parse_args(argv)

    try:
        download_parler_model(args.model_id, args.revision, args.cache_dir)
        if args.verify:
            files = fetch_model_files(args.model_id, args.revision)
            logger.info(f"✅ Verified {len(files.weights)} weight shards and {files.config.name}")
    except ModelLoadError as e:
        logger.error(f"❌ {e}")
        return 1
    except Exception as e:
        logger.error(f"❌ Failed to download {args.model_id}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
