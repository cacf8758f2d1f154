import download_models


def test_prefetch_downloads_weights_config_and_vocabulary(monkeypatch):
    calls = []

    def fake_snapshot_download(**kwargs):
        calls.append(kwargs)
        return "/cache/parler"

    monkeypatch.setattr(download_models, "snapshot_download", fake_snapshot_download)
    assert download_models.main(["--model-id", "parler-tts/parler-tts-mini-v1", "--revision", "v1"]) == 0

    assert calls[0]["repo_id"] == "parler-tts/parler-tts-mini-v1"
    assert calls[0]["revision"] == "v1"
    assert "*.safetensors" in calls[0]["allow_patterns"]
    assert "tokenizer.json" in calls[0]["allow_patterns"]


def test_prefetch_failure_returns_nonzero(monkeypatch):
    def failing_snapshot_download(**kwargs):
        raise ConnectionError("offline")

    monkeypatch.setattr(download_models, "snapshot_download", failing_snapshot_download)
    assert download_models.main(["--model-id", "parler-tts/missing"]) == 1
