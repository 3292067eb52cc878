from callscribe.config import Settings, split_csv


def test_defaults():
    cfg = Settings(_env_file=None)
    assert cfg.SOURCE_SAMPLE_RATE == 8000
    assert cfg.target_sample_rate == 16000
    assert cfg.chunk_max_bytes == int(cfg.CHUNK_MAX_SECONDS * 16000) * 2
    assert cfg.NOISE_GATE_THRESHOLD == 64
    assert cfg.AUDIO_GAIN == 1.5


def test_env_override(monkeypatch):
    monkeypatch.setenv("CHUNK_INTERVAL_SECONDS", "3.5")
    monkeypatch.setenv("MEDIA_ACCEPTED_TRACKS", "inbound, outbound")
    cfg = Settings(_env_file=None)
    assert cfg.CHUNK_INTERVAL_SECONDS == 3.5
    assert split_csv(cfg.MEDIA_ACCEPTED_TRACKS) == ["inbound", "outbound"]


def test_split_csv_drops_blanks():
    assert split_csv(" a, ,b ,") == ["a", "b"]
    assert split_csv("") == []
