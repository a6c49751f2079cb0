from pathlib import Path

import main
from screenreel import config


def test_transcode_without_engine_retags_input(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("TMP_DIR", str(tmp_path / "engine"))
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)
    source = tmp_path / "clip.webm"
    source.write_bytes(b"webm-bytes")

    rc = main.main(["transcode", str(source), "--no-engine"])

    assert rc == 2
    assert (tmp_path / "clip.mp4").read_bytes() == b"webm-bytes"
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)


def test_transcode_missing_input(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)

    assert main.main(["transcode", str(tmp_path / "nope.webm")]) == 1
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)


def test_output_never_overwrites_mp4_input(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)
    source = tmp_path / "already.mp4"
    source.write_bytes(b"mp4-bytes")

    main.main(["transcode", str(source), "--no-engine"])

    assert source.read_bytes() == b"mp4-bytes"
    assert (tmp_path / "already.converted.mp4").read_bytes() == b"mp4-bytes"
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)
