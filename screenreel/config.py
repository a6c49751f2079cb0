#!/usr/bin/env python3
"""
Unified configuration loader for screenreel.

Load order (first found wins):
  1) SCREENREEL_CONFIG (env, absolute or relative to CWD)
  2) /etc/screenreel/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "tmp_dir": "/tmp/screenreel",
        "recordings_dir": "/var/lib/screenreel/recordings",
        "exports_dir": "/var/lib/screenreel/exports",
    },
    "engine": {
        # A string, or a list when the engine is launched through a wrapper.
        "binary": "ffmpeg",
        "init_timeout_sec": 15.0,
        "poll_interval_ms": 20,
    },
    "transcode": {
        "target_mime_type": "video/mp4",
        "output_name": "output.mp4",
        "video_codec": "libx264",
        "preset": "fast",
        "crf": 22,
        "audio_codec": "aac",
        "extra_args": ["-movflags", "+faststart"],
        "probe_enabled": True,
        "default_total_frames": 300,
        "base_timeout_ms": 180_000,
        "max_timeout_ms": 600_000,
    },
    "progress": {
        "initial_ratio": 0.05,
        "frames_floor_ratio": 0.1,
        "max_ratio": 0.99,
        "min_trusted_total_frames": 10,
        "fallback_frame_window": 300,
        "fallback_span": 0.89,
        "reference_pixels": 1920 * 1080,
        "max_complexity_factor": 4.0,
        "unknown_duration_frames": 1800,
    },
    "mixer": {
        "sample_rate": 48000,
        "render_quantum": 128,
        "mic_gain": 2.8,
        "system_gain": 1.5,
        "presence_filter": {"frequency_hz": 2500.0, "q": 1.0, "gain_db": 6.0},
        "mic_presence_compressor": {
            "threshold_db": -40.0,
            "knee_db": 30.0,
            "ratio": 12.0,
            "attack_sec": 0.003,
            "release_sec": 0.25,
        },
        "mic_compressor": {
            "threshold_db": -24.0,
            "knee_db": 12.0,
            "ratio": 4.0,
            "attack_sec": 0.002,
            "release_sec": 0.15,
        },
        "system_compressor": {
            "threshold_db": -15.0,
            "knee_db": 10.0,
            "ratio": 7.0,
            "attack_sec": 0.001,
            "release_sec": 0.1,
        },
        "limiter": {
            "threshold_db": -3.0,
            "knee_db": 0.0,
            "ratio": 20.0,
            "attack_sec": 0.001,
            "release_sec": 0.1,
        },
        "analyser": {"fft_size": 2048, "smoothing": 0.8},
        "monitor_interval_sec": 1.0 / 60.0,
        "monitor_every": 50,
        "low_level": 10.0,
        "high_level": 100.0,
        "mic_gain_step": 1.1,
        "mic_gain_max": 4.0,
        "system_gain_step_up": 1.05,
        "system_gain_max": 2.5,
        "system_gain_step_down": 0.95,
        "system_gain_min": 0.5,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        _log.warning("Ignoring unreadable config file %s: %s", path, exc)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SCREENREEL_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/screenreel/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Engine binary
    if "FFMPEG_BIN" in os.environ:
        value = os.environ["FFMPEG_BIN"].strip()
        if value:
            cfg.setdefault("engine", {})["binary"] = value
    # Paths
    if "REC_DIR" in os.environ:
        cfg.setdefault("paths", {})["recordings_dir"] = os.environ["REC_DIR"]
    if "TMP_DIR" in os.environ:
        cfg.setdefault("paths", {})["tmp_dir"] = os.environ["TMP_DIR"]
    if "EXPORT_DIR" in os.environ:
        cfg.setdefault("paths", {})["exports_dir"] = os.environ["EXPORT_DIR"]

    env_map = {
        "TRANSCODE_CRF": ("transcode", "crf", int),
        "TRANSCODE_PRESET": ("transcode", "preset", str),
        "TRANSCODE_BASE_TIMEOUT_MS": ("transcode", "base_timeout_ms", int),
        "TRANSCODE_MAX_TIMEOUT_MS": ("transcode", "max_timeout_ms", int),
        "MIC_GAIN": ("mixer", "mic_gain", float),
        "SYSTEM_GAIN": ("mixer", "system_gain", float),
        "LISTEN_HOST": ("web_server", "listen_host", str),
        "LISTEN_PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # screenreel/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def log_level(cfg: Dict[str, Any] | None = None) -> int:
    """Return the logging level implied by ``logging.dev_mode``."""
    cfg = cfg if cfg is not None else get_cfg()
    dev_mode = bool(cfg.get("logging", {}).get("dev_mode"))
    return logging.DEBUG if dev_mode else logging.INFO
