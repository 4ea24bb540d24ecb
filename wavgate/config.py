#!/usr/bin/env python3
"""
Unified configuration loader for wavgate.

Load order (first found wins):
  1) WAVGATE_CONFIG (env, absolute or relative to CWD)
  2) /etc/wavgate/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, MutableMapping

import yaml

from wavgate.pcm import PEAK_MODES, AudioFormat

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "device": "default",
        "sample_rate": 16000,
        "input_channels": 1,
        "channels": 1,
        "precision": 2,
    },
    "detector": {
        "on_threshold": 0.02,
        "off_threshold": 0.05,
        "wakeup_timeout": 30,
        "fake_break_limit": 2,
        "memory_depth": 31,
        "peak_mode": "first",
    },
    "capture": {
        "output_dir": "/var/lib/wavgate/captures",
        "queue_size": 8,
        "publish_timeout_sec": 5.0,
        "lead_in_seconds": 0.0,
        "flush_on_exhausted": False,
        "shutdown_timeout_sec": 5.0,
    },
    "debug": {
        "debug_file": False,
        "debug_samples": False,
        "debug_dir": "/var/lib/wavgate/debug",
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_ETC_CONFIG = Path("/etc/wavgate/config.yaml")

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None
_primary_config_path: Path | None = None


class ConfigError(ValueError):
    """Raised when configuration values are out of range."""


class ConfigPersistenceError(Exception):
    """Raised when configuration changes cannot be persisted."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring {path}: {exc}", flush=True)
    return {}


def _resolve(path: Path) -> Path:
    try:
        return path.resolve()
    except OSError:
        return path


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("WAVGATE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            _ETC_CONFIG,
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = _resolve(candidate)
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _resolve_primary_path(project_root: Path, active: Path | None) -> Path:
    env_cfg = os.getenv("WAVGATE_CONFIG")
    if env_cfg:
        return _resolve(Path(env_cfg).expanduser())
    if active is not None and active != _resolve(_ETC_CONFIG):
        return active
    return project_root / "config.yaml"


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "AUDIO_DEV" in os.environ:
        env_device = os.environ["AUDIO_DEV"].strip()
        if env_device:
            cfg.setdefault("audio", {})["device"] = env_device
    if "AUDIO_CHANNELS" in os.environ:
        try:
            channels = int(os.environ["AUDIO_CHANNELS"])
        except ValueError:
            pass
        else:
            cfg.setdefault("audio", {})["input_channels"] = max(1, min(2, channels))

    env_map: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
        "SAMPLE_RATE": ("audio", "sample_rate", int),
        "AUDIO_PRECISION": ("audio", "precision", int),
        "ON_THRESHOLD": ("detector", "on_threshold", float),
        "OFF_THRESHOLD": ("detector", "off_threshold", float),
        "WAKEUP_TIMEOUT": ("detector", "wakeup_timeout", int),
        "FAKE_BREAK_LIMIT": ("detector", "fake_break_limit", int),
        "PEAK_MODE": ("detector", "peak_mode", lambda s: s.strip().lower()),
        "OUTPUT_DIR": ("capture", "output_dir", str),
        "DEBUG_FILE": ("debug", "debug_file", _parse_bool),
        "DEBUG_SAMPLES": ("debug", "debug_samples", _parse_bool),
        "DEBUG_DIR": ("debug", "debug_dir", str),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path, _primary_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # wavgate/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
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
    _primary_config_path = _resolve_primary_path(project_root, active)

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def primary_config_path() -> Path:
    if _primary_config_path is None:
        get_cfg()
    assert _primary_config_path is not None
    return _primary_config_path


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


@dataclass(frozen=True)
class CaptureSettings:
    device: str
    input_channels: int
    format: AudioFormat
    on_threshold: float
    off_threshold: float
    wakeup_timeout: int
    fake_break_limit: int
    memory_depth: int
    peak_mode: str
    output_dir: Path
    queue_size: int
    publish_timeout: float
    lead_in_seconds: float
    flush_on_exhausted: bool
    shutdown_timeout: float
    debug_file: bool
    debug_samples: bool
    debug_dir: Path

    def detector_kwargs(self) -> Dict[str, Any]:
        return {
            "on_threshold": self.on_threshold,
            "off_threshold": self.off_threshold,
            "wakeup_timeout": self.wakeup_timeout,
            "fake_break_limit": self.fake_break_limit,
            "memory_depth": self.memory_depth,
            "peak_mode": self.peak_mode,
        }


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = cfg.get(name)
    if isinstance(value, Mapping):
        return value
    return _DEFAULTS[name]


def _typed(section: Mapping[str, Any], defaults: Mapping[str, Any], key: str, cast: Callable[[Any], Any]) -> Any:
    raw = section.get(key, defaults[key])
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key}: cannot interpret {raw!r}") from exc


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return _parse_bool(value)
    return bool(value)


def load_capture_settings(cfg: Mapping[str, Any] | None = None) -> CaptureSettings:
    """Validate the merged configuration and return typed capture settings."""
    if cfg is None:
        cfg = get_cfg()
    audio = _section(cfg, "audio")
    detector = _section(cfg, "detector")
    capture = _section(cfg, "capture")
    debug = _section(cfg, "debug")

    fmt = AudioFormat(
        sample_rate=_typed(audio, _DEFAULTS["audio"], "sample_rate", int),
        channels=_typed(audio, _DEFAULTS["audio"], "channels", int),
        precision=_typed(audio, _DEFAULTS["audio"], "precision", int),
    ).validate()

    input_channels = _typed(audio, _DEFAULTS["audio"], "input_channels", int)
    if input_channels not in (1, 2):
        raise ConfigError("audio.input_channels must be 1 or 2")

    on_threshold = _typed(detector, _DEFAULTS["detector"], "on_threshold", float)
    off_threshold = _typed(detector, _DEFAULTS["detector"], "off_threshold", float)
    for name, value in (("on_threshold", on_threshold), ("off_threshold", off_threshold)):
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"detector.{name} must be within [0, 1], got {value}")
    wakeup_timeout = _typed(detector, _DEFAULTS["detector"], "wakeup_timeout", int)
    if wakeup_timeout < 0:
        raise ConfigError("detector.wakeup_timeout must be >= 0")
    fake_break_limit = _typed(detector, _DEFAULTS["detector"], "fake_break_limit", int)
    if fake_break_limit < 0:
        raise ConfigError("detector.fake_break_limit must be >= 0")
    memory_depth = _typed(detector, _DEFAULTS["detector"], "memory_depth", int)
    if memory_depth < 0:
        raise ConfigError("detector.memory_depth must be >= 0")
    peak_mode = _typed(detector, _DEFAULTS["detector"], "peak_mode", lambda v: str(v).strip().lower())
    if peak_mode not in PEAK_MODES:
        raise ConfigError(f"detector.peak_mode must be one of {PEAK_MODES}, got {peak_mode!r}")

    queue_size = _typed(capture, _DEFAULTS["capture"], "queue_size", int)
    if queue_size <= 0:
        raise ConfigError("capture.queue_size must be positive")
    publish_timeout = _typed(capture, _DEFAULTS["capture"], "publish_timeout_sec", float)
    if publish_timeout < 0:
        raise ConfigError("capture.publish_timeout_sec must be >= 0")
    lead_in_seconds = _typed(capture, _DEFAULTS["capture"], "lead_in_seconds", float)
    if lead_in_seconds < 0:
        raise ConfigError("capture.lead_in_seconds must be >= 0")

    return CaptureSettings(
        device=str(audio.get("device", _DEFAULTS["audio"]["device"])),
        input_channels=input_channels,
        format=fmt,
        on_threshold=on_threshold,
        off_threshold=off_threshold,
        wakeup_timeout=wakeup_timeout,
        fake_break_limit=fake_break_limit,
        memory_depth=memory_depth,
        peak_mode=peak_mode,
        output_dir=Path(_typed(capture, _DEFAULTS["capture"], "output_dir", str)).expanduser(),
        queue_size=queue_size,
        publish_timeout=publish_timeout,
        lead_in_seconds=lead_in_seconds,
        flush_on_exhausted=_typed(capture, _DEFAULTS["capture"], "flush_on_exhausted", _as_bool),
        shutdown_timeout=_typed(capture, _DEFAULTS["capture"], "shutdown_timeout_sec", float),
        debug_file=_typed(debug, _DEFAULTS["debug"], "debug_file", _as_bool),
        debug_samples=_typed(debug, _DEFAULTS["debug"], "debug_samples", _as_bool),
        debug_dir=Path(_typed(debug, _DEFAULTS["debug"], "debug_dir", str)).expanduser(),
    )


def _load_raw_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
            if isinstance(payload, dict):
                return payload
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigPersistenceError(f"Unable to read configuration: {exc}") from exc
    return {}


def _dump_yaml(path: Path, payload: Mapping[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to create configuration directory: {exc}") from exc
    try:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                dict(payload),
                handle,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc


def _persist_settings_section(section: str, settings: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(settings, Mapping):
        raise ConfigPersistenceError(f"{section} settings payload must be a mapping")

    primary_path = primary_config_path()
    current = _load_raw_yaml(primary_path)
    target = current.get(section)
    if target is None:
        target = current[section] = {}
    if not isinstance(target, MutableMapping):
        raise ConfigPersistenceError(f"Configuration section {section!r} is not a mapping")
    target.update(settings)

    _dump_yaml(primary_path, current)
    return reload_cfg().get(section, {})


def update_detector_settings(settings: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(settings, Mapping):
        raise ConfigPersistenceError("detector settings payload must be a mapping")
    unknown = set(settings) - set(_DEFAULTS["detector"])
    if unknown:
        raise ConfigPersistenceError(f"unknown detector keys: {', '.join(sorted(unknown))}")
    return _persist_settings_section("detector", settings)
