# services/frame_relay/config.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Dict, Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CONFIG_PATH = "config/config.yaml"


class PipelineConfig(BaseModel):
    """Settings for one capture session. Frozen: a new session loads a new one."""
    model_config = ConfigDict(frozen=True)

    source_url: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    api_key: str = ""
    store_id: str = ""
    capture_store_path: Path = Path("captured_frames")

    capture_interval: float = Field(default=30.0, gt=0)
    upload_interval: float = Field(default=300.0, gt=0)
    upload_timeout: float = Field(default=30.0, gt=0)

    ffmpeg_bin: str = "ffmpeg"
    width: int = Field(default=1280, gt=0)
    height: int = Field(default=720, gt=0)
    rtsp_transport: str = "tcp"
    capture_timeout: float = Field(default=20.0, gt=0)

    recover_on_start: bool = True
    drain_max_passes: int = Field(default=5, ge=1)
    drain_pass_delay: float = Field(default=2.0, ge=0)

    @field_validator("store_id", mode="before")
    @classmethod
    def _store_id_as_str(cls, v):
        # YAML happily turns `store_id: 111` into an int
        return "" if v is None else str(v)


class RuntimeConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    redis_url: Optional[str] = None
    stream_events: str = "relay.events"
    log_level: str = "INFO"


def pipeline_config_from_dict(cfg: Dict[str, Any]) -> PipelineConfig:
    relay   = cfg.get("relay", {}) or {}
    capture = cfg.get("capture", {}) or {}
    up_http = (cfg.get("upload", {}) or {}).get("http", {}) or {}

    api_key = os.getenv("RELAY_API_KEY") or up_http.get("api_key", "")

    return PipelineConfig(
        source_url=relay.get("source_url", ""),
        endpoint=up_http.get("url", ""),
        api_key=api_key,
        store_id=up_http.get("store_id", ""),
        capture_store_path=Path(relay.get("capture_store", "captured_frames")).expanduser(),
        capture_interval=float(relay.get("capture_interval_sec", 30)),
        upload_interval=float(relay.get("upload_interval_sec", 300)),
        upload_timeout=float(up_http.get("timeout_sec", 30)),
        ffmpeg_bin=capture.get("ffmpeg_bin", "ffmpeg"),
        width=int(capture.get("width", 1280)),
        height=int(capture.get("height", 720)),
        rtsp_transport=capture.get("rtsp_transport", "tcp"),
        capture_timeout=float(capture.get("timeout_sec", 20)),
        recover_on_start=bool(relay.get("recover_on_start", True)),
        drain_max_passes=int(relay.get("drain_max_passes", 5)),
        drain_pass_delay=float(relay.get("drain_pass_delay_sec", 2)),
    )


def runtime_config_from_dict(cfg: Dict[str, Any]) -> RuntimeConfig:
    rt = cfg.get("runtime", {}) or {}
    return RuntimeConfig(
        redis_url=rt.get("redis_url") or None,
        stream_events=rt.get("stream_events", "relay.events"),
        log_level=rt.get("log_level", "INFO"),
    )


def load_config(config_path: str | Path = DEFAULT_CONFIG_PATH) -> tuple[PipelineConfig, RuntimeConfig]:
    with open(config_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    return pipeline_config_from_dict(cfg), runtime_config_from_dict(cfg)
