"""Configuration management for VoiceLens."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeviceConfig(BaseModel):
    """Device configuration."""

    name: str = "voicelens"
    mode: Literal["production", "development"] = "development"
    log_level: str = "INFO"


class CameraConfig(BaseModel):
    """Capture configuration."""

    ideal_resolution: list[int] = [1280, 720]
    min_resolution: list[int] = [640, 480]
    jpeg_quality: int = 80
    fps: int = 15
    default_facing: Literal["front", "back"] = "back"
    front_device_index: int = 0
    back_device_index: int = 1


class SpeechConfig(BaseModel):
    """Speech-to-text configuration."""

    language: str = "en-US"
    min_transcript_length: int = 3
    auto_restart: bool = True
    restart_delay_seconds: float = 0.5
    max_reprompts: int = 2
    listen_timeout_seconds: float = 8.0
    phrase_time_limit_seconds: float = 12.0


class VoiceConfig(BaseModel):
    """Text-to-speech configuration."""

    enabled: bool = True
    locale: str = "en"
    rate: float = 0.85
    pitch: float = 1.0
    volume: float = 0.9
    watchdog_floor_seconds: float = 5.0
    watchdog_seconds_per_char: float = 0.1


class VisionConfig(BaseModel):
    """Remote vision-understanding configuration."""

    endpoint: str = "https://api.openai.com/v1"
    api_key: str | None = None
    model: str = "gpt-4o"
    detail: Literal["low", "high", "auto"] = "low"
    max_tokens: int = 1024
    timeout_seconds: float = 60.0


class PermissionsConfig(BaseModel):
    """Declared capability permissions."""

    microphone: Literal["unknown", "granted", "denied"] = "granted"


class Config(BaseSettings):
    """Main configuration for VoiceLens."""

    model_config = SettingsConfigDict(
        env_prefix="VOICELENS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    device: DeviceConfig = Field(default_factory=DeviceConfig)
    camera: CameraConfig = Field(default_factory=CameraConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)

    # Mock backends for development
    mock_mode: bool = False

    @classmethod
    def from_yaml(cls, path: Path | str) -> Config:
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)


def load_config(
    config_path: Path | str | None = None,
    env_override: bool = True,
) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to config file. If None, searches standard locations.
        env_override: Whether to allow environment variables to override config.

    Returns:
        Loaded configuration.
    """
    search_paths = [
        Path("/etc/voicelens/config.yaml"),
        Path.home() / ".config" / "voicelens" / "config.yaml",
        Path("config.yaml"),
        Path("configs/voicelens.yaml"),
    ]

    if config_path:
        search_paths.insert(0, Path(config_path))

    config_file: Path | None = None
    for path in search_paths:
        if path.exists():
            config_file = path
            break

    if config_file:
        config = Config.from_yaml(config_file)
    else:
        config = Config()

    if env_override:
        # Vision credential from environment
        api_key = os.environ.get("VOICELENS_VISION_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if api_key:
            config.vision.api_key = api_key

        if os.environ.get("VOICELENS_MOCK_MODE", "").lower() in ("1", "true", "yes"):
            config.mock_mode = True

    return config


def get_default_config() -> dict[str, Any]:
    """Get default configuration as dictionary."""
    return Config().model_dump()
