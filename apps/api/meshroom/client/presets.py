"""Quality presets applied to outgoing media."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class QualityPreset:
    name: str
    label: str
    width: int
    height: int
    frame_rate: int
    video_bitrate: int
    audio_bitrate: int

    @property
    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


PRESETS: dict[str, QualityPreset] = {
    "low": QualityPreset("low", "Low (360p)", 640, 360, 15, 400_000, 32_000),
    "medium": QualityPreset("medium", "Medium (540p)", 960, 540, 24, 1_000_000, 64_000),
    "high": QualityPreset("high", "High (720p)", 1280, 720, 30, 2_500_000, 128_000),
    "hd": QualityPreset("hd", "Full HD (1080p)", 1920, 1080, 30, 4_000_000, 128_000),
}

DEFAULT_PRESET = "high"


def get_preset(name: str) -> QualityPreset:
    try:
        return PRESETS[name]
    except KeyError:
        raise ValueError(f"Unknown quality preset {name!r}; expected one of {', '.join(PRESETS)}") from None
