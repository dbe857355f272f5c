"""Mapping from a window's classification to sonification parameters.

The mapping is a contract with the audio and narrative consumers.  Any
change to a threshold or value here must bump ``AUDIO_PARAMS_VERSION``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

AUDIO_PARAMS_VERSION = 1

_PEAK_DEPTH_BOOST = 0.1
_PEAK_GLITCH_BOOST = 0.15

_ENERGY_LAYERS: dict[str, tuple[int, str]] = {
    "low": (1, "dark"),
    "medium": (2, "balanced"),
    "high": (3, "bright"),
}

# volatility -> (modulation depth, glitch amount, description)
_VOLATILITY_MODULATION: dict[str, tuple[float, float, str]] = {
    "stable": (0.2, 0.0, "keep modulation minimal and gentle"),
    "fluctuating": (0.45, 0.2, "apply moderate modulation to show motion"),
    "spiking": (0.65, 0.35, "add controlled modulation or light glitch accents"),
}


@dataclass(frozen=True, slots=True)
class WindowClassification:
    energy: str
    volatility: str
    is_peak: bool = False


@dataclass(frozen=True, slots=True)
class AudioParams:
    layers: int
    brightness: str
    modulation_depth: float
    modulation_description: str
    glitch_amount: float
    version: int = AUDIO_PARAMS_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "layers": self.layers,
            "brightness": self.brightness,
            "modulationDepth": self.modulation_depth,
            "modulationDescription": self.modulation_description,
            "glitchAmount": self.glitch_amount,
            "version": self.version,
        }


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def map_to_audio(classification: WindowClassification) -> AudioParams:
    try:
        layers, brightness = _ENERGY_LAYERS[classification.energy]
        depth, glitch, description = _VOLATILITY_MODULATION[classification.volatility]
    except KeyError as exc:
        raise ValueError(f"Unknown classification label: {exc.args[0]!r}") from exc
    if classification.is_peak:
        layers += 1
        depth += _PEAK_DEPTH_BOOST
        glitch += _PEAK_GLITCH_BOOST
        description = f"{description}; highlight peaks with a subtle ramp"
    return AudioParams(
        layers=layers,
        brightness=brightness,
        modulation_depth=round(_clamp_unit(depth), 6),
        modulation_description=description,
        glitch_amount=round(_clamp_unit(glitch), 6),
    )
