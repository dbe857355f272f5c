"""Windowed energy/volatility classification of a sample series.

``classify`` is a pure function: it splits the time-ordered series into
fixed-duration windows, compares each window's mean magnitude and variance
against the whole series, and labels it.  Magnitudes are absolute values,
so negative readings count by amplitude.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np

from .audio_params import AudioParams, WindowClassification, map_to_audio
from .domain_models import Sample, ms_to_iso

EnergyLevel = Literal["low", "medium", "high"]
Volatility = Literal["stable", "fluctuating", "spiking"]
Direction = Literal["rising", "steady", "fading"]

MS_PER_HOUR = 3_600_000
DEFAULT_WINDOW_MS = 3 * MS_PER_HOUR
MIN_WINDOW_MS = 60_000
MIN_WINDOWS = 3
MAX_WINDOWS = 16
MIN_SAMPLES_PER_WINDOW = 3

_NEGLIGIBLE_STD = 1e-6
_FLAT_BAND = 0.05
_STABLE_BELOW = 0.3
_FLUCTUATING_BELOW = 0.7

# (minimum span in hours, window count) checked top to bottom.
_WINDOW_COUNT_BY_SPAN: tuple[tuple[float, int], ...] = (
    (72.0, 12),
    (36.0, 10),
    (18.0, 8),
    (8.0, 6),
    (4.0, 4),
)


@dataclass(frozen=True, slots=True)
class ClassificationOptions:
    window_ms: int | None = None
    hop_ms: int | None = None
    desired_windows: int | None = None
    min_windows: int = MIN_WINDOWS
    max_windows: int = MAX_WINDOWS
    min_window_ms: int = MIN_WINDOW_MS
    min_samples_per_window: int = MIN_SAMPLES_PER_WINDOW


@dataclass(frozen=True, slots=True)
class GlobalStats:
    count: int
    average: float
    std_dev: float

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "average": self.average, "stdDev": self.std_dev}


@dataclass(frozen=True, slots=True)
class ClassifiedWindow:
    index: int
    start_ms: int
    end_ms: int
    sample_count: int
    local_avg: float
    local_variance: float
    normalized_variance: float
    energy_level: EnergyLevel
    volatility: Volatility
    is_peak: bool
    combined_label: str
    audio_params: AudioParams

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "startISO": ms_to_iso(self.start_ms),
            "endISO": ms_to_iso(self.end_ms),
            "sampleCount": self.sample_count,
            "localAvg": self.local_avg,
            "localVariance": self.local_variance,
            "normalizedVariance": self.normalized_variance,
            "energyLevel": self.energy_level,
            "volatility": self.volatility,
            "isPeak": self.is_peak,
            "combinedLabel": self.combined_label,
            "audioParams": self.audio_params.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class SignalWindowsAnalysis:
    window_ms: int
    hop_ms: int
    global_stats: GlobalStats
    windows: tuple[ClassifiedWindow, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "windowMs": self.window_ms,
            "hopMs": self.hop_ms,
            "globalStats": self.global_stats.to_dict(),
            "windows": [window.to_dict() for window in self.windows],
        }


def clamp01(value: float) -> float:
    if not math.isfinite(value) or value <= 0.0:
        return 0.0
    return 1.0 if value >= 1.0 else float(value)


def classify_energy_level(
    local_avg: float, global_avg: float, global_std: float
) -> tuple[EnergyLevel, bool]:
    """Return ``(level, is_peak)``; a peak is always also ``high``."""
    if not math.isfinite(local_avg):
        return "low", False
    if global_std < _NEGLIGIBLE_STD:
        if local_avg > global_avg * (1.0 + _FLAT_BAND):
            return "high", False
        if local_avg < global_avg * (1.0 - _FLAT_BAND):
            return "low", False
        return "medium", False
    half_std = 0.5 * global_std
    if local_avg < global_avg - half_std:
        return "low", False
    if local_avg > global_avg + global_std:
        return "high", True
    if local_avg > global_avg + half_std:
        return "high", False
    return "medium", False


def classify_volatility(normalized_variance: float) -> Volatility:
    if normalized_variance < _STABLE_BELOW:
        return "stable"
    if normalized_variance < _FLUCTUATING_BELOW:
        return "fluctuating"
    return "spiking"


def combined_label(energy: str, volatility: str) -> str:
    return f"{energy.capitalize()}–{volatility.capitalize()}"


def classify_direction(diff: float, guard: float) -> Direction:
    """Label a change *diff* as rising, fading or steady relative to *guard*."""
    limit = 0.05 if guard <= 0 else max(guard * 0.15, 0.05)
    if diff > limit:
        return "rising"
    if diff < -limit:
        return "fading"
    return "steady"


def target_window_count(span_ms: int, options: ClassificationOptions) -> int:
    desired = options.desired_windows
    if not desired or desired <= 0:
        hours = span_ms / MS_PER_HOUR
        desired = next(
            (count for min_hours, count in _WINDOW_COUNT_BY_SPAN if hours >= min_hours),
            MIN_WINDOWS,
        )
    return min(options.max_windows, max(options.min_windows, int(round(desired))))


def _sorted_samples(samples: Sequence[Sample]) -> list[Sample]:
    finite = [s for s in samples if math.isfinite(s.value)]
    if all(a.timestamp_ms <= b.timestamp_ms for a, b in zip(finite, finite[1:])):
        return finite
    return sorted(finite, key=lambda s: s.timestamp_ms)


def classify(
    samples: Sequence[Sample], options: ClassificationOptions | None = None
) -> SignalWindowsAnalysis:
    """Partition *samples* into windows and label each against global statistics."""
    options = options or ClassificationOptions()
    ordered = _sorted_samples(samples)
    if not ordered:
        window_ms = options.window_ms or DEFAULT_WINDOW_MS
        return SignalWindowsAnalysis(
            window_ms=window_ms,
            hop_ms=options.hop_ms or window_ms,
            global_stats=GlobalStats(count=0, average=0.0, std_dev=0.0),
        )

    n_samples = len(ordered)
    timestamps = np.fromiter((s.timestamp_ms for s in ordered), dtype=np.int64, count=n_samples)
    magnitudes = np.abs(np.fromiter((s.value for s in ordered), dtype=np.float64, count=n_samples))
    global_avg = float(magnitudes.mean())
    global_std = float(magnitudes.std(ddof=1)) if magnitudes.size > 1 else 0.0
    variance_floor = global_std * global_std if global_std > _NEGLIGIBLE_STD else 1.0

    start_ms = int(timestamps[0])
    end_ms = int(timestamps[-1])
    span_ms = max(end_ms - start_ms, options.min_window_ms)
    default_window_ms = max(
        options.min_window_ms, math.ceil(span_ms / target_window_count(span_ms, options))
    )
    window_ms = max(1, int(options.window_ms or default_window_ms))
    hop_ms = max(1, int(options.hop_ms or window_ms))

    windows: list[ClassifiedWindow] = []
    window_start = start_ms
    while window_start <= end_ms:
        window_end = window_start + window_ms
        lo = int(np.searchsorted(timestamps, window_start, side="left"))
        hi = int(np.searchsorted(timestamps, window_end, side="left"))
        count = hi - lo
        if count >= options.min_samples_per_window:
            local = magnitudes[lo:hi]
            local_avg = float(local.mean())
            local_variance = float(local.var(ddof=1)) if count > 1 else 0.0
            normalized_variance = clamp01(local_variance / variance_floor)
            energy, is_peak = classify_energy_level(local_avg, global_avg, global_std)
            volatility = classify_volatility(normalized_variance)
            windows.append(
                ClassifiedWindow(
                    index=len(windows),
                    start_ms=window_start,
                    end_ms=window_end,
                    sample_count=count,
                    local_avg=local_avg,
                    local_variance=local_variance,
                    normalized_variance=normalized_variance,
                    energy_level=energy,
                    volatility=volatility,
                    is_peak=is_peak,
                    combined_label=combined_label(energy, volatility),
                    audio_params=map_to_audio(
                        WindowClassification(energy=energy, volatility=volatility, is_peak=is_peak)
                    ),
                )
            )
        window_start += hop_ms

    return SignalWindowsAnalysis(
        window_ms=window_ms,
        hop_ms=hop_ms,
        global_stats=GlobalStats(count=len(ordered), average=global_avg, std_dev=global_std),
        windows=tuple(windows),
    )


def summarize(analysis: SignalWindowsAnalysis) -> dict[str, Any]:
    """Count windows per energy level and volatility class."""
    energy = {level: 0 for level in ("low", "medium", "high")}
    volatility = {level: 0 for level in ("stable", "fluctuating", "spiking")}
    for window in analysis.windows:
        energy[window.energy_level] += 1
        volatility[window.volatility] += 1
    return {
        "windowCount": len(analysis.windows),
        "peakCount": sum(1 for window in analysis.windows if window.is_peak),
        "energy": energy,
        "volatility": volatility,
    }


__all__ = [
    "ClassificationOptions",
    "ClassifiedWindow",
    "GlobalStats",
    "SignalWindowsAnalysis",
    "clamp01",
    "classify",
    "classify_direction",
    "classify_energy_level",
    "classify_volatility",
    "combined_label",
    "summarize",
    "target_window_count",
]
