"""
Built-in scoring functions for the model adapters.

Each scorer takes an RGB uint8 array and returns ``(label, confidence)``
where label is "ai_generated" or "authentic" and confidence is 0-100.
The engine treats them as opaque: any callable with the same signature
(a wrapped torch model, a remote inference client) can replace them.

Scorers never modify their input and never log pixel data.
"""

import math
from typing import Tuple

import cv2
import numpy as np

AI = "ai_generated"
AUTHENTIC = "authentic"

# =============================================================================
# CALIBRATION CONSTANTS
# =============================================================================

# Frequency-domain detector
FREQ_PEAK_PIVOT = 6.0          # Peak-to-median ratio of a clean camera spectrum
FREQ_SLOPE_NATURAL = -2.0      # 1/f^2 power law of natural images
FREQ_SLOPE_TOLERANCE = 0.6
FREQ_PEAK_GAIN = 0.55
FREQ_SLOPE_GAIN = 2.2

# Chroma-residual detector (food-specialized)
CHROMA_CORR_PIVOT = 0.78       # Demosaiced sensor noise is strongly correlated
CHROMA_CORR_GAIN = 9.0
CHROMA_FLATNESS_PIVOT = 0.30   # Share of near-flat residual blocks
CHROMA_FLATNESS_GAIN = 5.0

# Noise-residual detector (backup)
NOISE_KURTOSIS_PIVOT = 2.3     # log(kurtosis) of camera Laplacian residuals
NOISE_KURTOSIS_GAIN = 2.5


def _sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-max(-60.0, min(60.0, x))))


def _verdict(p_ai: float) -> Tuple[str, float]:
    """Map an AI probability to (label, confidence in the label)."""
    p_ai = min(1.0, max(0.0, p_ai))
    label = AI if p_ai >= 0.5 else AUTHENTIC
    confidence = 50.0 + abs(p_ai - 0.5) * 100.0
    return label, round(confidence, 1)


def center_crop(pixels: np.ndarray, size: int) -> np.ndarray:
    """Centre crop without resampling, so frequency content is untouched."""
    h, w = pixels.shape[:2]
    ch, cw = min(h, size), min(w, size)
    top, left = (h - ch) // 2, (w - cw) // 2
    return pixels[top:top + ch, left:left + cw]


def _luminance(rgb: np.ndarray) -> np.ndarray:
    rgb = rgb.astype(np.float32)
    return 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]


# =============================================================================
# Primary: frequency-domain detector
# =============================================================================

def _radial_profile(power: np.ndarray) -> np.ndarray:
    h, w = power.shape
    yy, xx = np.indices((h, w))
    r = np.hypot(yy - h // 2, xx - w // 2).astype(np.int32)
    counts = np.bincount(r.ravel())
    sums = np.bincount(r.ravel(), weights=power.ravel())
    return sums / np.maximum(counts, 1)


def _periodic_peak_ratio(log_mag: np.ndarray) -> float:
    """Strength of upsampling-grid peaks relative to the spectrum median."""
    h, w = log_mag.shape
    cy, cx = h // 2, w // 2
    probes = [
        (cy + h // 4, cx), (cy - h // 4, cx),
        (cy, cx + w // 4), (cy, cx - w // 4),
        (cy + h // 4, cx + w // 4), (cy - h // 4, cx - w // 4),
        (0, cx), (cy, 0), (0, 0),
    ]
    baseline = float(np.median(log_mag)) + 1e-6
    peaks = []
    for y, x in probes:
        y0, y1 = max(0, y - 2), min(h, y + 3)
        x0, x1 = max(0, x - 2), min(w, x + 3)
        peaks.append(float(log_mag[y0:y1, x0:x1].max()))
    return max(peaks) / baseline


def frequency_artifact_score(pixels: np.ndarray, crop_size: int = 512) -> Tuple[str, float]:
    """General-purpose detector: periodic spectral peaks + power-law deviation."""
    gray = _luminance(center_crop(pixels, crop_size))
    h, w = gray.shape
    if h < 16 or w < 16:
        return _verdict(0.5)

    gray -= gray.mean()
    window = np.outer(np.hanning(h), np.hanning(w)).astype(np.float32)
    spectrum = np.fft.fftshift(np.fft.fft2(gray * window))
    power = np.abs(spectrum) ** 2
    log_mag = np.log1p(np.abs(spectrum))

    profile = _radial_profile(power)
    radii = np.arange(len(profile))
    band = (radii >= 4) & (radii <= min(h, w) // 2 - 2) & (profile > 0)
    if np.count_nonzero(band) >= 4:
        slope = float(np.polyfit(np.log(radii[band]), np.log(profile[band]), 1)[0])
    else:
        slope = FREQ_SLOPE_NATURAL

    peak_ratio = _periodic_peak_ratio(log_mag)
    slope_dev = max(0.0, abs(slope - FREQ_SLOPE_NATURAL) - FREQ_SLOPE_TOLERANCE)

    z = FREQ_PEAK_GAIN * (peak_ratio - FREQ_PEAK_PIVOT) + FREQ_SLOPE_GAIN * slope_dev
    return _verdict(_sigmoid(z))


# =============================================================================
# Food-specialized: chroma residual detector
# =============================================================================

def chroma_residual_score(pixels: np.ndarray, crop_size: int = 512) -> Tuple[str, float]:
    """Detector tuned for food photography.

    Food surfaces are smooth colour gradients where camera sensor noise shows
    up as residuals that are strongly correlated across channels (a side
    effect of demosaicing). Generators produce weakly correlated or flat
    residuals in exactly those regions.
    """
    crop = center_crop(pixels, crop_size).astype(np.float32)
    h, w = crop.shape[:2]
    if h < 16 or w < 16:
        return _verdict(0.5)

    residual = crop - cv2.GaussianBlur(crop, (5, 5), 0)
    r, g, b = (residual[..., i].ravel() for i in range(3))
    std = np.array([r.std(), g.std(), b.std()])
    if np.any(std < 1e-3):
        corr = 0.0
    else:
        corr = float((np.corrcoef(r, g)[0, 1] + np.corrcoef(g, b)[0, 1]) / 2.0)

    block = 16
    bh, bw = h // block, w // block
    energy = np.abs(residual[:bh * block, :bw * block]).mean(axis=2)
    blocks = energy.reshape(bh, block, bw, block).mean(axis=(1, 3))
    flatness = float(np.mean(blocks < 0.5)) if blocks.size else 0.0

    z = CHROMA_CORR_GAIN * (CHROMA_CORR_PIVOT - corr) + CHROMA_FLATNESS_GAIN * (flatness - CHROMA_FLATNESS_PIVOT)
    return _verdict(_sigmoid(z))


# =============================================================================
# Backup: noise residual statistics
# =============================================================================

def noise_residual_score(pixels: np.ndarray, crop_size: int = 512) -> Tuple[str, float]:
    """Cheap, dependable fallback: Laplacian residual kurtosis.

    Camera noise gives heavy-tailed residuals; synthetic images tend to be
    either too clean or too Gaussian. Lower accuracy than the primary.
    """
    gray = _luminance(center_crop(pixels, crop_size))
    if min(gray.shape) < 8:
        return _verdict(0.5)

    residual = cv2.Laplacian(gray, cv2.CV_32F, ksize=3).ravel().astype(np.float64)
    var = residual.var()
    if var < 1e-6:
        # Perfectly flat content carries no sensor noise at all
        return _verdict(0.75)
    kurtosis = float(np.mean((residual - residual.mean()) ** 4) / (var ** 2))

    z = NOISE_KURTOSIS_GAIN * (NOISE_KURTOSIS_PIVOT - math.log(max(kurtosis, 1e-6)))
    return _verdict(_sigmoid(z))
