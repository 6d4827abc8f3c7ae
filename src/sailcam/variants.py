"""Image variant generation for sail number OCR.

Each variant is a deterministic pixel transform of the captured photo:
luminance, then contrast/brightness, then a soft dual-cutoff threshold.
Pixels above ``threshold`` go white, pixels below ``threshold - margin`` go
black, and the band in between keeps its gray value so anti-aliased digit
edges survive.

The variant set is a plain table (``DEFAULT_VARIANTS``). Add a row to try a
new lighting condition rather than a new code path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .errors import ValidationError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Variant configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VariantConfig:
    """One named preprocessing recipe.

    Args:
        name: Variant name reported in outcomes and traces.
        threshold: White cutoff on the adjusted luminance (0-255).
            ``None`` skips thresholding entirely.
        contrast: Multiplier applied to luminance.
        brightness: Offset added after the contrast multiplier.
        margin: Width of the gray pass-through band below ``threshold``.
    """

    name: str
    threshold: Optional[int] = None
    contrast: float = 1.0
    brightness: float = 0.0
    margin: int = 40


DEFAULT_VARIANTS: Tuple[VariantConfig, ...] = (
    VariantConfig("original"),
    VariantConfig("balanced", threshold=128, contrast=1.5, brightness=0.0),
    VariantConfig("overexposed", threshold=170, contrast=1.2, brightness=-30.0),
    VariantConfig("shadowed", threshold=100, contrast=1.8, brightness=40.0),
    VariantConfig("high_contrast", threshold=140, contrast=2.2, brightness=-20.0),
)


def jittered_variants(
    variants: Sequence[VariantConfig],
    seed: int,
    spread: int = 12,
    copies: int = 1,
) -> List[VariantConfig]:
    """Derive extra thresholded variants with reproducible threshold jitter.

    Identity variants (no threshold) are not jittered. Same seed, same output.

    Args:
        variants: Base variant table.
        seed: Seed for ``numpy.random.default_rng``.
        spread: Maximum absolute threshold offset.
        copies: Jittered copies per thresholded variant.
    """
    rng = np.random.default_rng(seed)
    out: List[VariantConfig] = []
    for cfg in variants:
        if cfg.threshold is None:
            continue
        for i in range(copies):
            offset = int(rng.integers(-spread, spread + 1))
            threshold = int(np.clip(cfg.threshold + offset, 1, 254))
            out.append(replace(cfg, name=f"{cfg.name}~{i + 1}", threshold=threshold))
    return out


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def decode_image(data: bytes) -> np.ndarray:
    """Decode an encoded image payload (PNG, JPEG, ...) into a BGR array.

    Raises:
        ValidationError: Empty or undecodable payload.
    """
    if not data:
        raise ValidationError("Image payload is empty")
    buf = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise ValidationError(f"Could not decode image payload ({len(data)} bytes)")
    return image


def encode_image(image: np.ndarray, ext: str = ".png") -> bytes:
    """Encode an array for submission to the OCR service."""
    ok, buf = cv2.imencode(ext, image)
    if not ok:
        raise ValidationError(f"Could not encode image as {ext}")
    return buf.tobytes()


def to_luminance(image: np.ndarray) -> np.ndarray:
    """Convert a BGR/BGRA/gray array to single-channel uint8 luminance."""
    if image.ndim == 2:
        return image if image.dtype == np.uint8 else np.clip(image, 0, 255).astype(np.uint8)
    channels = image.shape[2]
    if channels == 1:
        return image[:, :, 0]
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def apply_variant(image: np.ndarray, config: VariantConfig) -> np.ndarray:
    """Apply one variant transform. Returns a new uint8 grayscale array."""
    gray = to_luminance(image).astype(np.float32)
    adjusted = np.clip(gray * config.contrast + config.brightness, 0, 255)

    if config.threshold is None:
        return adjusted.astype(np.uint8)

    out = adjusted.copy()
    out[adjusted > config.threshold] = 255
    out[adjusted < config.threshold - config.margin] = 0
    return out.astype(np.uint8)


# ---------------------------------------------------------------------------
# ImageVariantGenerator
# ---------------------------------------------------------------------------


class ImageVariantGenerator:
    """Produces the ordered (name, image) variants for one scan.

    Args:
        variants: Variant table. Defaults to ``DEFAULT_VARIANTS``.
        jitter_seed: When set, append ``jittered_variants`` of the table
            generated from this seed.
        jitter_copies: Jittered copies per thresholded variant.
    """

    def __init__(
        self,
        variants: Optional[Sequence[VariantConfig]] = None,
        jitter_seed: Optional[int] = None,
        jitter_copies: int = 1,
    ):
        base = list(variants) if variants is not None else list(DEFAULT_VARIANTS)
        if not base:
            base = [DEFAULT_VARIANTS[0]]
        if jitter_seed is not None:
            base.extend(jittered_variants(base, seed=jitter_seed, copies=jitter_copies))

        names = [v.name for v in base]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate variant names: {names}")
        self.variants: List[VariantConfig] = base

    @classmethod
    def from_names(cls, names: Sequence[str], **kwargs) -> "ImageVariantGenerator":
        """Build a generator from a subset of ``DEFAULT_VARIANTS`` by name."""
        table = {v.name: v for v in DEFAULT_VARIANTS}
        unknown = [n for n in names if n not in table]
        if unknown:
            raise ValueError(f"Unknown variants: {', '.join(unknown)}")
        return cls([table[n] for n in names], **kwargs)

    def generate(self, image: np.ndarray) -> List[Tuple[str, np.ndarray]]:
        """Return the variants of ``image`` in table order.

        Raises:
            ValidationError: ``image`` is None or has no pixels.
        """
        if image is None or getattr(image, "size", 0) == 0:
            raise ValidationError("Image has no pixels")

        out = []
        for cfg in self.variants:
            out.append((cfg.name, apply_variant(image, cfg)))
        log.debug("Generated %d variants for %s image", len(out), image.shape)
        return out
