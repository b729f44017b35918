"""Dominant-color palette extraction with Pillow median-cut quantization.

Extraction is deterministic: the same bytes always produce the same palette.
Images are box-downsampled to a bounded pixel count before quantizing, and
ties in pixel count fall back to palette index order.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from .artwork_fetcher import ArtworkImage

MAX_SAMPLE_PIXELS = 10_000


class ArtworkDecodeError(ValueError):
    """Image bytes could not be decoded."""


@dataclass(frozen=True, order=True)
class Color:
    r: int
    g: int
    b: int

    @property
    def hex(self) -> str:
        return f"#{self.r:02x}{self.g:02x}{self.b:02x}"

    @property
    def brightness(self) -> float:
        """HSP perceived brightness in [0, 255]."""
        return math.sqrt(
            0.299 * self.r * self.r + 0.587 * self.g * self.g + 0.114 * self.b * self.b
        )


@dataclass(frozen=True)
class Palette:
    """Colors ordered by descending share of the sampled image."""

    colors: tuple[Color, ...]

    def __len__(self) -> int:
        return len(self.colors)

    def __iter__(self) -> Iterator[Color]:
        return iter(self.colors)

    def __getitem__(self, index: int) -> Color:
        return self.colors[index]

    def hex_codes(self) -> list[str]:
        return [color.hex for color in self.colors]


def extract_palette(image: ArtworkImage | bytes, size: int) -> Palette:
    """Return exactly `size` representative colors for the image."""
    if size < 1:
        raise ValueError("palette size must be >= 1")
    data = image.data if isinstance(image, ArtworkImage) else image
    sample = _load_sample(data)
    ranked = _rank_colors(sample, size)
    if not ranked:
        raise ArtworkDecodeError("image produced no colors")
    padded = ranked + [ranked[0]] * (size - len(ranked))
    return Palette(colors=tuple(padded[:size]))


def _load_sample(data: bytes) -> Image.Image:
    try:
        with Image.open(BytesIO(data)) as opened:
            rgb = opened.convert("RGB")
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        ValueError,
    ) as exc:
        raise ArtworkDecodeError(f"cannot decode artwork: {exc}") from exc
    width, height = rgb.size
    if width <= 0 or height <= 0:
        raise ArtworkDecodeError("artwork has no pixels")
    if width * height <= MAX_SAMPLE_PIXELS:
        return rgb
    scale = math.sqrt(MAX_SAMPLE_PIXELS / (width * height))
    target = (max(1, int(width * scale)), max(1, int(height * scale)))
    return rgb.resize(target, resample=Image.Resampling.BOX)


def _rank_colors(sample: Image.Image, size: int) -> list[Color]:
    quantized = sample.quantize(colors=size, method=Image.Quantize.MEDIANCUT)
    flat = quantized.getpalette() or []
    counts = quantized.getcolors(maxcolors=256) or []
    weights: dict[Color, tuple[int, int]] = {}
    for count, index in counts:
        offset = index * 3
        if offset + 2 >= len(flat):
            continue
        color = Color(flat[offset], flat[offset + 1], flat[offset + 2])
        total, first_index = weights.get(color, (0, index))
        weights[color] = (total + count, min(first_index, index))
    ordered = sorted(weights.items(), key=lambda item: (-item[1][0], item[1][1]))
    return [color for color, _ in ordered]
