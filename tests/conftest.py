"""Test configuration."""

from __future__ import annotations

import sys
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

CAVA_TEMPLATE = """\
## cava config
[general]
framerate = 60
bars = 0

[output]
method = ncurses

[color]
; Colors can be one of seven predefined or hex in '#rrggbb' form.
background = '#000000'
foreground = '#ffffff'
gradient = 1
gradient_count = 4
gradient_color_1 = '#111111'
gradient_color_2 = '#222222'
gradient_color_3 = '#333333'
gradient_color_4 = '#444444'

[smoothing]
noise_reduction = 77
"""


@pytest.fixture
def cava_config(tmp_path: Path) -> Path:
    """Writable copy of a cava config template with every default color key."""
    path = tmp_path / "cava" / "config"
    path.parent.mkdir(parents=True)
    path.write_text(CAVA_TEMPLATE, encoding="utf-8")
    return path


def png_bytes(
    stripes: list[tuple[tuple[int, int, int], int]], height: int = 10
) -> bytes:
    """Build a PNG of vertical color stripes given (rgb, width) pairs."""
    width = sum(stripe_width for _, stripe_width in stripes)
    image = Image.new("RGB", (width, height))
    x = 0
    for color, stripe_width in stripes:
        image.paste(color, (x, 0, x + stripe_width, height))
        x += stripe_width
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def striped_png():
    return png_bytes
