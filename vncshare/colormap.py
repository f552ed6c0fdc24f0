"""
8-bit colour quantizer

A ColorMap8bit maps any 24-bit RGB value to one of 256 palette indexes.
The 24-bit space is cut into 32x32x32 buckets (5 bits per channel) and
every bucket is assigned to the palette entry nearest to its centre.
The bucket table is computed once with Pillow and never changes, so a
single instance can be shared by all connections.

MIT License
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from PIL import Image

from .rfb import BGR233, PixelFormat, write_u16

log = logging.getLogger(__name__)

RGB = Tuple[int, int, int]

BUCKET_BITS = 5
BUCKETS = 1 << (3 * BUCKET_BITS)


def palette_for(pixel_format: PixelFormat) -> List[RGB]:
    """The 256 colours addressable by an 8-bit true-colour pixel format."""
    palette = []
    for index in range(256):
        rgb = []
        for max_, shift in pixel_format.channels:
            value = (index >> shift) & max_
            rgb.append(value * 255 // max_)
        palette.append((rgb[0], rgb[1], rgb[2]))
    return palette


def _bucket_centres() -> bytes:
    step = 1 << (8 - BUCKET_BITS)
    half = step // 2
    levels = [i * step + half for i in range(1 << BUCKET_BITS)]
    return bytes(
        channel for r in levels for g in levels for b in levels for channel in (r, g, b)
    )


class ColorMap8bit:
    """Immutable mapping from 24-bit RGB to a 256 entry palette."""

    def __init__(
        self, palette: Sequence[RGB], pixel_format: Optional[PixelFormat] = None
    ) -> None:
        if len(palette) != 256:
            raise ValueError(f"palette needs 256 entries, got {len(palette)}")
        self._palette = tuple(palette)
        # 8-bit true-colour layout whose pixel values are the palette indexes
        self.pixel_format = pixel_format

        palette_image = Image.new("P", (1, 1))
        palette_image.putpalette([c for rgb in self._palette for c in rgb])
        centres = Image.frombytes("RGB", (BUCKETS, 1), _bucket_centres())
        quantized = centres.quantize(palette=palette_image, dither=Image.Dither.NONE)
        self._table = quantized.tobytes()
        log.debug("built colour map with %d buckets", len(self._table))

    @classmethod
    def from_pixel_format(cls, pixel_format: PixelFormat = BGR233) -> "ColorMap8bit":
        return cls(palette_for(pixel_format), pixel_format)

    @property
    def palette(self) -> Tuple[RGB, ...]:
        return self._palette

    def get8bitPixelValue(self, red: int, green: int, blue: int) -> int:
        key = (red >> 3) << 10 | (green >> 3) << 5 | blue >> 3
        return self._table[key]

    def encode(self, pixels: Iterable[int]) -> bytes:
        """Map 0xRRGGBB pixels to one index byte each."""
        table = self._table
        return bytes(
            table[(p >> 9) & 0x7C00 | (p >> 6) & 0x3E0 | (p >> 3) & 0x1F]
            for p in pixels
        )

    def colourMapEntries(self) -> bytes:
        """RGB values of the palette as 16-bit channels for SetColourMapEntries"""
        return b"".join(
            write_u16(r * 257) + write_u16(g * 257) + write_u16(b * 257)
            for r, g, b in self._palette
        )
