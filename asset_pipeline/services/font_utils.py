from __future__ import annotations

from typing import TypeAlias

from PIL import ImageFont


Font: TypeAlias = ImageFont.FreeTypeFont | ImageFont.ImageFont

_SANS = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"
_SANS_BOLD = "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"
_MONO = "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf"
_MONO_FALLBACKS = (
    "/usr/share/fonts/truetype/liberation/LiberationMono-Regular.ttf",
    "/System/Library/Fonts/Menlo.ttc",
    "C:/Windows/Fonts/consola.ttf",
)


def _candidates(*, bold: bool, monospace: bool) -> list[str]:
    if monospace:
        return [_MONO, *_MONO_FALLBACKS]
    if bold:
        return [_SANS_BOLD, _SANS]
    return [_SANS, _SANS_BOLD]


def load_font(size: int, *, bold: bool = False, monospace: bool = False) -> Font:
    for path in _candidates(bold=bold, monospace=monospace):
        try:
            return ImageFont.truetype(path, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)
