from __future__ import annotations

import io
import logging
import math
import os
import subprocess
import tempfile
from dataclasses import dataclass
from functools import partial
from typing import Protocol

import anyio
from PIL import Image, ImageColor, ImageDraw, ImageOps, UnidentifiedImageError

from asset_pipeline.core.config import settings
from asset_pipeline.core.errors import RenderError, UnsupportedMediaError
from asset_pipeline.schemas.processing import ThumbnailOptions
from asset_pipeline.services.font_utils import load_font


logger = logging.getLogger(__name__)

PDF_OVERSAMPLE = 2.0
DEFAULT_BACKGROUND = "#ffffff"

_MIME_BY_FORMAT = {"webp": "image/webp", "jpeg": "image/jpeg", "png": "image/png"}

OFFICE_DOCUMENT_TYPES: dict[str, str] = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "DOCX",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "XLSX",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "PPTX",
    "application/msword": "DOC",
    "application/vnd.ms-excel": "XLS",
    "application/vnd.ms-powerpoint": "PPT",
    "application/vnd.oasis.opendocument.text": "ODT",
    "application/vnd.oasis.opendocument.spreadsheet": "ODS",
    "application/vnd.oasis.opendocument.presentation": "ODP",
    "application/rtf": "RTF",
    "text/rtf": "RTF",
}

_OFFICE_ACCENTS = {
    "DOCX": (43, 87, 154),
    "DOC": (43, 87, 154),
    "ODT": (43, 87, 154),
    "RTF": (43, 87, 154),
    "XLSX": (33, 115, 70),
    "XLS": (33, 115, 70),
    "ODS": (33, 115, 70),
    "PPTX": (208, 71, 38),
    "PPT": (208, 71, 38),
    "ODP": (208, 71, 38),
}


@dataclass(frozen=True)
class RenderedImage:
    data: bytes
    width: int
    height: int
    format: str

    @property
    def mime_type(self) -> str:
        return _MIME_BY_FORMAT[self.format]

    @property
    def size(self) -> int:
        return len(self.data)


class Renderer(Protocol):
    async def render(
        self, source: bytes, options: ThumbnailOptions, *, mime_type: str, file_name: str | None = None
    ) -> RenderedImage: ...


def normalize_mime(mime_type: str | None) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def _background_rgb(value: str | None) -> tuple[int, int, int]:
    try:
        rgb = ImageColor.getrgb(value or DEFAULT_BACKGROUND)
    except ValueError:
        rgb = ImageColor.getrgb(DEFAULT_BACKGROUND)
    return rgb[0], rgb[1], rgb[2]


def _fit_image(img: Image.Image, options: ThumbnailOptions) -> Image.Image:
    target = (options.width, options.height)
    resample = Image.Resampling.LANCZOS
    if options.fit == "cover":
        return ImageOps.fit(img, target, method=resample)
    if options.fit == "contain":
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA")
        color = _background_rgb(options.background) + ((255,) if img.mode == "RGBA" else ())
        return ImageOps.pad(img, target, method=resample, color=color)
    if options.fit == "fill":
        return img.resize(target, resample)
    if options.fit == "inside":
        out = img.copy()
        out.thumbnail(target, resample)
        return out
    scale = max(options.width / img.width, options.height / img.height)
    return img.resize((max(1, math.ceil(img.width * scale)), max(1, math.ceil(img.height * scale))), resample)


def _flatten(img: Image.Image, background: str | None) -> Image.Image:
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, _background_rgb(background))
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas
    return img.convert("RGB")


def encode_image(img: Image.Image, options: ThumbnailOptions) -> RenderedImage:
    buf = io.BytesIO()
    if options.format == "jpeg":
        out = _flatten(img, options.background)
        out.save(buf, format="JPEG", quality=options.quality, optimize=True, progressive=True)
    elif options.format == "png":
        out = img if img.mode in ("RGB", "RGBA", "L", "LA", "P") else img.convert("RGBA")
        out.save(buf, format="PNG", optimize=True)
    else:
        out = img if img.mode in ("RGB", "RGBA") else img.convert("RGBA" if "A" in img.getbands() else "RGB")
        out.save(buf, format="WEBP", quality=options.quality, method=6)
    return RenderedImage(data=buf.getvalue(), width=out.width, height=out.height, format=options.format)


def _render_raster(source: bytes, options: ThumbnailOptions) -> RenderedImage:
    try:
        with Image.open(io.BytesIO(source)) as img:
            img.load()
            oriented = ImageOps.exif_transpose(img) or img
            if oriented.mode not in ("RGB", "RGBA"):
                has_alpha = "transparency" in oriented.info or "A" in oriented.getbands()
                oriented = oriented.convert("RGBA" if has_alpha else "RGB")
            return encode_image(_fit_image(oriented, options), options)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise RenderError(f"Image rendering failed: {exc}") from exc


class ImageRenderer:
    async def render(
        self, source: bytes, options: ThumbnailOptions, *, mime_type: str = "image/*", file_name: str | None = None
    ) -> RenderedImage:
        return await anyio.to_thread.run_sync(partial(_render_raster, source, options))


def resolve_ffmpeg_binary() -> str:
    configured = (getattr(settings, "ffmpeg_binary", None) or "").strip()
    if configured:
        return configured
    import imageio_ffmpeg

    return imageio_ffmpeg.get_ffmpeg_exe()


class VideoFrameRenderer:
    """Grab one frame with ffmpeg and encode it like a still image."""

    def __init__(self, ffmpeg_binary: str | None = None, *, timeout_seconds: float | None = None) -> None:
        self._ffmpeg_binary = ffmpeg_binary
        self._timeout = float(timeout_seconds or getattr(settings, "ffmpeg_timeout_seconds", 30.0) or 30.0)

    def _extract_frame(self, source: bytes, timestamp: float) -> bytes:
        ffmpeg = self._ffmpeg_binary or resolve_ffmpeg_binary()
        fd, path = tempfile.mkstemp(suffix=".video")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(source)
            cmd = [
                ffmpeg,
                "-hide_banner",
                "-loglevel",
                "error",
                "-ss",
                f"{max(0.0, timestamp):.3f}",
                "-i",
                path,
                "-frames:v",
                "1",
                "-f",
                "image2pipe",
                "-vcodec",
                "png",
                "pipe:1",
            ]
            completed = subprocess.run(cmd, capture_output=True, check=True, timeout=self._timeout)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise RenderError(f"Video frame extraction failed: {stderr or exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RenderError(f"Video frame extraction timed out after {self._timeout:.0f}s") from exc
        except OSError as exc:
            raise RenderError(f"Video frame extraction failed: {exc}") from exc
        finally:
            try:
                os.unlink(path)
            except OSError:
                logger.warning("video_temp_cleanup_failed", extra={"path": path})
        if not completed.stdout:
            raise RenderError(f"No video frame at {timestamp:.2f}s")
        return completed.stdout

    def _render(self, source: bytes, options: ThumbnailOptions) -> RenderedImage:
        frame = self._extract_frame(source, options.timestamp)
        return _render_raster(frame, options)

    async def render(
        self, source: bytes, options: ThumbnailOptions, *, mime_type: str = "video/*", file_name: str | None = None
    ) -> RenderedImage:
        return await anyio.to_thread.run_sync(partial(self._render, source, options))


class PdfPageRenderer:
    """Rasterize one PDF page above the target size, then downsample."""

    def __init__(self, oversample: float = PDF_OVERSAMPLE) -> None:
        self.oversample = max(1.0, float(oversample))

    def _render(self, source: bytes, options: ThumbnailOptions) -> RenderedImage:
        import pypdfium2 as pdfium

        try:
            pdf = pdfium.PdfDocument(source)
        except pdfium.PdfiumError as exc:
            raise RenderError(f"Invalid PDF: {exc}") from exc
        try:
            page_count = len(pdf)
            if options.page > page_count:
                raise RenderError(f"Page {options.page} out of range (document has {page_count} pages)")
            page = pdf[options.page - 1]
            try:
                page_width, page_height = page.get_size()
                scale = max(options.width / max(page_width, 1.0), options.height / max(page_height, 1.0))
                bitmap = page.render(scale=max(0.1, scale * self.oversample))
                rendered = bitmap.to_pil().convert("RGB")
            finally:
                page.close()
        finally:
            pdf.close()
        return encode_image(_fit_image(rendered, options), options)

    async def render(
        self, source: bytes, options: ThumbnailOptions, *, mime_type: str = "application/pdf", file_name: str | None = None
    ) -> RenderedImage:
        return await anyio.to_thread.run_sync(partial(self._render, source, options))


def _text_width(draw: ImageDraw.ImageDraw, text: str, font) -> int:
    bbox = draw.textbbox((0, 0), text, font=font)
    return bbox[2] - bbox[0]


def _draw_centered(draw: ImageDraw.ImageDraw, *, text: str, y: int, width: int, font, fill) -> None:
    draw.text(((width - _text_width(draw, text, font)) // 2, y), text, font=font, fill=fill)


def _draw_office_placeholder(label: str, file_name: str | None, options: ThumbnailOptions) -> Image.Image:
    width, height = options.width, options.height
    accent = _OFFICE_ACCENTS.get(label, (96, 96, 96))
    img = Image.new("RGB", (width, height), _background_rgb(options.background))
    draw = ImageDraw.Draw(img)

    page_w = max(8, int(width * 0.5))
    page_h = max(10, int(min(height * 0.55, page_w * 1.3)))
    left = (width - page_w) // 2
    top = max(4, int(height * 0.12))
    fold = max(4, page_w // 5)
    outline = (200, 200, 200)
    draw.polygon(
        [(left, top), (left + page_w - fold, top), (left + page_w, top + fold), (left + page_w, top + page_h), (left, top + page_h)],
        fill=(248, 248, 248),
        outline=outline,
    )
    draw.line([(left + page_w - fold, top), (left + page_w - fold, top + fold), (left + page_w, top + fold)], fill=outline)
    for idx in range(1, 5):
        y = top + fold + idx * max(3, page_h // 8)
        if y >= top + page_h - 4:
            break
        draw.line([(left + page_w // 8, y), (left + page_w - page_w // 8, y)], fill=(215, 215, 215), width=max(1, page_h // 60))

    band_h = max(10, page_h // 5)
    band_top = top + page_h - band_h - max(2, page_h // 10)
    draw.rectangle([(left - page_w // 10, band_top), (left + page_w // 2, band_top + band_h)], fill=accent)
    label_font = load_font(max(8, int(band_h * 0.6)), bold=True)
    draw.text((left, band_top + max(1, band_h // 6)), label, font=label_font, fill=(255, 255, 255))

    caption_font = load_font(max(8, height // 24))
    caption_y = top + page_h + max(4, height // 30)
    _draw_centered(draw, text=f"{label} document", y=caption_y, width=width, font=caption_font, fill=(60, 60, 60))
    if file_name:
        name = file_name if len(file_name) <= 40 else f"{file_name[:37]}..."
        _draw_centered(
            draw,
            text=name,
            y=caption_y + max(10, height // 18),
            width=width,
            font=load_font(max(7, height // 30)),
            fill=(120, 120, 120),
        )
    return img


class OfficePlaceholderRenderer:
    """Labelled stand-in image; office documents are never rasterized."""

    async def render(
        self, source: bytes, options: ThumbnailOptions, *, mime_type: str, file_name: str | None = None
    ) -> RenderedImage:
        label = OFFICE_DOCUMENT_TYPES.get(normalize_mime(mime_type), "DOC")

        def _render() -> RenderedImage:
            return encode_image(_draw_office_placeholder(label, file_name, options), options)

        return await anyio.to_thread.run_sync(_render)


def _wrap_line(draw: ImageDraw.ImageDraw, line: str, font, max_width: int) -> list[str]:
    if not line:
        return [""]
    char_width = max(1, _text_width(draw, "M", font))
    per_line = max(1, max_width // char_width)
    return [line[i : i + per_line] for i in range(0, len(line), per_line)]


class TextPreviewRenderer:
    HEADER = "Text Document Preview"
    TRUNCATION_MARKER = "... (content truncated)"

    def __init__(self, max_chars: int | None = None) -> None:
        self.max_chars = max(1, int(max_chars or getattr(settings, "text_preview_max_chars", 1000) or 1000))

    def prepare_text(self, source: bytes) -> tuple[str, bool]:
        text = source.decode("utf-8", errors="replace").replace("\r\n", "\n").expandtabs(4)
        return text[: self.max_chars], len(text) > self.max_chars

    def _render(self, source: bytes, options: ThumbnailOptions) -> RenderedImage:
        text, truncated = self.prepare_text(source)

        width, height = options.width, options.height
        img = Image.new("RGB", (width, height), _background_rgb(options.background))
        draw = ImageDraw.Draw(img)
        margin = max(4, width // 25)
        header_font = load_font(max(8, height // 28), bold=True)
        body_size = max(6, height // 48)
        body_font = load_font(body_size, monospace=True)
        line_height = body_size + max(2, body_size // 3)

        draw.text((margin, margin), self.HEADER, font=header_font, fill=(40, 40, 40))
        y = margin + max(10, height // 28) + margin // 2
        draw.line([(margin, y), (width - margin, y)], fill=(210, 210, 210))
        y += margin // 2

        bottom = height - margin - (line_height if truncated else 0)
        for raw_line in text.split("\n"):
            for line in _wrap_line(draw, raw_line, body_font, width - 2 * margin):
                if y + line_height > bottom:
                    truncated = True
                    break
                draw.text((margin, y), line, font=body_font, fill=(30, 30, 30))
                y += line_height
            else:
                continue
            break
        if truncated:
            draw.text((margin, height - margin - line_height), self.TRUNCATION_MARKER, font=body_font, fill=(130, 130, 130))
        return encode_image(img, options)

    async def render(
        self, source: bytes, options: ThumbnailOptions, *, mime_type: str = "text/plain", file_name: str | None = None
    ) -> RenderedImage:
        return await anyio.to_thread.run_sync(partial(self._render, source, options))


class RendererSet:
    """MIME-type dispatch over the individual renderers."""

    def __init__(
        self,
        *,
        image: Renderer | None = None,
        video: Renderer | None = None,
        pdf: Renderer | None = None,
        office: Renderer | None = None,
        text: Renderer | None = None,
    ) -> None:
        self.image = image or ImageRenderer()
        self.video = video or VideoFrameRenderer()
        self.pdf = pdf or PdfPageRenderer()
        self.office = office or OfficePlaceholderRenderer()
        self.text = text or TextPreviewRenderer()

    def renderer_for(self, mime_type: str | None) -> Renderer | None:
        mime = normalize_mime(mime_type)
        if mime.startswith("image/"):
            return self.image
        if mime == "application/pdf":
            return self.pdf
        if mime in OFFICE_DOCUMENT_TYPES:
            return self.office
        if mime.startswith("text/"):
            return self.text
        if mime.startswith("video/"):
            return self.video
        return None

    def supports(self, mime_type: str | None) -> bool:
        return self.renderer_for(mime_type) is not None

    async def render(
        self, source: bytes, mime_type: str, options: ThumbnailOptions, *, file_name: str | None = None
    ) -> RenderedImage:
        renderer = self.renderer_for(mime_type)
        if renderer is None:
            raise UnsupportedMediaError(mime_type=mime_type)
        return await renderer.render(source, options, mime_type=normalize_mime(mime_type), file_name=file_name)
