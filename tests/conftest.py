import io
from collections.abc import Callable
from pathlib import Path

import pytest
from PIL import Image

from asset_pipeline.models.processing import AssetStatus, file_type_for_mime
from asset_pipeline.schemas.processing import AssetRecord
from asset_pipeline.services.asset_store import InMemoryAssetStore
from asset_pipeline.services.job_store import InMemoryJobStore
from asset_pipeline.services.storage import LocalObjectStorage


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    def _make(
        size: tuple[int, int] = (400, 200),
        *,
        mode: str = "RGB",
        color: tuple[int, ...] | str = (200, 40, 40),
        fmt: str = "PNG",
    ) -> bytes:
        buf = io.BytesIO()
        Image.new(mode, size, color).save(buf, format=fmt)
        return buf.getvalue()

    return _make


@pytest.fixture
def make_pdf() -> Callable[..., bytes]:
    def _make(pages: int = 1) -> bytes:
        from reportlab.lib.pagesizes import letter
        from reportlab.pdfgen import canvas

        buf = io.BytesIO()
        pdf = canvas.Canvas(buf, pagesize=letter)
        for idx in range(pages):
            pdf.drawString(72, 720, f"Quarterly report page {idx + 1}")
            pdf.rect(72, 400, 300, 200, fill=1)
            pdf.showPage()
        pdf.save()
        return buf.getvalue()

    return _make


@pytest.fixture
def make_asset() -> Callable[..., AssetRecord]:
    def _make(asset_id: str = "asset1", *, mime_type: str = "image/png", **overrides) -> AssetRecord:
        values = {
            "id": asset_id,
            "organization_id": "org1",
            "file_name": f"{asset_id}.bin",
            "mime_type": mime_type,
            "file_type": file_type_for_mime(mime_type),
            "storage_key": f"uploads/{asset_id}/original.bin",
            "status": AssetStatus.processing,
        }
        values.update(overrides)
        return AssetRecord(**values)

    return _make


@pytest.fixture
def storage(tmp_path: Path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "objects")


@pytest.fixture
def asset_store() -> InMemoryAssetStore:
    return InMemoryAssetStore()


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def eicar() -> bytes:
    return rb"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"
