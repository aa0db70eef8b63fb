"""Shared pytest fixtures for Design Lab tests."""

from __future__ import annotations

import base64
import io
import shutil
import tempfile
import threading
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from designlab.api.main import create_app
from designlab.core.config import DesignLabConfig
from designlab.core.errors import ProviderError, ValidationError
from designlab.core.gateway import InMemoryGateway
from designlab.core.models import CallerIdentity
from designlab.core.orchestrator import GenerationOrchestrator
from designlab.core.provider import (
    BaseDesignParams,
    BaseDesignResult,
    GenerationProvider,
    TypographyIterationResult,
    TypographyParams,
)
from designlab.core.scheduler import AsyncioTaskScheduler
from designlab.core.variant_catalog import VariantCatalog
from designlab.core.versions import VersionManager


def png_base64(color: tuple[int, int, int] = (255, 0, 0), size: tuple[int, int] = (8, 8)) -> str:
    """Encode a solid-colour PNG as base64 text."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class FakeProvider(GenerationProvider):
    """In-process provider returning tiny solid-colour PNGs.

    Attributes:
        calls: ``(method, params)`` tuples in call order.
        error: If set, raised from every generation call.
        started: Set when a generation call begins.
        release: When ``hold`` is true, calls wait on this event before
            returning, which lets tests act while a call is in flight.
    """

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.error: Exception | None = None
        self.hold = False
        self.started = threading.Event()
        self.release = threading.Event()
        self.closed = False

    def _enter(self, method: str, params: object) -> None:
        self.calls.append((method, params))
        self.started.set()
        if self.hold:
            self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error

    def generate_base_design(self, params: BaseDesignParams) -> BaseDesignResult:
        self._enter("base", params)
        return BaseDesignResult(
            front_image_base64=png_base64((255, 0, 0)),
            back_image_base64=png_base64((0, 0, 255)),
            prompt=params.prompt,
            provider=self.name,
            model_version="fake-1",
            duration_ms=42,
        )

    def generate_typography_iteration(self, params: TypographyParams) -> TypographyIterationResult:
        if not params.base_image_base64:
            raise ValidationError("Base image (base64) is required")
        self._enter("typography", params)
        return TypographyIterationResult(
            modified_image_base64=png_base64((0, 255, 0)),
            text_content=params.text_content,
            placement=params.focus_area or "chest",
            provider=self.name,
            model_version="fake-1",
            duration_ms=17,
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> DesignLabConfig:
    """Configuration rooted in the temporary directory, in-memory storage."""
    return DesignLabConfig(
        data_dir=temp_dir / "data",
        database_path=None,
        models_dir=temp_dir / "models",
        device="cpu",
        torch_dtype="float32",
    )


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def version_manager(gateway: InMemoryGateway) -> VersionManager:
    return VersionManager(gateway)


@pytest.fixture
def owner() -> CallerIdentity:
    return CallerIdentity(user_id="user-1")


@pytest.fixture
def other_user() -> CallerIdentity:
    return CallerIdentity(user_id="user-2")


@pytest.fixture
def admin() -> CallerIdentity:
    return CallerIdentity(user_id="admin-1", role="admin")


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def failing_provider() -> FakeProvider:
    provider = FakeProvider()
    provider.error = ProviderError("Failed to generate designs: upstream unavailable")
    return provider


@pytest.fixture
def scheduler() -> AsyncioTaskScheduler:
    return AsyncioTaskScheduler()


@pytest.fixture
def variant_catalog(temp_dir: Path) -> VariantCatalog:
    return VariantCatalog(temp_dir / "variants.json")


@pytest.fixture
def orchestrator(
    gateway: InMemoryGateway,
    version_manager: VersionManager,
    fake_provider: FakeProvider,
    scheduler: AsyncioTaskScheduler,
    variant_catalog: VariantCatalog,
) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        gateway, version_manager, fake_provider, scheduler, variant_catalog
    )


@pytest.fixture
def test_client(
    test_config: DesignLabConfig,
    gateway: InMemoryGateway,
    fake_provider: FakeProvider,
) -> Generator[TestClient, None, None]:
    """TestClient running the full application lifespan with fakes injected."""
    app = create_app(test_config, gateway=gateway, provider=fake_provider)
    with TestClient(app) as client:
        yield client
