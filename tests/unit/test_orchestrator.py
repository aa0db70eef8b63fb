"""Tests for designlab.core.orchestrator - asynchronous generation requests.

Generation runs as a detached task, so each test starts a request, then
drains the scheduler before inspecting the outcome.  The fake provider can
hold a call open (``hold`` / ``release``) to observe the request while the
provider is busy.
"""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path

import pytest

from designlab.core.errors import (
    CompositingError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from designlab.core.gateway import InMemoryGateway
from designlab.core.images import to_data_url
from designlab.core.models import GenerationStatus, ProjectStatus
from designlab.core.orchestrator import GenerationOrchestrator


class RecordingGateway(InMemoryGateway):
    """In-memory gateway that records every request status/progress write."""

    def __init__(self) -> None:
        super().__init__()
        self.request_writes: list[tuple[str, int]] = []

    def update_generation_request(self, request_id, changes):
        updated = super().update_generation_request(request_id, changes)
        if updated is not None:
            self.request_writes.append((updated.status.value, updated.progress))
        return updated


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def project(version_manager, owner):
    return version_manager.create_project(owner, {"name": "Team Jersey"}).project


def _orchestrator(gateway, version_manager, provider, scheduler, **options):
    return GenerationOrchestrator(gateway, version_manager, provider, scheduler, **options)


class TestStartValidation:
    async def test_missing_prompt(self, orchestrator, project, owner, gateway):
        with pytest.raises(ValidationError, match="Prompt is required"):
            await orchestrator.start_generation(project.id, "base_generation", {}, owner)
        assert gateway.list_generation_requests(project.id) == []

    async def test_blank_prompt(self, orchestrator, project, owner):
        with pytest.raises(ValidationError, match="Prompt is required"):
            await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "   "}, owner
            )

    async def test_missing_text_content(self, orchestrator, project, owner):
        with pytest.raises(ValidationError, match="Text content is required"):
            await orchestrator.start_generation(
                project.id, "typography_iteration", {"prompt": "ignored"}, owner
            )

    async def test_invalid_focus_area(self, orchestrator, project, owner):
        with pytest.raises(ValidationError, match="focus_area"):
            await orchestrator.start_generation(
                project.id,
                "typography_iteration",
                {"text_content": "WILDCATS", "focus_area": "hat"},
                owner,
            )

    async def test_invalid_kind(self, orchestrator, project, owner):
        with pytest.raises(ValidationError, match="Invalid request type"):
            await orchestrator.start_generation(project.id, "remix", {"prompt": "x"}, owner)

    async def test_unknown_project(self, orchestrator, owner):
        with pytest.raises(NotFoundError):
            await orchestrator.start_generation(404, "base_generation", {"prompt": "x"}, owner)

    async def test_other_users_project(self, orchestrator, project, other_user):
        with pytest.raises(ForbiddenError):
            await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "x"}, other_user
            )

    async def test_admin_may_generate(self, orchestrator, project, admin, scheduler):
        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "x"}, admin
        )
        await scheduler.drain()
        assert orchestrator.get_request(request.id).status == GenerationStatus.COMPLETED


class TestBaseGeneration:
    async def test_start_returns_before_provider_finishes(
        self, orchestrator, project, owner, fake_provider, scheduler, gateway
    ):
        fake_provider.hold = True
        try:
            request = await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "a roaring tiger"}, owner
            )

            assert request.status == GenerationStatus.PROCESSING
            assert request.progress == 0
            assert request.request_code.startswith("GEN-")
            assert gateway.get_project(project.id).status == ProjectStatus.GENERATING

            await asyncio.to_thread(fake_provider.started.wait, 5)
            assert orchestrator.get_request(request.id).progress == 10
        finally:
            fake_provider.release.set()
        await scheduler.drain()

        assert orchestrator.get_request(request.id).status == GenerationStatus.COMPLETED

    async def test_success_creates_and_points_at_new_version(
        self, orchestrator, project, owner, scheduler, gateway, fake_provider
    ):
        request = await orchestrator.start_generation(
            project.id,
            "base_generation",
            {"prompt": "a roaring tiger", "product_type": "jersey", "prompt_modifier": "ink"},
            owner,
        )
        await scheduler.drain()

        done = orchestrator.get_request(request.id)
        assert done.status == GenerationStatus.COMPLETED
        assert done.progress == 100
        assert done.provider == "fake"
        assert done.model_version == "fake-1"
        assert done.duration_ms == 42
        assert done.completed_at is not None
        assert len(done.result_image_urls) == 2
        assert all(url.endswith("...") for url in done.result_image_urls)

        version = gateway.get_version(done.version_id)
        assert version.version_number == 2
        assert version.name == "Generated v2"
        assert version.front_image_url.startswith("data:image/png;base64,")
        assert version.back_image_url.startswith("data:image/png;base64,")
        assert version.generation_prompt == "a roaring tiger"
        assert version.created_by == owner.user_id

        refreshed = gateway.get_project(project.id)
        assert refreshed.current_version_id == version.id
        assert refreshed.status == ProjectStatus.IN_PROGRESS

        params = fake_provider.calls[0][1]
        assert params.product_type == "jersey"
        assert params.style_modifier == "ink"
        assert params.style == "athletic"

    async def test_progress_sequence(self, orchestrator, project, owner, scheduler, gateway):
        await orchestrator.start_generation(project.id, "base_generation", {"prompt": "x"}, owner)
        await scheduler.drain()

        assert gateway.request_writes == [
            ("processing", 10),
            ("processing", 80),
            ("completed", 100),
        ]

    async def test_provider_failure_marks_failed(
        self, gateway, version_manager, failing_provider, scheduler, project, owner
    ):
        orchestrator = _orchestrator(gateway, version_manager, failing_provider, scheduler)

        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        failed = orchestrator.get_request(request.id)
        assert failed.status == GenerationStatus.FAILED
        assert failed.error_message == "Failed to generate designs: upstream unavailable"
        assert failed.version_id is None
        assert gateway.get_project(project.id).status == ProjectStatus.DRAFT
        assert len(gateway.list_versions(project.id)) == 1

    async def test_unexpected_error_message_is_generic(
        self, gateway, version_manager, fake_provider, scheduler, project, owner
    ):
        fake_provider.error = KeyError("internal detail")
        orchestrator = _orchestrator(gateway, version_manager, fake_provider, scheduler)

        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        failed = orchestrator.get_request(request.id)
        assert failed.status == GenerationStatus.FAILED
        assert "internal detail" not in failed.error_message


class TestTypography:
    async def test_uses_current_front_image(
        self, orchestrator, version_manager, project, owner, scheduler, gateway, fake_provider
    ):
        version_manager.create_version(
            project.id,
            {"front_image_url": to_data_url("QUJD"), "back_image_url": to_data_url("REVG")},
        )

        request = await orchestrator.start_generation(
            project.id,
            "typography_iteration",
            {"text_content": "WILDCATS", "focus_area": "chest"},
            owner,
        )
        await scheduler.drain()

        params = fake_provider.calls[0][1]
        assert params.base_image_base64 == "QUJD"
        assert params.text_content == "WILDCATS"

        done = orchestrator.get_request(request.id)
        assert done.status == GenerationStatus.COMPLETED
        version = gateway.get_version(done.version_id)
        assert version.name == "Typography v3"
        assert version.back_image_url is None
        assert version.generation_prompt == "WILDCATS"
        assert len(done.result_image_urls) == 1
        assert gateway.request_writes[:2] == [("processing", 10), ("processing", 30)]

    async def test_hosted_base_image_is_fetched(
        self, orchestrator, version_manager, project, owner, scheduler, fake_provider, temp_dir
    ):
        image_path = temp_dir / "front.png"
        image_path.write_bytes(b"PNGDATA")
        version_manager.create_version(project.id, {"front_image_url": str(image_path)})

        await orchestrator.start_generation(
            project.id, "typography_iteration", {"text_content": "23"}, owner
        )
        await scheduler.drain()

        params = fake_provider.calls[0][1]
        assert params.base_image_base64 == base64.b64encode(b"PNGDATA").decode("ascii")

    async def test_no_base_image_fails(self, orchestrator, project, owner, scheduler, gateway):
        request = await orchestrator.start_generation(
            project.id, "typography_iteration", {"text_content": "WILDCATS"}, owner
        )
        await scheduler.drain()

        failed = orchestrator.get_request(request.id)
        assert failed.status == GenerationStatus.FAILED
        assert failed.error_message == "Base image (base64) is required"
        assert gateway.get_project(project.id).status == ProjectStatus.DRAFT
        assert len(gateway.list_versions(project.id)) == 1

    async def test_provider_failure_creates_no_version(
        self, orchestrator, version_manager, project, owner, scheduler, gateway, fake_provider
    ):
        version_manager.create_version(project.id, {"front_image_url": to_data_url("QUJD")})
        fake_provider.error = ProviderError("Failed to apply typography: model offline")

        request = await orchestrator.start_generation(
            project.id, "typography_iteration", {"text_content": "WILDCATS"}, owner
        )
        await scheduler.drain()

        failed = orchestrator.get_request(request.id)
        assert failed.status == GenerationStatus.FAILED
        assert failed.error_message == "Failed to apply typography: model offline"
        assert failed.version_id is None
        assert gateway.get_project(project.id).status == ProjectStatus.DRAFT
        assert len(gateway.list_versions(project.id)) == 2


class TestCompositing:
    @pytest.fixture
    def variant_file(self, variant_catalog, temp_dir: Path) -> Path:
        template = temp_dir / "template.png"
        template.write_bytes(b"unused")
        variant_catalog.path.write_text(
            json.dumps(
                {"variants": [{"id": 12, "name": "Jersey", "front_template_url": str(template)}]}
            )
        )
        return variant_catalog.path

    async def test_embedded_design_used_as_composite(
        self, orchestrator, version_manager, owner, scheduler, gateway, variant_file
    ):
        project = version_manager.create_project(owner, {"name": "J", "variant_id": 12}).project

        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        version = gateway.get_version(orchestrator.get_request(request.id).version_id)
        assert version.composite_front_url == version.front_image_url
        assert version.composite_back_url is None

    async def test_compositing_failure_does_not_fail_request(
        self, orchestrator, version_manager, owner, scheduler, gateway, variant_file, monkeypatch, caplog
    ):
        def broken(*args, **kwargs):
            raise CompositingError("template unreachable")

        monkeypatch.setattr("designlab.core.orchestrator.generate_composites", broken)
        project = version_manager.create_project(owner, {"name": "J", "variant_id": 12}).project

        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        done = orchestrator.get_request(request.id)
        assert done.status == GenerationStatus.COMPLETED
        assert done.version_id is not None
        assert gateway.get_version(done.version_id).composite_front_url is None
        assert "template unreachable" in caplog.text

    async def test_project_without_variant_skips_compositing(
        self, orchestrator, project, owner, scheduler, gateway, monkeypatch
    ):
        def unexpected(*args, **kwargs):
            raise AssertionError("compositor should not run")

        monkeypatch.setattr("designlab.core.orchestrator.generate_composites", unexpected)

        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        assert orchestrator.get_request(request.id).status == GenerationStatus.COMPLETED


class TestCancel:
    async def test_cancel_in_flight_discards_result(
        self, orchestrator, project, owner, fake_provider, scheduler, gateway
    ):
        fake_provider.hold = True
        try:
            request = await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "tiger"}, owner
            )
            await asyncio.to_thread(fake_provider.started.wait, 5)

            cancelled = orchestrator.cancel(request.id, owner)

            assert cancelled.status == GenerationStatus.CANCELLED
            assert gateway.get_project(project.id).status == ProjectStatus.DRAFT
        finally:
            fake_provider.release.set()
        await scheduler.drain()

        final = orchestrator.get_request(request.id)
        assert final.status == GenerationStatus.CANCELLED
        assert final.version_id is None
        assert final.progress == 10
        assert len(gateway.list_versions(project.id)) == 1

    async def test_cancel_during_compositing_leaves_project_alone(
        self, orchestrator, version_manager, owner, scheduler, gateway, variant_catalog, temp_dir, monkeypatch
    ):
        template = temp_dir / "template.png"
        template.write_bytes(b"unused")
        variant_catalog.path.write_text(
            json.dumps({"variants": [{"id": 12, "front_template_url": str(template)}]})
        )
        project = version_manager.create_project(owner, {"name": "J", "variant_id": 12}).project
        lookup = variant_catalog.get

        def cancel_then_lookup(variant_id):
            for active in gateway.list_generation_requests(project.id):
                orchestrator.cancel(active.id)
            return lookup(variant_id)

        monkeypatch.setattr(variant_catalog, "get", cancel_then_lookup)

        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        final = orchestrator.get_request(request.id)
        assert final.status == GenerationStatus.CANCELLED
        assert final.version_id is None
        assert final.progress == 80
        assert gateway.get_project(project.id).status == ProjectStatus.DRAFT

        versions = gateway.list_versions(project.id)
        assert len(versions) == 2
        assert versions[-1].composite_front_url is None

    async def test_cancel_keeps_project_generating_while_another_runs(
        self, orchestrator, project, owner, fake_provider, scheduler, gateway
    ):
        fake_provider.hold = True
        try:
            first = await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "a"}, owner
            )
            second = await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "b"}, owner
            )

            orchestrator.cancel(first.id)

            assert gateway.get_project(project.id).status == ProjectStatus.GENERATING
        finally:
            fake_provider.release.set()
        await scheduler.drain()

        assert orchestrator.get_request(second.id).status == GenerationStatus.COMPLETED
        assert gateway.get_project(project.id).status == ProjectStatus.IN_PROGRESS

    async def test_cancel_before_task_runs(
        self, orchestrator, project, owner, fake_provider, scheduler
    ):
        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        orchestrator.cancel(request.id)
        await scheduler.drain()

        assert orchestrator.get_request(request.id).status == GenerationStatus.CANCELLED
        assert fake_provider.calls == []

    async def test_cancel_completed_conflicts(self, orchestrator, project, owner, scheduler):
        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        with pytest.raises(ConflictError):
            orchestrator.cancel(request.id)

    def test_cancel_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.cancel(999)


class TestLookup:
    async def test_get_by_id_code_and_numeric_string(self, orchestrator, project, owner, scheduler):
        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()

        assert orchestrator.get_request(request.id).id == request.id
        assert orchestrator.get_request(str(request.id)).id == request.id
        assert orchestrator.get_request(request.request_code).id == request.id

    def test_get_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get_request("GEN-0-0000")

    async def test_get_checks_access(self, orchestrator, project, owner, other_user, scheduler):
        request = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "tiger"}, owner
        )
        await scheduler.drain()
        with pytest.raises(ForbiddenError):
            orchestrator.get_request(request.id, other_user)

    async def test_list_newest_first(self, orchestrator, project, owner, scheduler):
        first = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "one"}, owner
        )
        second = await orchestrator.start_generation(
            project.id, "base_generation", {"prompt": "two"}, owner
        )
        await scheduler.drain()

        assert [r.id for r in orchestrator.list_requests(project.id)] == [second.id, first.id]


class TestHardeningOptions:
    async def test_concurrent_generations_allowed_by_default(
        self, orchestrator, project, owner, scheduler, gateway
    ):
        await orchestrator.start_generation(project.id, "base_generation", {"prompt": "a"}, owner)
        await orchestrator.start_generation(project.id, "base_generation", {"prompt": "b"}, owner)
        await scheduler.drain()

        numbers = [v.version_number for v in gateway.list_versions(project.id)]
        assert numbers == [1, 2, 3]

    async def test_reject_concurrent_generation(
        self, gateway, version_manager, fake_provider, scheduler, project, owner
    ):
        orchestrator = _orchestrator(
            gateway, version_manager, fake_provider, scheduler, reject_concurrent_generation=True
        )
        fake_provider.hold = True
        try:
            await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "a"}, owner
            )
            with pytest.raises(ConflictError):
                await orchestrator.start_generation(
                    project.id, "base_generation", {"prompt": "b"}, owner
                )
        finally:
            fake_provider.release.set()
        await scheduler.drain()

    async def test_provider_timeout(
        self, gateway, version_manager, fake_provider, scheduler, project, owner
    ):
        orchestrator = _orchestrator(
            gateway, version_manager, fake_provider, scheduler, provider_timeout_seconds=0.05
        )
        fake_provider.hold = True
        try:
            request = await orchestrator.start_generation(
                project.id, "base_generation", {"prompt": "a"}, owner
            )
            await scheduler.drain()
        finally:
            fake_provider.release.set()

        failed = orchestrator.get_request(request.id)
        assert failed.status == GenerationStatus.FAILED
        assert "timed out" in failed.error_message

    async def test_max_concurrent_generations(
        self, gateway, version_manager, fake_provider, scheduler, owner
    ):
        orchestrator = _orchestrator(
            gateway, version_manager, fake_provider, scheduler, max_concurrent_generations=1
        )
        first_project = version_manager.create_project(owner, {"name": "A"}).project
        second_project = version_manager.create_project(owner, {"name": "B"}).project

        fake_provider.hold = True
        try:
            await orchestrator.start_generation(
                first_project.id, "base_generation", {"prompt": "a"}, owner
            )
            second = await orchestrator.start_generation(
                second_project.id, "base_generation", {"prompt": "b"}, owner
            )
            await asyncio.to_thread(fake_provider.started.wait, 5)
            await asyncio.sleep(0.05)

            assert len(fake_provider.calls) == 1
            assert orchestrator.get_request(second.id).progress == 0
        finally:
            fake_provider.release.set()
        await scheduler.drain()

        assert orchestrator.get_request(second.id).status == GenerationStatus.COMPLETED
