import asyncio
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from conftest import (
    FakeProvider,
    GatedOrchestrator,
    StatusError,
    image_candidate,
    make_png_bytes,
)
from imagestudio import __version__, cli
from imagestudio.core import Studio, build_studio, generate_image_core, generate_variations_core
from imagestudio.errors import ClassifiedError, ErrorKind
from imagestudio.models import CandidateResponse, GenerationResult
from imagestudio.session import SessionController

runner = CliRunner()


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    monkeypatch.setattr(cli, "console", Console(width=200))


@pytest.fixture
def logo_path(tmp_path):
    path = tmp_path / "logo.png"
    path.write_bytes(make_png_bytes((10, 20, 30)))
    return path


@pytest.fixture
def fake_provider():
    return FakeProvider(default=image_candidate())


@pytest.fixture
def patched_cli(monkeypatch, test_settings, fake_provider):
    monkeypatch.setattr(cli, "settings", test_settings)
    monkeypatch.setattr(
        cli,
        "build_studio",
        lambda app_settings, engine=None: Studio(fake_provider, app_settings),
    )
    return test_settings


def test_version():
    result = runner.invoke(cli.app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_products_lists_catalog():
    result = runner.invoke(cli.app, ["products"])
    assert result.exit_code == 0
    assert "mug-ceramic" in result.stdout


def test_list_engines(patched_cli):
    result = runner.invoke(cli.app, ["list-engines"])
    assert result.exit_code == 0
    assert "openrouter" in result.stdout
    assert "gemini" in result.stdout


def test_edit_saves_output(patched_cli, fake_provider, logo_path):
    result = runner.invoke(
        cli.app, ["edit", str(logo_path), "-p", "make it blue", "-o", "edited.png"]
    )
    assert result.exit_code == 0, result.stdout
    assert (Path(patched_cli.output_dir) / "edited.png").is_file()

    payload, config = fake_provider.calls[0]
    assert payload.parts[-1].text == "make it blue"
    assert config.system_instruction == cli.EDITOR_INSTRUCTION


def test_edit_reports_classified_failure(patched_cli, fake_provider, logo_path):
    fake_provider.default = StatusError(401)
    result = runner.invoke(cli.app, ["edit", str(logo_path), "-p", "make it blue"])
    assert result.exit_code == 1
    assert "Authentication" in result.stdout
    assert len(fake_provider.calls) == 1


def test_edit_rejects_missing_image(patched_cli, fake_provider, tmp_path):
    result = runner.invoke(cli.app, ["edit", str(tmp_path / "nope.png"), "-p", "x"])
    assert result.exit_code == 1
    assert fake_provider.calls == []


def test_edit_rejects_unknown_model(patched_cli, logo_path):
    result = runner.invoke(
        cli.app, ["edit", str(logo_path), "-p", "x", "--model", "dall-e-3"]
    )
    assert result.exit_code == 1


def test_analyze_prints_text(patched_cli, fake_provider, logo_path):
    fake_provider.default = CandidateResponse(text="A dark square.", finish_reason="STOP")
    result = runner.invoke(cli.app, ["analyze", str(logo_path)])
    assert result.exit_code == 0, result.stdout
    assert "A dark square." in result.stdout
    _, config = fake_provider.calls[0]
    assert config.model == cli.ANALYSIS_MODEL


def test_merch_with_variations(patched_cli, fake_provider, logo_path):
    result = runner.invoke(
        cli.app,
        ["merch", str(logo_path), "--product", "mug-ceramic", "--variations", "-o", "mock.png"],
    )
    assert result.exit_code == 0, result.stdout
    out = Path(patched_cli.output_dir)
    assert (out / "mock.png").is_file()
    for i in (1, 2, 3):
        assert (out / f"mock_variation_{i}.png").is_file()
    assert len(fake_provider.calls) == 4


def test_merch_unknown_product(patched_cli, fake_provider, logo_path):
    result = runner.invoke(cli.app, ["merch", str(logo_path), "--product", "spaceship"])
    assert result.exit_code == 1
    assert fake_provider.calls == []


def test_build_studio_unknown_engine(test_settings):
    with pytest.raises(ClassifiedError) as exc_info:
        build_studio(test_settings, engine="nope")
    assert exc_info.value.kind is ErrorKind.MALFORMED_REQUEST


async def test_generate_image_core_without_save(test_settings, primary_image):
    studio = build_studio(test_settings, provider=FakeProvider([image_candidate(text="ok")]))
    output = await generate_image_core(studio, "edit", primary_image, save=False)
    assert output.error is None
    assert output.saved_path is None
    assert output.text == "ok"


async def test_superseded_call_reports_cancelled_not_newer_error(
    test_settings, primary_image
):
    studio = build_studio(test_settings, provider=FakeProvider())
    orchestrator = GatedOrchestrator()
    studio.session = SessionController(orchestrator)

    first = asyncio.ensure_future(
        generate_image_core(studio, "first", primary_image, save=False)
    )
    await _settle()
    second = asyncio.ensure_future(
        generate_image_core(studio, "second", primary_image, save=False)
    )
    await _settle()

    orchestrator.gates[1].set_exception(ClassifiedError(ErrorKind.AUTHENTICATION))
    assert (await second).error.kind is ErrorKind.AUTHENTICATION
    orchestrator.gates[0].set_result(GenerationResult(text="late"))

    first_output = await first
    assert first_output.error.kind is ErrorKind.CANCELLED
    assert studio.session.state.last_error.kind is ErrorKind.AUTHENTICATION


async def test_variations_core_reports_batch_failure(test_settings, primary_image):
    provider = FakeProvider(default=StatusError(503))
    studio = build_studio(test_settings, provider=provider)
    outputs = await generate_variations_core(
        studio, "A mug.", primary_image, [], ["Angled view.", "Close-up."]
    )
    assert len(outputs) == 1
    assert outputs[0].error.kind is ErrorKind.ZERO_CONTENT
    # variation_max_retries=1 gives two attempts per variant
    assert len(provider.calls) == 4
    await studio.close()
    assert provider.closed
