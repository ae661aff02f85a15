import typer
from typing_extensions import Annotated
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.panel import Panel
from typing import List, Optional
import asyncio
import logging

from imagestudio import __version__
from imagestudio.core import (
    JobOutput,
    build_studio,
    generate_image_core,
    generate_variations_core,
)
from imagestudio.errors import ClassifiedError, ErrorKind
from imagestudio.merch import (
    MERCH_PRODUCTS,
    VARIATION_DIRECTIONS,
    construct_merch_prompt,
    error_suggestion,
    get_product,
)
from imagestudio.models import DEFAULT_MODEL, GenerationOptions
from imagestudio.utils import read_image_file
from imagestudio.config import settings

app = typer.Typer(
    name="imagestudio",
    help="🎨 Edit images and compose product mockups with generative AI.",
    add_completion=False,
)
console = Console()

ANALYST_INSTRUCTION = (
    "Context: Professional Art Analyst. Describe composition, technique, and subject."
)
EDITOR_INSTRUCTION = (
    "Context: Creative Image Editor. Follow the instruction with pixel-perfect accuracy."
)
ANALYSIS_MODEL = "gemini-3-pro-preview"
THINKING_BUDGET_MAX = 32768


def version_callback(value: bool):
    if value:
        console.print(f"Imagestudio Version: [bold green]{__version__}[/bold green]")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
):
    pass


def _print_error(error: ClassifiedError, has_background: bool = False) -> None:
    if error.kind is ErrorKind.CANCELLED:
        return
    body = f"{error.message}"
    suggestion = error_suggestion(error, has_background)
    if suggestion:
        body += f"\n\n[dim]{suggestion}[/dim]"
    console.print(
        Panel(body, title=f"[bold red]{error.kind.value}[/bold red]", expand=False)
    )


def _print_output(output: JobOutput, label: str) -> None:
    if output.saved_path:
        console.print(
            Panel(
                f"{label} generated successfully! Saved to: [green]{output.saved_path}[/green]",
                title="[bold green]Success ✨[/bold green]",
                expand=False,
            )
        )
    if output.text:
        console.print(Panel(output.text, title=f"[cyan]{label} text[/cyan]", expand=False))
    if output.grounding_sources:
        table = Table(title="Grounding Sources")
        table.add_column("#", style="cyan", no_wrap=True)
        table.add_column("Source", style="green")
        for i, source in enumerate(output.grounding_sources, start=1):
            table.add_row(str(i), str(source))
        console.print(table)


def _default_model(engine: Optional[str]) -> str:
    try:
        return settings.engine(engine).model or DEFAULT_MODEL
    except KeyError as e:
        console.print(f"[bold red]Error:[/bold red] {e.args[0]}")
        raise typer.Exit(code=1)


def _load_images(paths: List[str]):
    return [read_image_file(path) for path in paths]


def _run(coro):
    with console.status("[spinner]Processing...", spinner="dots"):
        return asyncio.run(coro)


async def _edit(engine, prompt, image, aux_images, options, output):
    studio = build_studio(settings, engine)
    try:
        return await generate_image_core(
            studio, prompt, image, aux_images, options, output_filename=output
        )
    finally:
        await studio.close()


@app.command()
def edit(
    image: Annotated[str, typer.Argument(help="Primary image to edit.")],
    prompt: Annotated[
        Optional[str],
        typer.Option(
            "--prompt",
            "-p",
            help="Edit instruction. If not provided, you will be asked to enter it.",
            show_default=False,
        ),
    ] = None,
    aux: Annotated[
        Optional[List[str]],
        typer.Option("--aux", help="Auxiliary reference image (repeatable, in order)."),
    ] = None,
    engine: Annotated[
        Optional[str], typer.Option(help="Configured engine to use.")
    ] = None,
    model: Annotated[
        Optional[str], typer.Option(help="Model id. Defaults to the engine's model.")
    ] = None,
    aspect_ratio: Annotated[
        Optional[str], typer.Option("--aspect-ratio", help="e.g. '1:1', '16:9'.")
    ] = None,
    image_size: Annotated[
        Optional[str],
        typer.Option("--image-size", help="'1K', '2K' or '4K' (pro image model only)."),
    ] = None,
    thinking_budget: Annotated[
        Optional[int],
        typer.Option("--thinking-budget", min=0, max=THINKING_BUDGET_MAX),
    ] = None,
    max_output_tokens: Annotated[
        Optional[int], typer.Option("--max-output-tokens", min=1)
    ] = None,
    search: Annotated[
        bool, typer.Option("--search", help="Ground the answer with web search.")
    ] = False,
    system_instruction: Annotated[
        str, typer.Option("--system-instruction")
    ] = EDITOR_INSTRUCTION,
    max_retries: Annotated[
        Optional[int], typer.Option("--max-retries", min=0)
    ] = None,
    temperature: Annotated[float, typer.Option(min=0.0, max=2.0)] = 0.7,
    seed: Annotated[Optional[int], typer.Option()] = None,
    output: Annotated[
        Optional[str],
        typer.Option(
            "--output",
            "-o",
            help="Output filename (e.g., edited.png). If not provided, one will be generated.",
        ),
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", help="Log request details.", is_flag=True)
    ] = False,
):
    configure_logging(verbose)
    if prompt is None:
        prompt = typer.prompt("Please enter the edit instruction")
    try:
        primary_image = read_image_file(image)
        aux_images = _load_images(aux or [])
        options = GenerationOptions(
            model=model or _default_model(engine),
            aspect_ratio=aspect_ratio,
            image_size=image_size,
            thinking_budget=thinking_budget,
            max_output_tokens=max_output_tokens,
            use_search=search,
            system_instruction=system_instruction,
            max_retries=settings.max_retries if max_retries is None else max_retries,
            temperature=temperature,
            seed=seed,
        )
    except ClassifiedError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)

    console.print(f'📜 Prompt: "{prompt}"')
    try:
        result = _run(_edit(engine, prompt, primary_image, aux_images, options, output))
    except ClassifiedError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    if result.error:
        _print_error(result.error)
        raise typer.Exit(code=1)
    _print_output(result, "Image")


@app.command()
def analyze(
    image: Annotated[str, typer.Argument(help="Image to describe.")],
    prompt: Annotated[
        str, typer.Option("--prompt", "-p", help="Question about the image.")
    ] = "Explain the visual elements.",
    engine: Annotated[
        Optional[str], typer.Option(help="Configured engine to use.")
    ] = None,
    thinking: Annotated[
        bool, typer.Option("--thinking", help="Allow extended reasoning.")
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", is_flag=True)] = False,
):
    configure_logging(verbose)
    options = GenerationOptions(
        model=ANALYSIS_MODEL,
        system_instruction=ANALYST_INSTRUCTION,
        thinking_budget=THINKING_BUDGET_MAX if thinking else None,
        max_retries=settings.max_retries,
    )

    async def _analyze(primary_image):
        studio = build_studio(settings, engine)
        try:
            return await generate_image_core(
                studio, prompt, primary_image, options=options, save=False
            )
        finally:
            await studio.close()

    try:
        result = _run(_analyze(read_image_file(image)))
    except ClassifiedError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    if result.error:
        _print_error(result.error)
        raise typer.Exit(code=1)
    _print_output(
        JobOutput(
            text=result.text or "Analysis complete but no text returned.",
            grounding_sources=result.grounding_sources,
        ),
        "Analysis",
    )


@app.command()
def merch(
    logo: Annotated[str, typer.Argument(help="Logo image to place on the product.")],
    product: Annotated[
        str, typer.Option("--product", help="Product id (see `imagestudio products`).")
    ] = MERCH_PRODUCTS[0].id,
    style: Annotated[
        str, typer.Option("--style", help="Style preference, e.g. 'vintage'.")
    ] = "",
    background: Annotated[
        Optional[str],
        typer.Option("--background", help="Optional background scene image."),
    ] = None,
    variations: Annotated[
        bool,
        typer.Option("--variations", help="Also generate lighting/angle variations."),
    ] = False,
    engine: Annotated[
        Optional[str], typer.Option(help="Configured engine to use.")
    ] = None,
    output: Annotated[
        Optional[str], typer.Option("--output", "-o", help="Output filename.")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", is_flag=True)] = False,
):
    configure_logging(verbose)
    has_background = background is not None
    try:
        selected = get_product(product)
        logo_image = read_image_file(logo)
        aux_images = _load_images([background] if background else [])
        options = GenerationOptions(
            model=_default_model(engine), max_retries=settings.max_retries
        )
    except ClassifiedError as e:
        _print_error(e, has_background)
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)

    prompt = construct_merch_prompt(selected, style, has_background)
    console.print(f"👕 Product: [bold cyan]{selected.name}[/bold cyan]")

    async def _merch():
        studio = build_studio(settings, engine)
        try:
            main = await generate_image_core(
                studio, prompt, logo_image, aux_images, options, output_filename=output
            )
            extra: List[JobOutput] = []
            if variations and not main.error:
                extra = await generate_variations_core(
                    studio,
                    prompt,
                    logo_image,
                    aux_images,
                    VARIATION_DIRECTIONS,
                    options=options,
                    output_filename=output,
                )
            return main, extra
        finally:
            await studio.close()

    try:
        main, extra = _run(_merch())
    except ClassifiedError as e:
        _print_error(e, has_background)
        raise typer.Exit(code=1)
    if main.error:
        _print_error(main.error, has_background)
        raise typer.Exit(code=1)
    _print_output(main, "Mockup")
    for i, variation in enumerate(extra, start=1):
        if variation.error:
            _print_error(variation.error, has_background)
        else:
            _print_output(variation, f"Variation {i}")


@app.command()
def products():
    table = Table(title="👕 Merch Products")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="green")
    table.add_column("Description", style="yellow")
    for product in MERCH_PRODUCTS:
        table.add_row(product.id, product.name, product.description)
    console.print(table)


@app.command(name="list-engines")
def list_engines_command():
    if not settings.engines:
        console.print(
            "[yellow]No engines configured. Check your .env file or environment variables.[/yellow]"
        )
        return
    table = Table(title="⚙️ Configured Imagestudio Engines")
    table.add_column("Engine Name", style="cyan", no_wrap=True)
    table.add_column("API Key Set", style="magenta")
    table.add_column("Base URL", style="green")
    table.add_column("Default Model", style="yellow")
    for name, config in settings.engines.items():
        api_key_status = "✅ Set" if config.has_api_key else "⚠️ Not Set"
        base_url_str = (
            str(config.base_url) if config.base_url else "N/A (Official OpenAI)"
        )
        default_marker = " (default)" if name == settings.default_engine else ""
        table.add_row(
            f"{name}{default_marker}",
            api_key_status,
            base_url_str,
            config.model or "Not specified",
        )
    console.print(table)


if __name__ == "__main__":
    app()
