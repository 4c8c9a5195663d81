"""CLI Application for StoryWeaver."""

import asyncio
import logging
import mimetypes
from collections.abc import Coroutine
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import Settings
from .errors import StoryWeaverError, is_api_key_error
from .models import SceneStatus, Session, VideoStatus, VoiceoverMode
from .service import CAMERA_ANGLES, GeminiService
from .studio import Studio

# Setup Typer and Console
app = typer.Typer(help="StoryWeaver CLI - Multi-scene visual stories with Gemini")
console = Console()

_STATUS_STYLE = {
    SceneStatus.PENDING: "dim",
    SceneStatus.GENERATING: "yellow",
    SceneStatus.COMPLETE: "green",
    SceneStatus.ERROR: "red",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Configure logging for every command."""
    level = "DEBUG" if verbose else Settings().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _get_studio(api_key: str | None = None, needs_service: bool = True) -> Studio:
    """Build a studio with persisted state loaded."""
    settings = Settings()
    if api_key:
        settings = settings.model_copy(update={"api_key": api_key})
    service = None
    if needs_service:
        try:
            settings.validate_required()
        except ValueError:
            console.print(
                "[bold red]Error:[/bold red] GEMINI_API_KEY not found in env or arguments.",
            )
            raise typer.Exit(code=1) from None
        service = GeminiService(
            settings.api_key,
            text_model=settings.text_model,
            video_model=settings.video_model,
            media_dir=settings.data_dir / "media",
        )
    studio = Studio(service, settings)
    studio.load()
    return studio


def _run(studio: Studio, coro: Coroutine, description: str):
    """Drive one studio coroutine with a spinner; Ctrl+C stops it."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=None)
        unsubscribe = studio.store.subscribe(
            lambda _: progress.update(task, description=studio.status_message or description),
        )
        try:
            return asyncio.run(coro)
        except KeyboardInterrupt:
            studio.stop()
            studio.store.stop_in_flight()
            studio.persist()
            console.print("[yellow]Stopped.[/yellow]")
            raise typer.Exit(code=130) from None
        except StoryWeaverError as e:
            _fail(e)
        finally:
            unsubscribe()


def _read_image(path: Path) -> tuple[bytes, str]:
    if not path.exists():
        console.print(f"[bold red]Error:[/bold red] File {path} not found.")
        raise typer.Exit(code=1)
    mime_type, _ = mimetypes.guess_type(path)
    with path.open("rb") as f:
        return f.read(), mime_type or "image/png"


def _fail(e: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {e}")
    if is_api_key_error(str(e)):
        console.print("[yellow]Check GEMINI_API_KEY in your environment or .env file.[/yellow]")
    raise typer.Exit(code=1) from e


def _scene_table(session: Session) -> Table:
    table = Table(title=f"[bold]{session.title}[/bold] (session {session.id})")
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Prompt", overflow="fold")
    table.add_column("Angle")
    table.add_column("Clips", justify="right")
    table.add_column("Error", style="red")
    for i, scene in enumerate(session.scenes):
        if scene.hidden:
            continue
        style = _STATUS_STYLE[scene.status]
        clips = str(len(scene.video.clips)) if scene.video.clips else ""
        if scene.video.status == VideoStatus.ERROR:
            clips = f"{clips} [red]![/red]"
        angle = scene.angle_name or ""
        if scene.angle_of is not None:
            angle = f"{angle} (of #{scene.angle_of})"
        table.add_row(
            str(i),
            f"[{style}]{scene.status.value}[/{style}]",
            scene.prompt[:80],
            angle,
            clips,
            scene.error or scene.video.error or "",
        )
    return table


def _export_images(session: Session, output_dir: Path) -> int:
    output_dir.mkdir(parents=True, exist_ok=True)
    written = 0
    for i, scene in enumerate(session.scenes):
        if not scene.image:
            continue
        ext = scene.mime_type.split("/")[-1] or "png"
        with (output_dir / f"scene_{i:03d}.{ext}").open("wb") as f:
            f.write(scene.image)
        written += 1
    return written


def _balance_line(studio: Studio) -> str:
    return f"[bold]Balance:[/bold] {studio.ledger.format(studio.ledger.balance)}"


@app.command()
def generate(
    prompt: str = typer.Argument(..., help="Story idea to illustrate"),
    count: int = typer.Option(1, "--count", "-n", help="Number of scenes"),
    aspect_ratio: str = typer.Option("16:9", "--aspect-ratio", help="Image aspect ratio"),
    style: str = typer.Option("Nigerian Cartoon", help="Visual style"),
    genre: str = typer.Option("General", help="Story genre"),
    image_model: str | None = typer.Option(
        None,
        "--image-model",
        help="Model for image generation",
    ),
    session: int | None = typer.Option(
        None,
        "--session",
        help="Append to an existing session instead of starting a new one",
    ),
    output_dir: Path | None = typer.Option(
        None,
        help="Directory to export generated images to",
    ),
    api_key: str | None = typer.Option(
        None,
        envvar="GEMINI_API_KEY",
        help="Google Gemini API Key",
    ),
) -> None:
    """Generate a batch of scenes from one prompt."""
    studio = _get_studio(api_key)
    overrides = {"aspect_ratio": aspect_ratio, "style": style, "genre": genre}
    if image_model:
        overrides["image_model"] = image_model
    params = None if session is not None else studio.default_params(**overrides)

    session_id = _run(
        studio,
        studio.generate(prompt, count, params=params, session_id=session),
        "Generating scenes...",
    )
    _report_session(studio, session_id, output_dir)


def _report_session(studio: Studio, session_id: int, output_dir: Path | None) -> None:
    result = studio.store.get(session_id)
    console.print(_scene_table(result))

    done = sum(1 for s in result.scenes if s.status == SceneStatus.COMPLETE)
    console.print(
        Panel(
            f"[bold]Session:[/bold] {session_id}\n"
            f"[bold]Scenes:[/bold] {done}/{len(result.scenes)} complete\n"
            f"{_balance_line(studio)}",
            title="Generation Finished",
            border_style="green" if done == len(result.scenes) else "yellow",
        ),
    )
    if studio.status_message:
        console.print(f"[yellow]{studio.status_message}[/yellow]")
    if output_dir is not None:
        written = _export_images(result, output_dir)
        console.print(f"Exported {written} image(s) to: [underline]{output_dir.absolute()}[/underline]")


@app.command()
def history() -> None:
    """List saved sessions."""
    studio = _get_studio(needs_service=False)
    if not studio.store.sessions:
        console.print("No sessions yet.")
        return
    table = Table(title="History")
    table.add_column("ID", justify="right")
    table.add_column("Title", overflow="fold")
    table.add_column("Scenes", justify="right")
    table.add_column("Style")
    table.add_column("State")
    for s in reversed(studio.store.sessions):
        table.add_row(
            str(s.id),
            s.title,
            str(len(s.visible_scenes)),
            s.params.style,
            "closed" if s.closed else "open",
        )
    console.print(table)


@app.command()
def show(
    session_id: int = typer.Argument(..., help="Session ID"),
    export: Path | None = typer.Option(None, help="Directory to export scene images to"),
) -> None:
    """Show the scenes of one session."""
    studio = _get_studio(needs_service=False)
    try:
        session = studio.store.get(session_id)
    except StoryWeaverError as e:
        _fail(e)
    console.print(_scene_table(session))
    if export is not None:
        written = _export_images(session, export)
        console.print(f"Exported {written} image(s) to: [underline]{export.absolute()}[/underline]")


@app.command()
def regenerate(
    session_id: int = typer.Argument(..., help="Session ID"),
    scene_index: int = typer.Argument(..., help="Scene index"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Generate a scene's image again."""
    studio = _get_studio(api_key)
    result = _run(
        studio,
        studio.regenerate_scene(session_id, scene_index),
        "Regenerating scene...",
    )
    if result is None:
        console.print("[yellow]Stopped.[/yellow]")
    elif result.ok:
        console.print(f"[green]Scene {scene_index} regenerated.[/green] {_balance_line(studio)}")
    else:
        console.print(f"[bold red]Failed:[/bold red] {result.error}")


def _clip_report(studio: Studio, session_id: int, scene_index: int, clip) -> None:
    scene = studio.store.scene(studio.store.scene_ref(session_id, scene_index))
    if clip is None:
        console.print(f"[bold red]Failed:[/bold red] {scene.video.error}")
        raise typer.Exit(code=1)
    console.print(
        Panel(
            f"[bold]Video:[/bold] {clip.video_ref}\n"
            f"[bold]Audio:[/bold] {clip.audio_ref or '-'}\n"
            f"[bold]Clips:[/bold] {len(scene.video.clips)}\n"
            f"{_balance_line(studio)}",
            title="Clip Ready",
            border_style="green",
        ),
    )


@app.command()
def video(
    session_id: int = typer.Argument(..., help="Session ID"),
    scene_index: int = typer.Argument(..., help="Scene index"),
    script: str | None = typer.Option(None, help="Narration, optionally 'Name: line'"),
    camera: str | None = typer.Option(None, help="Camera movement"),
    lip_sync: bool = typer.Option(False, "--lip-sync", help="Animate speaking mouths"),
    voiceover: Path | None = typer.Option(None, help="Audio file to use as voiceover"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Generate a video clip from a scene image."""
    studio = _get_studio(api_key)
    try:
        ref = studio.store.scene_ref(session_id, scene_index)
        if script is not None:
            studio.set_script(session_id, scene_index, script)
        if camera is not None:
            studio.set_camera_movement(session_id, scene_index, camera)
        if voiceover is not None:
            with voiceover.open("rb") as f:
                studio.set_voiceover(session_id, scene_index, VoiceoverMode.UPLOADED, f.read())
        current = studio.store.scene(ref).video.use_lip_sync
        if lip_sync != current:
            studio.toggle_lip_sync(session_id, scene_index)
    except (StoryWeaverError, OSError) as e:
        _fail(e)
    clip = _run(studio, studio.generate_clip(session_id, scene_index), "Generating video...")
    _clip_report(studio, session_id, scene_index, clip)


@app.command()
def extend(
    session_id: int = typer.Argument(..., help="Session ID"),
    scene_index: int = typer.Argument(..., help="Scene index"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Continue the latest clip of a scene."""
    studio = _get_studio(api_key)
    clip = _run(studio, studio.extend_clip(session_id, scene_index), "Extending video...")
    _clip_report(studio, session_id, scene_index, clip)


@app.command()
def angles(
    session_id: int = typer.Argument(..., help="Session ID"),
    scene_index: int = typer.Argument(..., help="Scene index"),
    angle: list[str] = typer.Option(
        None,
        "--angle",
        "-a",
        help=f"Camera angle, repeatable ({', '.join(CAMERA_ANGLES)})",
    ),
    focus: str | None = typer.Option(None, help="Subject to keep in focus"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Re-render a scene from other camera angles."""
    studio = _get_studio(api_key)
    refs = _run(
        studio,
        studio.generate_camera_angles(session_id, scene_index, angle or [], focus),
        "Generating camera angles...",
    )
    if studio.error:
        console.print(f"[bold red]Failed:[/bold red] {studio.error}")
        raise typer.Exit(code=1)
    console.print(f"Added {len(refs)} angle scene(s).")
    console.print(_scene_table(studio.store.get(session_id)))


@app.command()
def edit(
    session_id: int = typer.Argument(..., help="Session ID"),
    scene_index: int = typer.Argument(..., help="Scene index"),
    prompt: str = typer.Argument(..., help="Edit instruction"),
    mask: Path | None = typer.Option(None, help="Painted mask overlay (PNG)"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Edit a scene image and keep the result."""
    studio = _get_studio(api_key)
    try:
        studio.start_edit(session_id, scene_index)
        overlay = None
        if mask is not None:
            with mask.open("rb") as f:
                overlay = f.read()
    except (StoryWeaverError, OSError) as e:
        _fail(e)
    result = _run(studio, studio.submit_edit(prompt, mask_overlay=overlay), "Editing image...")
    if result is None or not result.ok:
        error = result.error if result is not None else studio.edit.error
        studio.cancel_edit()
        console.print(f"[bold red]Failed:[/bold red] {error}")
        raise typer.Exit(code=1)
    studio.save_edit()
    console.print(f"[green]Scene {scene_index} updated.[/green] {_balance_line(studio)}")


@app.command()
def delete(session_id: int = typer.Argument(..., help="Session ID")) -> None:
    """Delete a session from history."""
    studio = _get_studio(needs_service=False)
    if not studio.delete_session(session_id):
        console.print(f"[bold red]Error:[/bold red] Session {session_id} not found.")
        raise typer.Exit(code=1)
    console.print(f"Deleted session {session_id}.")


@app.command()
def bookmark(
    session_id: int = typer.Argument(..., help="Session ID"),
    scene_index: int = typer.Argument(..., help="Scene index"),
) -> None:
    """Save or unsave a scene."""
    studio = _get_studio(needs_service=False)
    try:
        saved = studio.toggle_bookmark(session_id, scene_index)
    except StoryWeaverError as e:
        _fail(e)
    console.print("Saved." if saved else "Removed from saved items.")


@app.command()
def bookmarks(
    restore: str | None = typer.Option(None, help="Saved item ID to reopen as a session"),
) -> None:
    """List saved scenes, or restore one."""
    studio = _get_studio(needs_service=False)
    if restore is not None:
        try:
            session_id = studio.restore_bookmark(restore)
        except StoryWeaverError as e:
            _fail(e)
        console.print(f"Restored as session {session_id}.")
        return
    if not studio.bookmarks:
        console.print("No saved items.")
        return
    table = Table(title="Saved Items")
    table.add_column("ID")
    table.add_column("Title", overflow="fold")
    table.add_column("Prompt", overflow="fold")
    for item in studio.bookmarks:
        table.add_row(item.id, item.title, item.scene.prompt[:60])
    console.print(table)


@app.command()
def character(
    name: str = typer.Argument(..., help="Character name"),
    image: Path | None = typer.Option(None, help="Reference image"),
    description: str | None = typer.Option(None, help="Visual description"),
    describe: bool = typer.Option(False, "--describe", help="Describe the reference image with Gemini"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Add a character to the roster."""
    studio = _get_studio(api_key, needs_service=describe)
    data, mime = _read_image(image) if image is not None else (None, None)
    created = studio.add_character(name, image=data, mime_type=mime, description=description)
    if describe:
        created = _run(studio, studio.describe_character(created.id), "Analyzing character...")
    console.print(
        Panel(
            f"[bold]Description:[/bold] {created.description or '-'}\n"
            f"[bold]Style:[/bold] {created.detected_style or '-'}",
            title=f"{created.name} (#{created.id})",
            border_style="green",
        ),
    )


@app.command("character-visual")
def character_visual(
    character_id: int = typer.Argument(..., help="Character ID"),
    output: Path | None = typer.Option(None, help="File to save the drawing to"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Draw a full-body reference image for a character."""
    studio = _get_studio(api_key)
    built = _run(studio, studio.build_character_visual(character_id), "Drawing character...")
    saved = ""
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("wb") as f:
            f.write(built.image)
        saved = f"[bold]Saved:[/bold] {output}\n"
    console.print(
        Panel(
            f"[bold]Style:[/bold] {built.detected_style}\n{saved}{_balance_line(studio)}",
            title=f"{built.name} (#{built.id})",
            border_style="green",
        ),
    )


@app.command()
def storybook(
    idea: str | None = typer.Argument(None, help="Story idea to write"),
    narrative: Path | None = typer.Option(
        None,
        help="Split an existing narrative file into scenes instead",
    ),
    title: str = typer.Option("", help="Story title"),
    dialogue: bool = typer.Option(True, "--dialogue/--no-dialogue", help="Write dialogue into scripts"),
    generate_images: bool = typer.Option(
        False,
        "--generate",
        help="Illustrate every scene as a new session",
    ),
    output_dir: Path | None = typer.Option(None, help="Directory to export generated images to"),
    api_key: str | None = typer.Option(None, envvar="GEMINI_API_KEY", help="Google Gemini API Key"),
) -> None:
    """Write a storybook, then optionally turn it into a storyboard."""
    if (idea is None) == (narrative is None):
        console.print("[bold red]Error:[/bold red] Give either a story idea or --narrative.")
        raise typer.Exit(code=1)
    studio = _get_studio(api_key)
    if narrative is not None:
        try:
            with narrative.open("r", encoding="utf-8") as f:
                summary = f.read()
        except OSError as e:
            _fail(e)
        scenes = _run(studio, studio.storybook_from_narrative(summary, dialogue), "Analyzing story...")
    else:
        book = _run(studio, studio.draft_storybook(idea, title, dialogue), "Writing story...")
        summary, scenes = book.story_narrative, book.scenes

    console.print(Panel(summary or "-", title=title or "Storybook", border_style="blue"))
    table = Table(title="Scenes")
    table.add_column("#", justify="right")
    table.add_column("Picture", overflow="fold")
    table.add_column("Script", overflow="fold")
    for i, scene in enumerate(scenes):
        table.add_row(str(i), scene.image_description, scene.narration)
    console.print(table)

    if generate_images:
        session_id = _run(
            studio,
            studio.generate_from_script(title, scenes),
            "Generating storyboard...",
        )
        _report_session(studio, session_id, output_dir)


@app.command()
def credits(
    top_up: float | None = typer.Option(None, "--top-up", help="Amount to add, in USD"),
    currency: str | None = typer.Option(None, help="Display currency"),
) -> None:
    """Show or change the credit balance."""
    studio = _get_studio(needs_service=False)
    try:
        if currency is not None:
            studio.set_currency(currency)
        if top_up is not None:
            studio.top_up(top_up)
    except StoryWeaverError as e:
        _fail(e)
    console.print(_balance_line(studio))


@app.command()
def usage(
    enable: bool | None = typer.Option(None, "--enable/--disable", help="Turn daily limits on or off"),
    max_images: int | None = typer.Option(None, help="Daily image limit"),
    max_videos: int | None = typer.Option(None, help="Daily video limit"),
) -> None:
    """Show today's usage and the daily limits."""
    studio = _get_studio(needs_service=False)
    changes = {}
    if enable is not None:
        changes["enabled"] = enable
    if max_images is not None:
        changes["max_images"] = max_images
    if max_videos is not None:
        changes["max_videos"] = max_videos
    if changes:
        studio.set_limits(**changes)
    today = studio.usage.usage
    limits = studio.usage.limits
    state = "on" if limits.enabled else "off"
    console.print(
        Panel(
            f"[bold]Images:[/bold] {today.images}/{limits.max_images}\n"
            f"[bold]Videos:[/bold] {today.videos}/{limits.max_videos}\n"
            f"[bold]Limits:[/bold] {state}",
            title=f"Usage {today.day}",
        ),
    )


if __name__ == "__main__":
    app()
