from __future__ import annotations

import json
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .clients.comfy_client import ComfyClient
from .config import ServerConfig
from .errors import ComfyError
from .inputs import Attachment, InputRecord, InputSource, SourceKind
from .logging import setup_logging
from .pipeline import RenderPipeline
from .profiles import AUDIO, DUAL_IMAGE, IMAGE, VIDEO, PipelineProfile

app = typer.Typer(no_args_is_help=True, add_completion=False)
console = Console()

WORKFLOW_OPT = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="Workflow JSON (API format)")
OUT_OPT = typer.Option(Path("."), help="Folder the generated file is written to")
API_URL_OPT = typer.Option(None, help="ComfyUI server URL (default: $COMFY_API_URL)")
API_KEY_OPT = typer.Option(None, help="Bearer token (default: $COMFY_API_KEY)")
ATTACH_OPT = typer.Option([], "--attach", help="Binary input as [INDEX:]NAME=PATH (repeatable)")
LOG_LEVEL_OPT = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")


def _load_config(api_url: Optional[str], api_key: Optional[str]) -> ServerConfig:
    try:
        cfg = ServerConfig.from_env().with_overrides(api_url=api_url, api_key=api_key)
        cfg.validate()
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--api-url") from e
    return cfg


def parse_attachments(specs: List[str]) -> List[InputRecord]:
    """Build input records from `[INDEX:]NAME=PATH` specs."""
    records: List[InputRecord] = []
    for spec in specs:
        if "=" not in spec:
            raise typer.BadParameter(f"expected [INDEX:]NAME=PATH, got {spec!r}", param_hint="--attach")
        key, raw_path = spec.split("=", 1)
        index = 0
        if ":" in key:
            prefix, rest = key.split(":", 1)
            if prefix.isdigit():
                index, key = int(prefix), rest
        path = Path(raw_path)
        if not key or not path.is_file():
            raise typer.BadParameter(f"attachment file not found: {raw_path}", param_hint="--attach")

        while len(records) <= index:
            records.append(InputRecord())
        records[index].attachments[key] = Attachment(
            data=path.read_bytes(),
            mime_type=mimetypes.guess_type(path.name)[0],
            file_name=path.name,
        )
    return records


def _source(kind: str, value: Optional[str], default_attachment: str) -> InputSource:
    try:
        source = InputSource.parse(kind, value or "")
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e
    if source.kind is SourceKind.ATTACHMENT and not source.value:
        return InputSource.attachment(default_attachment)
    if not source.value:
        raise typer.BadParameter(f"a value is required for {kind} inputs")
    return source


def _run(
    profile: PipelineProfile,
    params: Dict[str, Any],
    *,
    sources: List[InputSource],
    records: List[InputRecord],
    out: Path,
    api_url: Optional[str],
    api_key: Optional[str],
    log_level: str,
) -> None:
    setup_logging(log_level)
    cfg = _load_config(api_url, api_key)

    tasks: Dict[str, TaskID] = {}
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
    )

    def on_event(evt: Dict[str, Any]) -> None:
        et = evt.get("type")
        step = evt.get("step")

        if et == "step.start":
            meta = evt.get("meta") or {}
            total = float(meta.get("inputs") or 1)
            if step in tasks:
                progress.reset(tasks[step], total=total, completed=0, description=str(step))
            else:
                tasks[step] = progress.add_task(str(step), total=total)

        elif et == "step.progress":
            if step not in tasks:
                return
            payload = evt.get("progress") or {}
            if step == "upload":
                progress.update(tasks[step], completed=float(payload.get("completed") or 0))
            elif step == "poll":
                progress.update(
                    tasks[step],
                    total=float(payload.get("max_attempts") or 1),
                    completed=float(payload.get("attempt") or 0),
                    description=f"poll ({payload.get('state')})",
                )

        elif et == "step.end":
            if step in tasks:
                # Mark done
                tid = tasks[step]
                t = progress.tasks[tid]
                progress.update(tid, completed=t.total)

    pipeline = RenderPipeline(cfg, profile, on_event=on_event)
    try:
        with progress:
            result = pipeline.run(params, sources=sources, records=records)
    except ValidationError as e:
        console.print(f"[bold red]Invalid parameters:[/bold red] {e}")
        raise typer.Exit(code=2)
    except ComfyError as e:
        console.print(f"[bold red]{profile.label} error:[/bold red] {e.message}")
        if e.description:
            console.print(e.description, markup=False)
        raise typer.Exit(code=1)

    out.mkdir(parents=True, exist_ok=True)
    target = out / Path(result.record.file_name).name
    target.write_bytes(result.record.raw_bytes())

    console.print("\n[bold green]Done.[/bold green]")
    console.print_json(json.dumps(result.record.json_view(include_data=False), default=str))
    console.print(f"File: {target} ({result.record.file_size})")


@app.command()
def check(
    api_url: Optional[str] = API_URL_OPT,
    api_key: Optional[str] = API_KEY_OPT,
    log_level: str = LOG_LEVEL_OPT,
):
    """Probe the server's /system_stats endpoint."""
    setup_logging(log_level)
    cfg = _load_config(api_url, api_key)
    try:
        with ComfyClient(cfg) as client:
            stats = client.check_connection()
    except ComfyError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        if e.description:
            console.print(e.description, markup=False)
        raise typer.Exit(code=1)
    console.print_json(json.dumps(stats, default=str))


@app.command()
def image(
    workflow: Path = WORKFLOW_OPT,
    image: Optional[str] = typer.Option(None, help="URL, base64 data or attachment name"),
    image_type: str = typer.Option("url", help="url, base64 or binary"),
    node_id: Optional[str] = typer.Option(None, help="LoadImage node id (default: first LoadImage)"),
    attach: List[str] = ATTACH_OPT,
    timeout: float = typer.Option(30, help="Minutes to wait for the job"),
    out: Path = OUT_OPT,
    api_url: Optional[str] = API_URL_OPT,
    api_key: Optional[str] = API_KEY_OPT,
    log_level: str = LOG_LEVEL_OPT,
):
    """Transform one input image through a workflow."""
    _run(
        IMAGE,
        {"workflow": workflow.read_text(encoding="utf-8"), "timeout_minutes": timeout, "image_node_id": node_id},
        sources=[_source(image_type, image, IMAGE.input_roles[0].default_attachment)],
        records=parse_attachments(attach),
        out=out,
        api_url=api_url,
        api_key=api_key,
        log_level=log_level,
    )


@app.command("dual-image")
def dual_image(
    workflow: Path = WORKFLOW_OPT,
    first: Optional[str] = typer.Option(None, help="First image: URL, base64 data or attachment name"),
    first_type: str = typer.Option("url", help="url, base64 or binary"),
    second: Optional[str] = typer.Option(None, help="Second image: URL, base64 data or attachment name"),
    second_type: str = typer.Option("url", help="url, base64 or binary"),
    first_node_id: Optional[str] = typer.Option(None, help="LoadImage node id for the first image"),
    second_node_id: Optional[str] = typer.Option(None, help="LoadImage node id for the second image"),
    attach: List[str] = ATTACH_OPT,
    timeout: float = typer.Option(30, help="Minutes to wait for the job"),
    out: Path = OUT_OPT,
    api_url: Optional[str] = API_URL_OPT,
    api_key: Optional[str] = API_KEY_OPT,
    log_level: str = LOG_LEVEL_OPT,
):
    """Combine two input images.

    Without node ids the images go into the first two LoadImage nodes.
    """
    roles = DUAL_IMAGE.input_roles
    _run(
        DUAL_IMAGE,
        {
            "workflow": workflow.read_text(encoding="utf-8"),
            "timeout_minutes": timeout,
            "first_node_id": first_node_id,
            "second_node_id": second_node_id,
        },
        sources=[
            _source(first_type, first, roles[0].default_attachment),
            _source(second_type, second, roles[1].default_attachment),
        ],
        records=parse_attachments(attach),
        out=out,
        api_url=api_url,
        api_key=api_key,
        log_level=log_level,
    )


@app.command()
def video(
    workflow: Path = WORKFLOW_OPT,
    first: Optional[str] = typer.Option(None, help="First image: URL, base64 data or attachment name"),
    first_type: str = typer.Option("url", help="url, base64 or binary"),
    second: Optional[str] = typer.Option(None, help="Second image: URL, base64 data or attachment name"),
    second_type: str = typer.Option("url", help="url, base64 or binary"),
    first_node_id: str = typer.Option("load_image_1", help="LoadImage node id for the first image"),
    second_node_id: str = typer.Option("load_image_2", help="LoadImage node id for the second image"),
    frame_count: int = typer.Option(16, min=1, help="Number of frames to generate"),
    frame_rate: float = typer.Option(8, help="Output frame rate"),
    attach: List[str] = ATTACH_OPT,
    timeout: float = typer.Option(60, help="Minutes to wait for the job"),
    out: Path = OUT_OPT,
    api_url: Optional[str] = API_URL_OPT,
    api_key: Optional[str] = API_KEY_OPT,
    log_level: str = LOG_LEVEL_OPT,
):
    """Generate a video from two input images (AnimateDiff, SVD, ...)."""
    roles = VIDEO.input_roles
    _run(
        VIDEO,
        {
            "workflow": workflow.read_text(encoding="utf-8"),
            "timeout_minutes": timeout,
            "first_node_id": first_node_id,
            "second_node_id": second_node_id,
            "frame_count": frame_count,
            "frame_rate": frame_rate,
        },
        sources=[
            _source(first_type, first, roles[0].default_attachment),
            _source(second_type, second, roles[1].default_attachment),
        ],
        records=parse_attachments(attach),
        out=out,
        api_url=api_url,
        api_key=api_key,
        log_level=log_level,
    )


@app.command()
def audio(
    workflow: Path = WORKFLOW_OPT,
    prompt: str = typer.Option(..., help="Description of the audio to generate"),
    duration: float = typer.Option(180, help="Audio duration in seconds"),
    quality: str = typer.Option("128k", help="MP3 bitrate: 64k, 128k, 192k, 256k or 320k"),
    seed: int = typer.Option(-1, help="Sampler seed (-1 for random)"),
    steps: int = typer.Option(50, help="Sampling steps"),
    cfg: float = typer.Option(5, help="CFG scale"),
    timeout: float = typer.Option(30, help="Minutes to wait for the job"),
    out: Path = OUT_OPT,
    api_url: Optional[str] = API_URL_OPT,
    api_key: Optional[str] = API_KEY_OPT,
    log_level: str = LOG_LEVEL_OPT,
):
    """Generate audio from a text prompt (ACE Step workflows)."""
    _run(
        AUDIO,
        {
            "workflow": workflow.read_text(encoding="utf-8"),
            "timeout_minutes": timeout,
            "prompt": prompt,
            "duration": duration,
            "quality": quality,
            "seed": seed,
            "steps": steps,
            "cfg": cfg,
        },
        sources=[],
        records=[],
        out=out,
        api_url=api_url,
        api_key=api_key,
        log_level=log_level,
    )


if __name__ == "__main__":  # pragma: no cover
    app()
