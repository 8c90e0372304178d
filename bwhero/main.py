"""
bwhero — CLI Entry Point

Usage:
    bwhero [--config FILE] serve [--host H] [--port P] [--debug]
    bwhero inspect FILE [--type MIME]
    bwhero plan --width W --height H --size BYTES [--quality Q] [--jpeg] [--animated]
    bwhero transcode FILE -o OUT [--quality Q] [--jpeg] [--color]
"""

from __future__ import annotations

# Load .env file FIRST, before anything reads env vars
from pathlib import Path
from dotenv import load_dotenv

_env_file = Path.cwd() / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

import json
import mimetypes
from typing import Optional

import click

from .config.loader import ProxyConfig, load_config, with_overrides
from .logging_config import setup_logging
from .models.image import CompressionContext, FormatPreference, ImageMetadata
from .pipeline import codec
from .pipeline.eligibility import should_transcode
from .pipeline.inspector import Inspector
from .pipeline.limiter import TranscodeLimiter
from .pipeline.planner import plan_encode
from .pipeline.transcoder import Transcoder
from .validation import ConfigurationError, ProxyError


def _guess_type(path: Path, override: Optional[str]) -> str:
    if override:
        return override
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _context(
    config: ProxyConfig,
    mime_type: str,
    size: int,
    quality: Optional[int],
    jpeg: bool,
    color: bool,
    animated: bool = False,
) -> CompressionContext:
    return CompressionContext(
        mime_type=mime_type,
        byte_size=size,
        preference=FormatPreference.JPEG if jpeg else FormatPreference.MODERN,
        grayscale=not color,
        quality=config.clamp_quality(quality if quality is not None else config.default_quality),
        is_animated=animated,
    )


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="YAML config file (overrides BWHERO_CONFIG)")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str]) -> None:
    """bwhero — bandwidth-saving image compression proxy."""
    setup_logging(level=log_level)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8080, type=int, envvar="PORT", help="Port to listen on")
@click.option("--debug", is_flag=True, help="Flask debug mode")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, debug: bool) -> None:
    """Run the proxy server."""
    from .server.app import run_server

    if debug:
        setup_logging(level="DEBUG")
    run_server(host=host, port=port, debug=debug, config=ctx.obj["config"])


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--type", "mime_type", default=None, help="MIME type (guessed from the name if omitted)")
@click.option("--quality", "-q", type=int, default=None)
@click.option("--jpeg", is_flag=True, help="Plan for JPEG output")
@click.pass_context
def inspect(ctx: click.Context, file: Path, mime_type: Optional[str], quality: Optional[int], jpeg: bool) -> None:
    """Show what the proxy would decide for a local file."""
    config: ProxyConfig = ctx.obj["config"]
    data = file.read_bytes()
    mime_type = _guess_type(file, mime_type)

    inspection = Inspector().inspect(data, mime_type)
    context = _context(config, mime_type, len(data), quality, jpeg, color=False, animated=inspection.is_animated)
    decision = should_transcode(context, data, config)

    click.echo(f"File:       {file}")
    click.echo(f"Type:       {mime_type}")
    click.echo(f"Size:       {len(data):,} bytes")
    click.echo(f"Image:      {inspection.is_image}")
    click.echo(f"Animated:   {inspection.is_animated}")
    click.echo(f"Decision:   {'transcode' if decision else 'bypass'} ({decision.reason})")

    if not inspection.is_image:
        return
    try:
        meta = codec.read_metadata(data)
    except ProxyError as e:
        click.secho(f"Metadata:   unreadable ({e})", fg="red")
        return
    click.echo(f"Geometry:   {meta.width}x{meta.height}, {meta.frame_count} frame(s)")
    if decision:
        plan = plan_encode(context, meta, config)
        click.echo("Plan:")
        click.echo(json.dumps(plan.to_dict(), indent=2))


@cli.command()
@click.option("--width", type=int, required=True)
@click.option("--height", type=int, required=True)
@click.option("--size", type=int, required=True, help="Byte size of the source")
@click.option("--type", "mime_type", default="image/jpeg")
@click.option("--quality", "-q", type=int, default=None)
@click.option("--jpeg", is_flag=True)
@click.option("--animated", is_flag=True)
@click.option("--frames", type=int, default=None, help="Frame count (default: 2 if animated, else 1)")
@click.option("--modern-format", type=click.Choice(["avif", "webp"]), default=None)
@click.pass_context
def plan(
    ctx: click.Context,
    width: int,
    height: int,
    size: int,
    mime_type: str,
    quality: Optional[int],
    jpeg: bool,
    animated: bool,
    frames: Optional[int],
    modern_format: Optional[str],
) -> None:
    """Print the encode plan for the given geometry as JSON."""
    config: ProxyConfig = ctx.obj["config"]
    if modern_format:
        config = with_overrides(config, modern_format=modern_format)

    meta = ImageMetadata(
        width=width,
        height=height,
        frame_count=frames or (2 if animated else 1),
        byte_size=size,
    )
    context = _context(config, mime_type, size, quality, jpeg, color=False, animated=animated)
    click.echo(json.dumps(plan_encode(context, meta, config).to_dict(), indent=2))


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), required=True)
@click.option("--type", "mime_type", default=None)
@click.option("--quality", "-q", type=int, default=None)
@click.option("--jpeg", is_flag=True, help="Encode as JPEG")
@click.option("--color", is_flag=True, help="Keep colour (default is grayscale)")
@click.option("--timeout", type=float, default=None, help="Per-step timeout in seconds")
@click.pass_context
def transcode(
    ctx: click.Context,
    file: Path,
    output: Path,
    mime_type: Optional[str],
    quality: Optional[int],
    jpeg: bool,
    color: bool,
    timeout: Optional[float],
) -> None:
    """Run the transcoder on a local file, ignoring the eligibility thresholds."""
    config: ProxyConfig = ctx.obj["config"]
    if timeout is not None:
        config = with_overrides(config, transcode_timeout=timeout)

    data = file.read_bytes()
    mime_type = _guess_type(file, mime_type)
    inspection = Inspector().inspect(data, mime_type)
    context = _context(config, mime_type, len(data), quality, jpeg, color, animated=inspection.is_animated)

    limiter = TranscodeLimiter(1)
    try:
        outcome = Transcoder(config, limiter).transcode(data, context)
    finally:
        limiter.shutdown()

    if not outcome.is_ok:
        raise click.ClickException(f"{outcome.error.kind}: {outcome.error.message}")

    result = outcome.value
    try:
        with open(output, "wb") as fh:
            for chunk in result.iter_chunks():
                fh.write(chunk)
    finally:
        result.close()

    saved = max(len(data) - result.size, 0)
    click.secho(
        f"✓ {file.name} → {output.name}: {len(data):,} → {result.size:,} bytes "
        f"({result.format}, saved {saved:,})",
        fg="green",
    )


if __name__ == "__main__":
    cli()
