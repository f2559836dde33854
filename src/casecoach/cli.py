"""
CaseCoach CLI

Command-line interface for the CaseCoach streaming backend.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import structlog

from casecoach import __version__
from casecoach.config import settings

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
# CLI Group
# ══════════════════════════════════════════════════════════════


@click.group()
@click.version_option(version=__version__, prog_name="casecoach")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """CaseCoach - real-time case-interview coaching backend.

    Streams answers in chunks and analyzes each question once.
    """
    import logging

    level = logging.DEBUG if debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


# ══════════════════════════════════════════════════════════════
# Server Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload/--no-reload", default=False, help="Enable auto-reload")
def serve(host: str, port: int, reload: bool) -> None:
    """Start the CaseCoach API server.

    Runs a single worker: streaming state lives in process memory.
    """
    import uvicorn

    click.echo(f"Starting CaseCoach API on {host}:{port}")
    click.echo(f"  Events: ws://{host}:{port}/ws/sessions/{{session_id}}")

    uvicorn.run(
        "casecoach.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


# ══════════════════════════════════════════════════════════════
# Pipeline Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
@click.option("--question", "-q", "question_index", required=True, type=click.IntRange(min=0), help="Question index")
@click.option("--audio", "-a", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Audio answer")
@click.option("--video", "-v", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Video answer")
@click.option("--transcript", "-t", default=None, help="Use this transcript instead of speech-to-text")
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Output JSON file")
def process(
    question_index: int,
    audio: Optional[Path],
    video: Optional[Path],
    transcript: Optional[str],
    output: Optional[Path],
) -> None:
    """Run the question pipeline once and print the result as JSON."""
    from casecoach.core.models import ProcessingStatus
    from casecoach.pipeline import QuestionProcessor

    async def run_processing():
        processor = QuestionProcessor()
        await processor.initialize()
        return await processor.process(
            question_index,
            audio=audio,
            video=video,
            transcript_hint=transcript,
        )

    result = asyncio.run(run_processing())
    body = result.model_dump_json(by_alias=True, indent=2)

    if output:
        output.write_text(body)
        click.echo(f"Output: {output}")
    else:
        click.echo(body)

    if result.status == ProcessingStatus.ERROR:
        click.echo(f"✗ Processing failed: {result.error_message}", err=True)
        sys.exit(1)


# ══════════════════════════════════════════════════════════════
# Config Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
def config() -> None:
    """Show current configuration."""
    click.echo("CaseCoach Configuration\n")

    config_items = [
        ("Environment", settings.app_env),
        ("Debug", str(settings.debug)),
        ("Storage", settings.storage_backend),
        ("Redis", str(settings.redis_url)),
        ("Chunk Dir", str(settings.chunk_temp_dir)),
        ("Combine Strategy", settings.audio_combine_strategy),
        ("Timeout (s)", str(settings.processing_timeout_seconds)),
        ("LLM Provider", settings.llm_provider),
        ("Anthropic API Key", settings.anthropic_api_key),
        ("OpenAI API Key", settings.openai_api_key),
        ("Whisper Model", settings.whisper_model),
    ]

    for key, value in config_items:
        # Mask sensitive values
        if "key" in key.lower() or "secret" in key.lower():
            value = "***" if value else "Not set"
        click.echo(f"  {key:20} {value}")


# ══════════════════════════════════════════════════════════════
# Entry Point
# ══════════════════════════════════════════════════════════════


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
