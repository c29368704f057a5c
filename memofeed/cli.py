"""
Command line interface for memofeed.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from memofeed.core.config import settings
from memofeed.core.exceptions import MemoFeedException, UserCancelled
from memofeed.core.logging import setup_logging, get_logger
from memofeed.services.feed_service import FeedService
from memofeed.services.signer import KeypairSigner

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Memo feed commands")


def _run(coro):
    try:
        return asyncio.run(coro)
    except UserCancelled as e:
        console.print(f"[yellow]{e.message}[/yellow]")
        raise typer.Exit(code=1)
    except MemoFeedException as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(code=1)


def _when(block_time: Optional[int]) -> str:
    return datetime.fromtimestamp(block_time, timezone.utc).isoformat() if block_time else "-"


def _signer(keypair: Optional[Path]) -> Optional[KeypairSigner]:
    return KeypairSigner.from_secret(keypair) if keypair else None


@app.command()
def feed(
    limit: int = typer.Option(settings.page_size, help="Items per page"),
    cursor: Optional[str] = typer.Option(None, help="Cursor from a previous page"),
):
    """Print one feed page."""
    async def _feed():
        setup_logging()
        service = FeedService.from_settings()
        try:
            result = await service.fetch_page(cursor=cursor, limit=limit)
        finally:
            await service.close()

        table = Table(title=f"Feed ({result.source})")
        table.add_column("Slot", justify="right")
        table.add_column("Time")
        table.add_column("Creator")
        table.add_column("Text")
        for item in result.items:
            event = item.event
            when = _when(item.block_time)
            table.add_row(str(item.slot), when, event.creator[:8], " / ".join(event.text_lines))
        console.print(table)
        if result.next_cursor:
            console.print(f"Next cursor: {result.next_cursor}")

    _run(_feed())


@app.command()
def likes(total: int = typer.Option(settings.tally_scan_limit, help="Signatures to scan")):
    """Print like counts over recent history."""
    async def _likes():
        setup_logging()
        service = FeedService.from_settings()
        try:
            counts = await service.like_counts(total)
        finally:
            await service.close()

        table = Table(title="Likes")
        table.add_column("Content")
        table.add_column("Likes", justify="right")
        for content_id, count in sorted(counts.items(), key=lambda kv: kv[1], reverse=True):
            table.add_row(content_id, str(count))
        console.print(table)

    _run(_likes())


@app.command()
def serve(
    host: str = typer.Option(settings.host),
    port: int = typer.Option(settings.port),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the HTTP API."""
    import uvicorn

    logger.info("Starting API server", host=host, port=port)
    uvicorn.run("memofeed.api.main:app", host=host, port=port, reload=reload)


@app.command()
def post(
    key: str = typer.Argument(..., help="Content key"),
    lines: List[str] = typer.Argument(..., help="Text lines"),
    keypair: Path = typer.Option(..., help="Signer keypair JSON file"),
    watermark: Optional[str] = typer.Option(None),
    wait: bool = typer.Option(True, help="Wait for confirmation"),
):
    """Publish content."""
    async def _post():
        setup_logging()
        service = FeedService.from_settings(signer=_signer(keypair))
        try:
            writer = service.require_writer()
            signature = await writer.publish_post(key, lines, watermark=watermark)
            console.print(f"Submitted: {signature}")
            if wait:
                result = await writer.await_confirmation(signature)
                console.print(f"Confirmation: {result.status.value}")
        finally:
            await service.close()

    _run(_post())


@app.command()
def like(
    content_id: str = typer.Argument(..., help="Content id"),
    creator: str = typer.Argument(..., help="Creator wallet"),
    keypair: Path = typer.Option(..., help="Signer keypair JSON file"),
    superlike: bool = typer.Option(False),
    wait: bool = typer.Option(True, help="Wait for confirmation"),
):
    """Like content, tipping the creator."""
    async def _like():
        setup_logging()
        service = FeedService.from_settings(signer=_signer(keypair))
        try:
            writer = service.require_writer()
            signature = await writer.publish_like(content_id, creator, superlike=superlike)
            console.print(f"Submitted: {signature}")
            if wait:
                result = await writer.await_confirmation(signature)
                console.print(f"Confirmation: {result.status.value}")
        finally:
            await service.close()

    _run(_like())


@app.command()
def tips():
    """Print recent tips to the owner wallet."""
    async def _tips():
        setup_logging()
        service = FeedService.from_settings()
        try:
            recent = await service.recent_tips()
        finally:
            await service.close()

        table = Table(title="Recent tips")
        table.add_column("Time")
        table.add_column("From")
        table.add_column("SOL", justify="right")
        table.add_column("Signature")
        for entry in recent:
            table.add_row(_when(entry.block_time), entry.sender[:8], entry.sol, entry.signature[:20])
        console.print(table)

    _run(_tips())


@app.command()
def tip(
    lamports: int = typer.Argument(..., help="Amount in lamports"),
    keypair: Path = typer.Option(..., help="Signer keypair JSON file"),
    wait: bool = typer.Option(True, help="Wait for confirmation"),
):
    """Send a tip to the owner wallet."""
    async def _tip():
        setup_logging()
        service = FeedService.from_settings(signer=_signer(keypair))
        try:
            writer = service.require_writer()
            signature = await writer.publish_tip(lamports)
            console.print(f"Submitted: {signature}")
            if wait:
                result = await writer.await_confirmation(signature)
                console.print(f"Confirmation: {result.status.value}")
        finally:
            await service.close()

    _run(_tip())


@app.command("publish-manifest")
def publish_manifest(
    registries: List[str] = typer.Argument(..., help="Registry addresses"),
    keypair: Path = typer.Option(..., help="Owner keypair JSON file"),
    tag: Optional[str] = typer.Option(None, help="Manifest tag"),
):
    """Publish the registry manifest (owner only)."""
    async def _publish():
        setup_logging()
        service = FeedService.from_settings(signer=_signer(keypair))
        try:
            writer = service.require_writer()
            signature = await writer.publish_manifest(registries, tag=tag)
            console.print(f"Manifest submitted: {signature}")
            result = await writer.await_confirmation(signature)
            console.print(f"Confirmation: {result.status.value}")
        finally:
            await service.close()

    _run(_publish())


if __name__ == "__main__":
    app()
