"""
Directory watch for the credential store.

Turns filesystem notifications into a single ordered stream of
(change, path) calls so the pool reconciles one event at a time.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchfiles import Change, awatch

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[Change, Path], Awaitable[None]]


def _order(item: tuple[Change, str]) -> tuple[int, str]:
    # Deletions first so an atomic replace (delete + add of one name) ends loaded
    change, path = item
    return (0 if change == Change.deleted else 1, path)


async def watch_directory(
    directory: Path,
    stop_event: asyncio.Event,
    on_change: ChangeHandler,
    debounce_ms: int = 50,
):
    """Feed changes under `directory` to `on_change` until `stop_event` is set."""
    logger.info(f"Watching credential directory: {directory}")

    async for changes in awatch(
        directory,
        stop_event=stop_event,
        debounce=debounce_ms,
        recursive=False,
    ):
        for change, path in sorted(changes, key=_order):
            try:
                await on_change(change, Path(path))
            except Exception as e:
                logger.error(f"Failed to handle {change.name} for {Path(path).name}: {e}")

    logger.info("Credential directory watch stopped")
