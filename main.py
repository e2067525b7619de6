#!/usr/bin/env python3
"""
Flow Gateway - Main Entry Point

Administers the Flow credential pool and runs generations from the
command line.

Usage:
    # Run the pool: refresh worker + credential directory watch
    python main.py serve

    # Pool administration
    python main.py stats
    python main.py add cookie.txt
    python main.py remove <credential-id>

    # Generate an image or a video
    python main.py generate --model veo_3_1_t2v_fast_landscape --prompt "A red fox in the snow" --stream
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("flowgateway")


async def serve():
    """Load credentials and keep them fresh until interrupted."""
    from core.config import get_config
    from services.credentials import CredentialPool
    from services.transport import FlowClient

    config = get_config()
    for issue in config.validate():
        logger.warning(f"Config: {issue}")

    async with FlowClient(config.api) as client:
        pool = CredentialPool(client=client, config=config.pool)

        loaded = await pool.load()
        logger.info(f"Loaded {loaded} credentials from {config.pool.credential_dir}")
        await pool.refresh_all()

        pool.start_refresh_worker()
        await pool.start_file_watch()

        logger.info(f"Pool running: {pool.ready_count()}/{pool.count()} ready. Press Ctrl+C to stop")

        stop_event = asyncio.Event()

        def handle_signal():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal)

        await stop_event.wait()
        await pool.stop()

    logger.info("Pool stopped")


async def show_stats():
    from services.credentials import CredentialPool

    async with CredentialPool() as pool:
        await pool.load()
    print(json.dumps(pool.stats(), indent=2, ensure_ascii=False))


async def add_credential(source: str) -> bool:
    from core.config import get_config
    from services.credentials import CredentialError, CredentialPool
    from services.transport import FlowClient

    config = get_config()
    raw = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")

    async with FlowClient(config.api) as client:
        async with CredentialPool(client=client, config=config.pool) as pool:
            await pool.load()
            try:
                credential_id = await pool.add_from_raw_input(raw)
            except CredentialError as e:
                print(f"Error: {e}", file=sys.stderr)
                return False
            # Let the first token exchange finish before exiting
            await pool.wait_idle()

    print(credential_id)
    return True


async def remove_credential(credential_id: str) -> bool:
    from services.credentials import CredentialError, CredentialPool

    async with CredentialPool() as pool:
        await pool.load()
        try:
            await pool.remove(credential_id)
        except CredentialError as e:
            print(f"Error: {e}", file=sys.stderr)
            return False
    return True


async def generate(model: str, prompt: str, image_paths: list[str], stream: bool) -> bool:
    """Run one generation and print the artifact reference."""
    from core.config import get_config
    from services.credentials import CredentialPool
    from services.generation import GenerationHandler, GenerationRequest
    from services.transport import FlowClient

    config = get_config()
    images = [Path(p).read_bytes() for p in image_paths]
    request = GenerationRequest(model=model, prompt=prompt, images=images, stream=stream)

    async with FlowClient(config.api) as client:
        async with CredentialPool(client=client, config=config.pool) as pool:
            await pool.load()
            handler = GenerationHandler(pool, client, config)

            result = None
            if stream:
                async for chunk in handler.stream(request):
                    print(chunk.content, end="" if not chunk.final else "\n", flush=True)
                    result = chunk.result
            else:
                result = await handler.generate(request)
                print(result.url or result.error)

            await handler.wait_idle()

    return bool(result and result.success)


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        description="Flow Gateway - Flow credential pool and generation runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Keep the pool fresh and watch the credential directory
    python main.py serve

    # Add a credential from a cookie file (or '-' for stdin)
    python main.py add cookie.txt

    # Generate a first/last frame video
    python main.py generate --model veo_3_1_i2v_s_fast_fl_landscape \\
        --prompt "Slow dolly in" --image first.png --image last.png --stream
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("serve", help="Run refresh worker and file watch")
    subparsers.add_parser("stats", help="Show pool statistics")

    add_parser = subparsers.add_parser("add", help="Add a credential")
    add_parser.add_argument("source", help="File holding a cookie string or session token, '-' for stdin")

    remove_parser = subparsers.add_parser("remove", help="Remove a credential")
    remove_parser.add_argument("credential_id", help="Full credential ID")

    gen_parser = subparsers.add_parser("generate", help="Generate an image or video")
    gen_parser.add_argument("--model", "-m", required=True, help="Model name")
    gen_parser.add_argument("--prompt", "-p", required=True, help="Text prompt")
    gen_parser.add_argument("--image", "-i", action="append", default=[], help="Input image path (repeatable)")
    gen_parser.add_argument("--stream", "-s", action="store_true", help="Print progress as it arrives")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        asyncio.run(serve())

    elif args.command == "stats":
        asyncio.run(show_stats())

    elif args.command == "add":
        sys.exit(0 if asyncio.run(add_credential(args.source)) else 1)

    elif args.command == "remove":
        sys.exit(0 if asyncio.run(remove_credential(args.credential_id)) else 1)

    elif args.command == "generate":
        ok = asyncio.run(generate(args.model, args.prompt, args.image, args.stream))
        sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
