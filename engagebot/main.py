"""Main entry point for engagebot."""

import argparse
import asyncio
import logging
import sys

from .api import create_api_app
from .atproto_client import BlueskyClient, BlueskySender
from .config import Config, load_config
from .engine import EngagementEngine
from .sender import DryRunSender
from .services import close_db_service, init_db_service


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


def build_engine(config: Config, logger: logging.Logger) -> EngagementEngine:
    """Wire the engine to Bluesky, or to the dry-run sender when not configured."""
    source = BlueskyClient(config.bluesky) if config.bluesky else None
    if source is None:
        logger.warning("No bluesky section configured; polling only processes stored mentions")

    if config.engine.dry_run or source is None:
        sender = DryRunSender()
    else:
        sender = BlueskySender(source)

    return EngagementEngine(config, sender=sender, source=source)


async def run_api_server(args, logger, config: Config, engine: EngagementEngine) -> None:
    """Run the HTTP API."""
    import uvicorn

    port = args.port or config.api.port
    logger.info("Starting API server on %s:%d...", config.api.host, port)

    app = create_api_app(config, engine)
    uvicorn_config = uvicorn.Config(
        app,
        host=config.api.host,
        port=port,
        log_level="info" if args.verbose else "warning",
    )
    server = uvicorn.Server(uvicorn_config)
    await server.serve()


async def run_polling(args, logger, engine: EngagementEngine) -> None:
    """Run the polling loop, or one cycle with --once."""
    if args.once:
        logger.info("Running single poll cycle...")
        processed = await engine.run_once()
        logger.info("Processed %d mention(s)", processed)
    else:
        await engine.run()


async def run_combined(args, logger, config: Config, engine: EngagementEngine) -> None:
    """Run both the polling loop and the API server concurrently."""
    logger.info("Starting combined mode (polling + API)")

    polling_task = asyncio.create_task(run_polling(args, logger, engine))
    api_task = asyncio.create_task(run_api_server(args, logger, config, engine))

    # Wait for either task to complete (or fail)
    done, pending = await asyncio.wait(
        [polling_task, api_task],
        return_when=asyncio.FIRST_COMPLETED,
    )

    engine.stop()
    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    for task in done:
        task.result()


async def async_main(args, logger) -> int:
    """Load configuration, open the database and run the selected mode."""
    try:
        logger.info("Loading configuration from %s", args.config)
        config = load_config(args.config)

        logger.info("Initializing database at %s", config.database.path)
        await init_db_service(config.database.path)
        logger.info("Database initialized successfully")

        engine = build_engine(config, logger)

        if args.mode == "api":
            await run_api_server(args, logger, config, engine)
        elif args.mode == "combined":
            await run_combined(args, logger, config, engine)
        else:
            await run_polling(args, logger, engine)

        return 0

    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
    finally:
        await close_db_service()
        logger.info("Database connection closed")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Rule-based auto-replies, flagging and analytics for Bluesky mentions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Poll using ./config.yaml
  %(prog)s -c prod.yaml --once          # One cycle with another config
  %(prog)s --mode api                   # Run the HTTP API only
  %(prog)s --mode combined --port 9000  # Polling plus API on a custom port
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="YAML configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle, then exit",
    )
    parser.add_argument(
        "--mode",
        choices=["polling", "api", "combined"],
        default="polling",
        help="Run mode: polling (default), api only, or combined",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API server (default: api.port from config)",
    )

    return parser


def main() -> int:
    """Main entry point."""
    args = build_parser().parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    return asyncio.run(async_main(args, logger))


if __name__ == "__main__":
    sys.exit(main())
