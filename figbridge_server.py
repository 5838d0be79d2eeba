"""figbridge — Main Entry Point

Starts the plugin WebSocket bridge, registers the Figma tools and serves
MCP over stdio until EOF or a signal.

Shutdown ordering: stdio loop → pending requests failed → plugin socket
closed → listener stopped → health endpoint stopped. The bridge is always
shut down in a finally block so no caller is left waiting.
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
import signal
import stat
import sys

# Make core/models/modules importable when launched by an MCP host from another cwd
_ROOT_DIR = os.path.dirname(os.path.abspath(__file__))
if _ROOT_DIR not in sys.path:
    sys.path.insert(0, _ROOT_DIR)

from core.dispatcher import ToolDispatcher
from core.figma_bridge import FigmaBridge
from core.health import HealthServer
from core.mcp_server import FigBridgeMCPServer
from core.tool_registry import ToolRegistry
from models.models import BridgeConfig, ReplacePolicy
from modules.figma_tools import FigmaToolsModule

SERVER_NAME = "figbridge"
SERVER_VERSION = "0.1.0"


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Log to stderr (stdout is reserved for MCP JSON-RPC)."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        # O_NOFOLLOW + fstat: refuse symlinks and non-regular files
        log_path = os.path.realpath(log_file)
        try:
            open_flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
            if hasattr(os, 'O_NOFOLLOW'):
                open_flags |= os.O_NOFOLLOW
            log_fd = os.open(log_path, open_flags, 0o644)
            if not stat.S_ISREG(os.fstat(log_fd).st_mode):
                os.close(log_fd)
                print(f"WARNING: --log-file {log_file!r} is not a regular file, ignoring",
                      file=sys.stderr)
            else:
                handlers.append(logging.StreamHandler(os.fdopen(log_fd, "a")))
        except OSError as e:
            print(f"WARNING: --log-file {log_file!r} open failed: {e}, ignoring",
                  file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="figbridge — MCP server bridging AI agents to the Figma Plugin API",
    )
    parser.add_argument("--host", type=str, default=None,
                        help="Plugin WebSocket bind host (env FIGMA_WS_HOST, default: localhost)")
    parser.add_argument("--port", type=int, default=None,
                        help="Plugin WebSocket port (env FIGMA_WS_PORT, default: 8080)")
    parser.add_argument("--timeout", type=float, default=None, dest="request_timeout",
                        help="Per-request timeout in seconds (env FIGMA_BRIDGE_TIMEOUT, default: 30)")
    parser.add_argument("--context-timeout", type=float, default=None,
                        help="getContext timeout in seconds (default: 10)")
    parser.add_argument(
        "--replace-policy", type=str, default=None,
        choices=[p.value for p in ReplacePolicy],
        help="What to do when a second plugin connects (env FIGMA_BRIDGE_REPLACE_POLICY, "
             "default: last-connected-wins)",
    )
    parser.add_argument("--health-port", type=int, default=None,
                        help="Serve GET /health and /status on this port (disabled by default)")
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Log file path (in addition to stderr)")
    return parser


async def run(config: BridgeConfig, health_port: int | None, logger: logging.Logger) -> None:
    bridge = FigmaBridge(config)
    registry = ToolRegistry()
    registry.register_all(FigmaToolsModule(bridge).register_tools())
    server = FigBridgeMCPServer(
        ToolDispatcher(registry), registry,
        server_name=SERVER_NAME, server_version=SERVER_VERSION,
    )
    health: HealthServer | None = None

    loop = asyncio.get_running_loop()
    stdio_task: asyncio.Task | None = None

    def _on_signal(sig: signal.Signals) -> None:
        logger.info("Shutting down (signal=%s)...", sig.name)
        server.request_shutdown()
        if stdio_task is not None:
            stdio_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to KeyboardInterrupt for SIGINT
            logger.debug("Signal handler for %s not supported on this platform", sig.name)

    try:
        await bridge.start()
        if health_port is not None:
            health = HealthServer(bridge, config.host, health_port,
                                  server_name=SERVER_NAME, server_version=SERVER_VERSION)
            await health.start()

        logger.info(
            "%s v%s started: plugin endpoint=ws://%s:%d tools=%d timeout=%.0fs policy=%s",
            SERVER_NAME, SERVER_VERSION, config.host, bridge.port,
            registry.tool_count, config.request_timeout, config.replace_policy.value,
        )

        stdio_task = asyncio.create_task(server.run_stdio(), name="mcp-stdio")
        try:
            await stdio_task
        except asyncio.CancelledError:
            if not server.shutting_down:
                raise
    finally:
        await bridge.shutdown()
        if health is not None:
            await health.stop()


def main():
    parser = build_parser()
    args = parser.parse_args()

    configure_logging(args.log_level, args.log_file)
    logger = logging.getLogger("figbridge.server")

    try:
        config = BridgeConfig.from_env(
            host=args.host,
            port=args.port,
            request_timeout=args.request_timeout,
            context_timeout=args.context_timeout,
            replace_policy=args.replace_policy,
        )
    except ValueError as e:
        parser.error(str(e))

    try:
        asyncio.run(run(config, args.health_port, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except OSError as e:
        # Bind failure at startup is the one transport error that is fatal
        logger.critical("Cannot start plugin endpoint on port %d: %s", config.port, e)
        sys.exit(1)
    except Exception as e:
        logger.critical("Server startup failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
