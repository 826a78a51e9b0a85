"""AgentDeck Web Server - entry point for running the HTTP API."""

import logging
import os

logger = logging.getLogger(__name__)


def start_server(host: str = "127.0.0.1", port: int = 8000, debug: bool = False) -> None:
    """Start the web server programmatically."""
    import uvicorn
    from .app import create_app

    app = create_app()
    logger.info(f"Starting AgentDeck API on {host}:{port}")
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="debug" if debug else "info",
    )


def main() -> int:
    """Entry point for the ``agentdeck-web`` script."""
    from .app import get_or_create_core

    try:
        core = get_or_create_core()
    except Exception as e:
        print(f"Error: Failed to initialize AgentDeck: {e}")
        return 1

    host = os.environ.get("HOST", core.config.server.host)
    port = int(os.environ.get("PORT", core.config.server.port))
    debug = os.environ.get("DEBUG", "false").lower() == "true"

    print(f"\n=== AgentDeck API ===\nhttp://{host}:{port}/api/docs\n")
    start_server(host=host, port=port, debug=debug)
    return 0


if __name__ == "__main__":
    exit(main())
