"""AgentDeck Web Application - FastAPI app factory and shared core instance."""

import logging
from typing import Optional

from agentdeck import __version__
from agentdeck.config import Config
from agentdeck.core import AgentDeckCore
from agentdeck.utils.logs import setup_logger

logger = logging.getLogger(__name__)

# Global core instance for reuse
_core_instance: Optional[AgentDeckCore] = None


def get_or_create_core() -> AgentDeckCore:
    """Get the global core instance or create it if it doesn't exist."""
    global _core_instance

    if _core_instance is None:
        _core_instance = _create_core()

    return _core_instance


def _create_core() -> AgentDeckCore:
    try:
        config = Config.load_config()
        setup_logger(config.logs_path, config.log_file, config.log_level)
        core = AgentDeckCore(config=config)
        logger.info("AgentDeckCore initialized successfully for web interface")
        return core
    except Exception as e:
        logger.error(f"Failed to initialize AgentDeckCore: {str(e)}")
        raise


def create_app(core: Optional[AgentDeckCore] = None) -> "FastAPI":
    """Create and configure the FastAPI application."""
    from fastapi import FastAPI
    from fastapi.middleware.cors import CORSMiddleware
    from .routes import router

    core = core or get_or_create_core()

    app = FastAPI(
        title="AgentDeck",
        description="Agent conversations, streaming turns and reusable checkpoints",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=core.config.server.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.core = core
    app.include_router(router)
    return app
