"""
Application entry point: `python -m mining_engine.main` serves the API.
"""

from mining_engine.api.main import app
from mining_engine.core.config import settings

__all__ = ["app"]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mining_engine.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
