"""
Entry point for running botwatch via `python -m botwatch`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config


def main():
    """Run the monitor server."""
    uvicorn.run(
        "botwatch.main:app",
        host=config.host,
        port=config.port,
        reload=False,
        log_config=None,  # Keep the handlers botwatch.main installs
    )


if __name__ == "__main__":
    main()
