"""
Run the Stake Ledger API server.

Serves the API only; database and local store are set up on startup.
For the full service (migrations and invite sweep first):
  python -m stakeledger.main
"""

import uvicorn

from stakeledger.api import create_api_app
from stakeledger.config import settings
from stakeledger.utils.logging import setup_logging


def main():
    """Run the API server."""
    setup_logging(settings.log_level)
    app = create_api_app()

    print(f"Starting Stake Ledger API on {settings.api_host}:{settings.api_port}")
    print(f"API docs available at http://{settings.api_host}:{settings.api_port}/docs")

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
