"""
Entry point for the CostTrak backend.
Launches uvicorn with the FastAPI app object directly (not as a string)
so it runs the same whether started as a module or a console script.
"""

import logging

import uvicorn

from .main import app
from .config import LOG_LEVEL, PORT


def main():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
