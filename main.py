#!/usr/bin/env python3
"""HRIS Billing Service - development server entry point."""

import uvicorn

from core.config import settings


def main() -> None:
    """Serve the API with uvicorn."""
    uvicorn.run(
        "api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
