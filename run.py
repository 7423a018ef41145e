#!/usr/bin/env python3
"""Run the SCANAGENTS API with uvicorn (reloads on code changes outside production)"""

import uvicorn

from scanagents.core.config import get_settings


def main():
    settings = get_settings()
    uvicorn.run(
        "scanagents.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_debug,
        reload_dirs=["scanagents"] if settings.is_debug else None,
        log_level="debug" if settings.is_debug else "info",
    )


if __name__ == "__main__":
    main()
