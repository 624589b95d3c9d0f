#!/usr/bin/env python
"""
Run the Perplex chat API server for local development.
"""
import uvicorn

from src.perplex.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "src.perplex.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
