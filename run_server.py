"""Local entry point for the calendar API."""

import os

import uvicorn

from config.settings import settings

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 8000)),
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )
