"""
FastAPI application entry point for the identity mirror.

    uvicorn main:app --reload
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

from identity_mirror.app import create_app  # noqa: E402
from identity_mirror.config.settings import get_settings  # noqa: E402

settings = get_settings()

# Configure structured logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development",
    )
