import os
import logging

import uvicorn

from notify_queue.api import create_service_app
from notify_queue.config_loader import build_queue, load_settings

# Configure logging level from environment
log_level = os.getenv("NQ_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    settings = load_settings()
    # Build the queue but let the uvicorn lifespan start the workers inside its event loop
    queue = build_queue(settings)
    app = create_service_app(queue, api_token=settings.get("api_token"))
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
