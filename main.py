import logging
import os

from birthday_mail_queue.config import load_settings
from birthday_mail_queue.server import serve

# Configure logging level from environment
log_level = os.getenv("BMQ_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    settings = load_settings()
    logging.getLogger().setLevel(getattr(logging, settings["log_level"], logging.INFO))
    serve(settings)
