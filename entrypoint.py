import uvicorn

from constants import DISCONNECT_GRACE_SECONDS, HOST, LOG_FILE, LOG_LEVEL, PORT, REDIS_DB, REDIS_HOST, REDIS_PORT, RELOAD
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def main():
    """Serve the room API with uvicorn using the environment's settings."""
    setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
    logger.info(f"Room store at redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")
    logger.info(f"Emptied rooms are kept for {DISCONNECT_GRACE_SECONDS}s after the last disconnect")
    logger.info(f"Starting planning poker room server on {HOST}:{PORT}")
    uvicorn.run("app:app", host=HOST, port=PORT, reload=RELOAD)


if __name__ == "__main__":
    main()
