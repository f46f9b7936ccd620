import uvicorn  # type: ignore

from agilepm.core import config
from agilepm.utils import get_logger

log = get_logger(__name__)

if __name__ == "__main__":
    log.info("Running access-control service on %s:%d", config.SERVER_HOST, config.SERVER_PORT)
    uvicorn.run(
        "agilepm.main:app",
        reload=config.SERVER_RELOAD,
        host=config.SERVER_HOST,
        port=config.SERVER_PORT,
    )
