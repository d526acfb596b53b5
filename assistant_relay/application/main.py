import sys

import structlog
import uvicorn

from assistant_relay.application.websocket.ws_server import create_app
from assistant_relay.infrastructure.config.settings import ConfigurationError, load_settings
from assistant_relay.infrastructure.observability.logging import setup_logging
from assistant_relay.infrastructure.process.pid_lock import AlreadyRunningError, InstanceLock

logger = structlog.get_logger(__name__)


def main() -> int:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        setup_logging()
        for problem in e.problems:
            logger.error("Invalid configuration", problem=problem)
        return 1

    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    try:
        with InstanceLock(settings.workspace.data_dir):
            uvicorn.run(
                create_app(settings),
                host=settings.server.host,
                port=settings.server.port,
                log_config=None
            )
    except AlreadyRunningError as e:
        logger.error("Refusing to start", reason=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
