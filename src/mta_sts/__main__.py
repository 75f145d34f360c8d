import asyncio
import logging
import sys
from typing import Optional, Sequence

from src.shared.config_validator import ConfigLoader
from src.shared.errors import ConfigurationConflict
from src.shared.observability import PLAIN_FORMAT, ObservabilitySettings, configure_logging

from .server import serve

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format=PLAIN_FORMAT)
    try:
        config = ConfigLoader().load(argv)
    except ConfigurationConflict as e:
        for error in e.errors:
            print(error, file=sys.stderr)
        return 2

    configure_logging(
        ObservabilitySettings(log_level=config.log_level.value, json_logs=config.json_logs)
    )
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass
    except OSError as e:
        logger.error(f"Server stopped: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
