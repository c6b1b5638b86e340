import logging
import sys

import uvicorn

from gateway import vars as gateway_vars
from gateway.routing.table import RouteConfigError

logger = logging.getLogger("uvicorn.error")


def main() -> int:
    try:
        port = int(gateway_vars.PORT)
    except ValueError:
        logger.error(f"Invalid PORT {gateway_vars.PORT!r}")
        return 1
    if not 0 < port < 65536:
        logger.error(f"PORT out of range: {port}")
        return 1

    try:
        from gateway.server import app
    except RouteConfigError as e:
        logger.error(f"Invalid route configuration: {e}")
        return 1

    logger.info(f"Starting OzNet gateway on {gateway_vars.HOST}:{port}")
    uvicorn.run(app, host=gateway_vars.HOST, port=port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
