"""Serve the API with uvicorn: ``python -m bridgewatch`` or the ``bridgewatch`` script."""

import uvicorn

from bridgewatch import config


def main() -> None:
    uvicorn.run(
        "bridgewatch.main:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
