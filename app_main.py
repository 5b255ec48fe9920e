"""Application entry point for the StudySphere web service."""

from __future__ import annotations

import argparse
import asyncio
import sys

from studysphere.constants.about import APP_NAME, APP_VERSION
from studysphere.core.config import Settings
from studysphere.core.errors import StudySphereError
from studysphere.core.study_manager import StudyManager
from studysphere.server.api_server import run_server
from studysphere.utils.logging_config import configure_logging


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="studysphere", description=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument(
        "--promote-admin",
        metavar="EMAIL",
        help="grant the admin role to an existing account and exit",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Load settings, initialize logging and serve the API."""
    args = _parse_args(argv)
    settings = Settings()
    logger = configure_logging(settings.LOG_LEVEL)

    try:
        study_manager = StudyManager.from_settings(settings)
        if args.promote_admin:
            asyncio.run(study_manager.promote_to_admin(args.promote_admin))
            logger.info("%s is now an admin", args.promote_admin)
            return
    except StudySphereError as exc:
        logger.error("%s", exc.message)
        sys.exit(1)

    logger.info("Starting %s on http://%s:%s/", APP_NAME, settings.HOST, settings.PORT)
    run_server(study_manager, settings)


if __name__ == "__main__":
    main()
