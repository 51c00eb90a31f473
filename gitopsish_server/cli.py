"""
Command-line entry point: gitopsish-server [--config PATH].
Exit 0 after a clean shutdown, 1 when the server cannot start.
"""
import argparse
import logging
import sys

import uvicorn

from gitopsish_server.config import APP_NAME, ConfigError, Settings, load_settings
from gitopsish_server.main import create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Log in with GitHub and check whether you follow the target account.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"config file (default is $HOME/.{APP_NAME}.yaml, .json or .toml)",
    )
    return parser


def build_server(settings: Settings) -> uvicorn.Server:
    """
    uvicorn handles SIGINT/SIGTERM: stop accepting, drain in-flight requests for up to
    shutdown_timeout seconds, then close what is left.
    """
    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        timeout_keep_alive=int(settings.idle_timeout),
        timeout_graceful_shutdown=int(settings.shutdown_timeout),
        log_level=settings.log_level.lower(),
        log_config=None,
        access_log=True,
    )
    return uvicorn.Server(config)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    # httpx logs every request URL at INFO; the token exchange URL carries the client secret
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        logger.error("Startup failed: %s", e)
        return 1

    logging.getLogger().setLevel(settings.log_level)
    logger.info(
        "Configured client_id=%s target=%s session_ttl=%ss",
        settings.credentials.client_id,
        settings.credentials.target_account,
        int(settings.session_ttl),
    )

    server = build_server(settings)
    server.run()
    if not server.started:
        logger.error("Startup failed: listener on %s did not start", settings.listen_address)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
