"""Command-line entry point for the browser CI runner.

To run against a local browser:
    $ chromedriver --port=9515
    $ browser-ci --webdriver-url http://localhost:9515
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError

from .browsers import FarmConnection
from .config import CIConfig, load_config
from .errors import BindError, ConfigurationError, ProvisioningError, TestsFailedError
from .orchestrator import Orchestrator

EXIT_OK = 0
EXIT_TESTS_FAILED = 1
EXIT_STARTUP_FAILED = 2


def configure_logging(log_level: str = "INFO"):
    """Configure structured logging once for the whole process."""
    level = getattr(logging, str(log_level).strip().upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("browser_ci")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="browser-ci",
        description="Run the in-browser test suite on a local browser or a browser farm",
    )
    parser.add_argument("--webdriver-url", help="HTTP(S) URL to connect to the Selenium WebDriver to")
    parser.add_argument("--browserstack-local-identifier", help="Local identifier for BrowserStack")
    parser.add_argument("--root", help="Directory to serve (default: current directory)")
    parser.add_argument("--port", type=int, help="Port for the HTTPS asset server")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"browser-ci: {e}", file=sys.stderr)
        return EXIT_STARTUP_FAILED

    overrides = {
        "webdriver_url": args.webdriver_url,
        "browserstack_local_identifier": args.browserstack_local_identifier,
        "server_root": args.root,
        "server_port": args.port,
        "log_level": args.log_level,
    }
    try:
        config = CIConfig(**{**config.model_dump(), **{k: v for k, v in overrides.items() if v is not None}})
    except ValidationError as e:
        print(f"browser-ci: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_STARTUP_FAILED

    logger = configure_logging(config.log_level)

    if not config.webdriver_url:
        logger.error("Missing WebDriver URL (--webdriver-url or WEBDRIVER_URL)")
        return EXIT_STARTUP_FAILED

    farm = None
    if config.farm_mode:
        farm = FarmConnection(
            local_identifier=config.browserstack_local_identifier,
            project_name=config.project_name,
            build_name=config.build_name,
            selenium_version=config.selenium_version,
        )

    orchestrator = Orchestrator(config, logger=logger)
    try:
        asyncio.run(orchestrator.execute(config.server_root, config.server_port, farm))
    except TestsFailedError as e:
        logger.error("At least one test failed", error=str(e))
        return EXIT_TESTS_FAILED
    except (ProvisioningError, BindError, ConfigurationError) as e:
        logger.error("Startup failed", error_type=type(e).__name__, error=str(e))
        return EXIT_STARTUP_FAILED

    logger.info("All browser configurations passed")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
