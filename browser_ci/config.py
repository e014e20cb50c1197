"""Configuration management for the browser CI runner."""

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from uvicorn.config import LOG_LEVELS

from .errors import ConfigurationError


class CIConfig(BaseModel):
    """Main configuration for a browser test run."""

    # WebDriver endpoint (local chromedriver or the farm hub)
    webdriver_url: Optional[str] = Field(default=None, description="HTTP(S) URL of the Selenium WebDriver endpoint")
    browserstack_local_identifier: Optional[str] = Field(
        default=None, description="BrowserStack Local tunnel identifier; enables farm mode"
    )

    # Asset server settings
    server_root: str = Field(default=".", description="Directory served to the browsers")
    server_host: str = Field(default="0.0.0.0", description="Interface the asset server binds to")
    # Arbitrary port that nothing else in the CI uses.
    server_port: int = Field(default=1122, ge=0, le=65535, description="Port the asset server binds to")
    hostnames: list[str] = Field(
        default_factory=lambda: ["localhost", "bs-local.com"],
        description="Hostnames the self-signed certificate is valid for",
    )
    farm_hostname: str = Field(default="bs-local.com", description="Loopback-resolving hostname browsers navigate to")
    shutdown_grace_seconds: float = Field(default=30.0, description="Grace period for in-flight requests on shutdown")
    server_log_level: str = Field(default="warning", description="uvicorn log level")

    # In-page test suite
    entry_path: str = Field(default="/zaplib/web/test_suite", description="Path of the test suite page")
    entry_point: str = Field(default="runAllTests3x", description="Global async function that runs the suite")
    script_timeout_seconds: float = Field(default=900.0, description="Upper bound for the readiness poll + run")

    # Farm settings
    project_name: str = Field(default="Zaplib", description="Farm project name")
    build_name: str = Field(default="test_suite", description="Farm build name")
    selenium_version: str = Field(default="3.5.2", description="Selenium protocol version requested from the farm")
    matrix_path: Optional[str] = Field(default=None, description="YAML file overriding the built-in browser matrix")

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("server_log_level")
    @classmethod
    def _known_server_log_level(cls, v: str) -> str:
        level = v.strip().lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown uvicorn log level: {v!r}")
        return level

    @property
    def farm_mode(self) -> bool:
        return bool(self.browserstack_local_identifier)


def load_config(config_path: Optional[str] = None) -> CIConfig:
    """Load configuration from file or environment variables."""
    if config_path is None:
        config_path = os.getenv("BROWSER_CI_CONFIG", "config/browser_ci.yaml")

    config_data = {}

    # Load from file if exists
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {config_path}")

    # Override with environment variables
    env_overrides = {
        "webdriver_url": os.getenv("WEBDRIVER_URL"),
        "browserstack_local_identifier": os.getenv("BROWSERSTACK_LOCAL_IDENTIFIER"),
        "server_root": os.getenv("BROWSER_CI_ROOT"),
        "server_port": os.getenv("BROWSER_CI_PORT"),
        "script_timeout_seconds": os.getenv("BROWSER_CI_SCRIPT_TIMEOUT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }

    for key, value in env_overrides.items():
        if value is not None and value.strip():
            config_data[key] = value.strip()

    try:
        return CIConfig(**config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
