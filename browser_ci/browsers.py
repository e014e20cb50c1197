"""Browser configurations and the capability payloads sent to WebDriver."""

from __future__ import annotations

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

logger = structlog.get_logger(__name__)

# Provider-scoped capability key for BrowserStack options.
FARM_OPTIONS_KEY = "bstack:options"
LOCAL_BROWSER_NAME = "local browser"


class BrowserConfiguration(BaseModel):
    """One OS/browser (or device) combination to run the suite on."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(description="Unique, human-readable configuration name")
    browser_name: Optional[str] = Field(default=None, description="WebDriver browserName")
    browser_version: Optional[str] = Field(default=None, description="WebDriver browserVersion")
    os: Optional[str] = Field(default=None, description="Desktop operating system")
    os_version: Optional[str] = Field(default=None, description="OS version (desktop or device)")
    device_name: Optional[str] = Field(default=None, description="Mobile device name")
    extra_options: Mapping[str, Any] = Field(
        default_factory=dict, validate_default=True, description="Provider pass-through options"
    )
    local: bool = Field(default=False, description="Synthetic configuration for a locally attached driver")

    @field_validator("extra_options")
    @classmethod
    def _freeze_extra_options(cls, v: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(v))

    def __hash__(self) -> int:
        # Equal configurations share a name.
        return hash((type(self), self.name))

    @model_validator(mode="after")
    def _check_required_fields(self) -> "BrowserConfiguration":
        if not self.name.strip():
            raise ValueError("name must not be empty")
        if self.local:
            return self
        if not self.browser_name:
            raise ValueError(f"{self.name}: browser_name is required")
        if self.device_name:
            if not self.os_version:
                raise ValueError(f"{self.name}: os_version is required for device configurations")
        else:
            missing = [f for f in ("os", "os_version", "browser_version") if not getattr(self, f)]
            if missing:
                raise ValueError(f"{self.name}: missing {', '.join(missing)}")
        return self

    @classmethod
    def local_browser(cls) -> "BrowserConfiguration":
        return cls(name=LOCAL_BROWSER_NAME, local=True)


@dataclass(frozen=True)
class FarmConnection:
    """Connection details for the browser farm. Its presence selects farm mode."""

    local_identifier: str
    project_name: str = "Zaplib"
    build_name: str = "test_suite"
    selenium_version: str = "3.5.2"


def build_capabilities(config: BrowserConfiguration, farm: FarmConnection | None = None) -> dict[str, Any]:
    """Assemble the WebDriver capability payload for ``config``.

    The asset server's certificate is self-signed, so certificate errors are
    always accepted regardless of the configuration.
    """
    caps: dict[str, Any] = {}
    if not config.local:
        caps["browserName"] = config.browser_name
        if config.browser_version:
            caps["browserVersion"] = config.browser_version

        options: dict[str, Any] = {}
        if config.os:
            options["os"] = config.os
        if config.os_version:
            options["osVersion"] = config.os_version
        if config.device_name:
            options["deviceName"] = config.device_name
        options.update(config.extra_options)
        if farm is not None:
            options.update(
                {
                    "projectName": farm.project_name,
                    "buildName": farm.build_name,
                    "local": "true",
                    "networkLogs": "true",
                    "seleniumVersion": farm.selenium_version,
                    "localIdentifier": farm.local_identifier,
                }
            )
        caps[FARM_OPTIONS_KEY] = options

    caps["acceptSslCerts"] = True
    caps["acceptInsecureCerts"] = True
    return caps


# Firefox, Safari and iOS are left out until they run the suite reliably.
DEFAULT_MATRIX: tuple[BrowserConfiguration, ...] = (
    BrowserConfiguration(
        name="OS X Monterey, Chrome",
        browser_name="Chrome",
        browser_version="latest",
        os="OS X",
        os_version="Monterey",
        extra_options={"consoleLogs": "verbose"},
    ),
    BrowserConfiguration(
        name="OS X Monterey, Edge",
        browser_name="Edge",
        browser_version="latest",
        os="OS X",
        os_version="Monterey",
    ),
    BrowserConfiguration(
        name="Windows 11, Chrome",
        browser_name="Chrome",
        browser_version="latest",
        os="Windows",
        os_version="11",
        extra_options={"consoleLogs": "verbose"},
    ),
    BrowserConfiguration(
        name="Windows 11, Edge",
        browser_name="Edge",
        browser_version="latest",
        os="Windows",
        os_version="11",
    ),
    BrowserConfiguration(
        name="Samsung Galaxy S21, Android 11.0",
        browser_name="Android",
        os_version="11.0",
        device_name="Samsung Galaxy S21",
        extra_options={"appiumVersion": "1.22.0", "consoleLogs": "verbose"},
    ),
)


def check_unique_names(configs: Iterable[BrowserConfiguration]) -> list[BrowserConfiguration]:
    configs = list(configs)
    seen: set[str] = set()
    for config in configs:
        if config.name in seen:
            raise ConfigurationError(f"Duplicate browser configuration name: {config.name}")
        seen.add(config.name)
    return configs


def load_matrix(matrix_path: Optional[str] = None) -> list[BrowserConfiguration]:
    """Return the browser matrix from a YAML list, or the built-in default."""
    if not matrix_path:
        return list(DEFAULT_MATRIX)

    if not os.path.exists(matrix_path):
        raise ConfigurationError(f"Browser matrix file not found: {matrix_path}")

    with open(matrix_path, "r") as f:
        raw = yaml.safe_load(f) or []
    if isinstance(raw, dict):
        raw = raw.get("browsers", [])
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError(f"Browser matrix must be a non-empty list: {matrix_path}")

    configs = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Browser matrix entry {i} must be a mapping")
        try:
            configs.append(BrowserConfiguration(**entry))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid browser matrix entry {i}: {e}") from e

    logger.info("Loaded browser matrix", file=matrix_path, count=len(configs))
    return check_unique_names(configs)
