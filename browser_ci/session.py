"""Lifecycle of one remote browser session running the in-page test suite."""

from __future__ import annotations

import asyncio
import functools
import json
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from selenium import webdriver
from selenium.webdriver.common.options import ArgOptions

from .browsers import BrowserConfiguration, FarmConnection, build_capabilities
from .config import CIConfig
from .errors import ReportingError, ScriptExecutionError, SessionConnectionError

SUCCESS_SENTINEL = "SUCCESS"
NO_STRING_RETURNED = "no string was returned"

# Fixed polling cadence for the readiness check, in milliseconds.
READINESS_POLL_INTERVAL_MS = 10

# Page load does not mean the test harness finished initializing, so the page
# is polled until the entry point exists. Arguments: entry point name, poll
# interval; the last argument is the WebDriver async callback.
READINESS_SCRIPT = r"""
const entryPoint = arguments[0];
const intervalMs = arguments[1];
const done = arguments[arguments.length - 1];
const interval = setInterval(() => {
    if (typeof window[entryPoint] === 'function') {
        clearInterval(interval);
        Promise.resolve()
            .then(() => window[entryPoint]())
            .then(() => done('SUCCESS'), (err) => done(String((err && err.stack) || err)));
    }
}, intervalMs);
"""

PASSED = "passed"
CONNECTION_FAILED = "connection_failed"
RUN_FAILED = "run_failed"


@dataclass(frozen=True)
class SessionOutcome:
    """Terminal result of one browser configuration."""

    name: str
    status: str
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == PASSED

    @classmethod
    def passed(cls, name: str) -> "SessionOutcome":
        return cls(name=name, status=PASSED)

    @classmethod
    def connection_failed(cls, name: str, reason: str) -> "SessionOutcome":
        return cls(name=name, status=CONNECTION_FAILED, reason=reason)

    @classmethod
    def run_failed(cls, name: str, reason: str) -> "SessionOutcome":
        return cls(name=name, status=RUN_FAILED, reason=reason)


def classify_result(name: str, result: Any) -> SessionOutcome:
    if result == SUCCESS_SENTINEL:
        return SessionOutcome.passed(name)
    if isinstance(result, str):
        return SessionOutcome.run_failed(name, result)
    return SessionOutcome.run_failed(name, NO_STRING_RETURNED)


def farm_status_script(outcome: SessionOutcome) -> str:
    """BrowserStack executor command marking the session passed or failed."""
    payload = {
        "action": "setSessionStatus",
        "arguments": {
            "status": "passed" if outcome.ok else "failed",
            "reason": "" if outcome.ok else (outcome.reason or ""),
        },
    }
    return "browserstack_executor: " + json.dumps(payload)


def open_remote_driver(webdriver_url: str, capabilities: dict[str, Any]) -> webdriver.Remote:
    options = ArgOptions()
    for key, value in capabilities.items():
        options.set_capability(key, value)
    return webdriver.Remote(command_executor=webdriver_url, options=options)


def _describe(exc: BaseException) -> str:
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


class SessionRunner:
    """Runs the test suite in one remote browser session per configuration.

    Every blocking WebDriver call goes through ``executor`` so that sessions
    (and the asset server sharing the event loop) never wait on each other.
    """

    def __init__(
        self,
        webdriver_url: str,
        *,
        entry_path: str = "/zaplib/web/test_suite",
        entry_point: str = "runAllTests3x",
        farm_hostname: str = "bs-local.com",
        script_timeout: float | None = 900.0,
        farm: FarmConnection | None = None,
        driver_factory: Callable[[str, dict[str, Any]], Any] | None = None,
        executor: Executor | None = None,
        logger: Any = None,
    ):
        self.webdriver_url = webdriver_url
        self.entry_path = entry_path if entry_path.startswith("/") else "/" + entry_path
        self.entry_point = entry_point
        self.farm_hostname = farm_hostname
        self.script_timeout = script_timeout
        self.farm = farm
        self.driver_factory = driver_factory or open_remote_driver
        self.executor = executor
        self.logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: CIConfig,
        farm: FarmConnection | None = None,
        executor: Executor | None = None,
        logger: Any = None,
    ) -> "SessionRunner":
        return cls(
            config.webdriver_url or "",
            entry_path=config.entry_path,
            entry_point=config.entry_point,
            farm_hostname=config.farm_hostname,
            script_timeout=config.script_timeout_seconds,
            farm=farm,
            executor=executor,
            logger=logger,
        )

    def entry_url(self, server_port: int) -> str:
        # The certificate only covers named hosts, never a literal loopback address.
        return f"https://{self.farm_hostname}:{server_port}{self.entry_path}"

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args))

    async def run(self, config: BrowserConfiguration, server_port: int, report_to_farm: bool = False) -> SessionOutcome:
        """Run the suite for ``config``. Session failures become outcomes, never exceptions."""
        log = self.logger.bind(browser=config.name)

        try:
            driver = await self._open_session(config)
        except SessionConnectionError as e:
            log.error("Connection error", error=str(e))
            return SessionOutcome.connection_failed(config.name, str(e))

        log.info("Connected to WebDriver")
        try:
            outcome = await self._run_suite(driver, config, server_port, log)
            if report_to_farm:
                try:
                    await self._report_status(driver, outcome)
                except ReportingError as e:
                    log.warning("Farm status report failed", error=str(e))
        finally:
            try:
                await self._call(driver.quit)
            except Exception as e:
                log.warning("Failed to release session", error=_describe(e))
        return outcome

    async def _open_session(self, config: BrowserConfiguration) -> Any:
        capabilities = build_capabilities(config, self.farm)
        try:
            return await self._call(self.driver_factory, self.webdriver_url, capabilities)
        except Exception as e:
            raise SessionConnectionError(_describe(e)) from e

    async def _run_suite(self, driver: Any, config: BrowserConfiguration, server_port: int, log: Any) -> SessionOutcome:
        try:
            result = await self._execute_suite(driver, server_port, log)
        except ScriptExecutionError as e:
            log.error("Run error", error=str(e))
            return SessionOutcome.run_failed(config.name, str(e))

        outcome = classify_result(config.name, result)
        if outcome.ok:
            log.info("Tests passed!")
        else:
            # Logged before any farm report so a failing report cannot hide it.
            log.error("Tests failed", reason=outcome.reason)
        return outcome

    async def _execute_suite(self, driver: Any, server_port: int, log: Any) -> Any:
        url = self.entry_url(server_port)
        try:
            if self.script_timeout:
                await self._call(driver.set_script_timeout, self.script_timeout)
            await self._call(driver.get, url)
            log.info("Running tests...", url=url)
            log.info("For console output see the browser or the farm session directly")
            return await self._call(
                driver.execute_async_script,
                READINESS_SCRIPT,
                self.entry_point,
                READINESS_POLL_INTERVAL_MS,
            )
        except Exception as e:
            raise ScriptExecutionError(_describe(e)) from e

    async def _report_status(self, driver: Any, outcome: SessionOutcome) -> None:
        try:
            await self._call(driver.execute_script, farm_status_script(outcome))
        except Exception as e:
            raise ReportingError(_describe(e)) from e
