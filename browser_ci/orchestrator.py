"""Runs the test suite across the browser matrix against one asset server."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import structlog

from .asset_server import AssetServer
from .browsers import BrowserConfiguration, FarmConnection, check_unique_names, load_matrix
from .certs import generate_self_signed_certificate
from .config import CIConfig
from .errors import ConfigurationError, TestsFailedError
from .session import SessionOutcome, SessionRunner


ServerFactory = Callable[[str, int], Awaitable[Any]]


class Orchestrator:
    """Coordinates the asset server and the concurrent browser sessions."""

    def __init__(
        self,
        config: CIConfig,
        *,
        server_factory: ServerFactory | None = None,
        runner: Any = None,
        logger: Any = None,
    ):
        self.config = config
        self.server_factory = server_factory or self._start_asset_server
        self.runner = runner
        self.logger = logger or structlog.get_logger(__name__)

    async def _start_asset_server(self, server_root: str, server_port: int) -> Any:
        certificate = generate_self_signed_certificate(self.config.hostnames)
        server = AssetServer(
            server_root,
            server_port,
            certificate,
            host=self.config.server_host,
            log_level=self.config.server_log_level,
            logger=self.logger,
        )
        return await server.start()

    def browser_configurations(self, farm: FarmConnection | None) -> list[BrowserConfiguration]:
        if farm is None:
            return [BrowserConfiguration.local_browser()]
        return check_unique_names(load_matrix(self.config.matrix_path))

    async def execute(
        self,
        server_root: str | Path,
        server_port: int,
        farm: FarmConnection | None = None,
    ) -> list[SessionOutcome]:
        """Serve ``server_root``, run every configuration, and stop the server.

        Returns the outcomes when all passed.

        Raises:
            TestsFailedError: at least one configuration did not pass.
            ProvisioningError, BindError, ConfigurationError: startup failed;
                no session was started.
        """
        if self.runner is None and not self.config.webdriver_url:
            raise ConfigurationError("A WebDriver URL is required")

        configs = self.browser_configurations(farm)
        mode = "farm" if farm is not None else "local"
        self.logger.info("Starting browser test run", mode=mode, configurations=len(configs))

        handle = await self.server_factory(str(server_root), server_port)
        executor = ThreadPoolExecutor(max_workers=max(2, len(configs)), thread_name_prefix="webdriver")
        try:
            runner = self.runner or SessionRunner.from_config(self.config, farm, executor, self.logger)
            if farm is None:
                outcomes = [await runner.run(configs[0], handle.port, report_to_farm=False)]
            else:
                outcomes = await self._run_all(runner, configs, handle.port)
        finally:
            await handle.stop(self.config.shutdown_grace_seconds)
            executor.shutdown(wait=False)

        self._log_outcomes(outcomes)
        if not all(o.ok for o in outcomes):
            raise TestsFailedError(outcomes)
        return outcomes

    async def _run_all(
        self,
        runner: Any,
        configs: Sequence[BrowserConfiguration],
        server_port: int,
    ) -> list[SessionOutcome]:
        # No short-circuit: every session is already billed and its diagnostics matter.
        tasks = [
            asyncio.create_task(runner.run(config, server_port, report_to_farm=True), name=f"session:{config.name}")
            for config in configs
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: list[SessionOutcome] = []
        for config, result in zip(configs, results):
            if isinstance(result, BaseException):
                self.logger.error("Session task crashed", browser=config.name, error=repr(result))
                outcomes.append(SessionOutcome.run_failed(config.name, f"{type(result).__name__}: {result}"))
            else:
                outcomes.append(result)
        return outcomes

    def _log_outcomes(self, outcomes: Sequence[SessionOutcome]) -> None:
        for outcome in outcomes:
            if outcome.ok:
                self.logger.info("Browser configuration passed", browser=outcome.name)
            else:
                self.logger.error(
                    "Browser configuration failed",
                    browser=outcome.name,
                    status=outcome.status,
                    reason=outcome.reason,
                )
        passed = sum(1 for o in outcomes if o.ok)
        self.logger.info("Browser test run completed", total=len(outcomes), passed=passed, failed=len(outcomes) - passed)
