from __future__ import annotations

import socket
from typing import Any

import pytest

from browser_ci.certs import CertificatePair, generate_self_signed_certificate


class RecordingLogger:
    """structlog-like logger appending ("log", level, event, fields) to a shared list."""

    def __init__(self, events: list[Any], context: dict[str, Any] | None = None):
        self.events = events
        self.context = dict(context or {})

    def bind(self, **kwargs: Any) -> "RecordingLogger":
        return RecordingLogger(self.events, {**self.context, **kwargs})

    def _log(self, level: str, event: str, **kwargs: Any) -> None:
        self.events.append(("log", level, event, {**self.context, **kwargs}))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log("error", event, **kwargs)


class FakeDriver:
    """Stands in for a selenium WebDriver session; records every call."""

    def __init__(
        self,
        events: list[Any],
        *,
        result: Any = "SUCCESS",
        script_error: Exception | None = None,
        report_error: Exception | None = None,
        quit_error: Exception | None = None,
        on_script: Any = None,
    ):
        self.events = events
        self.result = result
        self.script_error = script_error
        self.report_error = report_error
        self.quit_error = quit_error
        self.on_script = on_script

    def set_script_timeout(self, seconds: float) -> None:
        self.events.append(("driver", "set_script_timeout", seconds))

    def get(self, url: str) -> None:
        self.events.append(("driver", "get", url))

    def execute_async_script(self, script: str, *args: Any) -> Any:
        self.events.append(("driver", "execute_async_script", args))
        if self.on_script is not None:
            self.on_script()
        if self.script_error is not None:
            raise self.script_error
        return self.result

    def execute_script(self, script: str, *args: Any) -> Any:
        self.events.append(("driver", "execute_script", script))
        if self.report_error is not None:
            raise self.report_error
        return None

    def quit(self) -> None:
        self.events.append(("driver", "quit"))
        if self.quit_error is not None:
            raise self.quit_error


@pytest.fixture()
def events() -> list[Any]:
    return []


@pytest.fixture()
def recording_logger(events: list[Any]) -> RecordingLogger:
    return RecordingLogger(events)


@pytest.fixture()
def make_driver(events: list[Any]):
    def _make(**kwargs: Any) -> FakeDriver:
        return FakeDriver(events, **kwargs)

    return _make


@pytest.fixture(scope="session")
def certificate() -> CertificatePair:
    return generate_self_signed_certificate(["localhost", "bs-local.com"])


@pytest.fixture()
def free_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = int(s.getsockname()[1])
    s.close()
    return port
