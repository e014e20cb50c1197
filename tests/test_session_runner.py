from __future__ import annotations

import asyncio
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest
from selenium.common.exceptions import TimeoutException, WebDriverException

from browser_ci.browsers import DEFAULT_MATRIX, BrowserConfiguration, FarmConnection
from browser_ci.session import (
    CONNECTION_FAILED,
    NO_STRING_RETURNED,
    PASSED,
    READINESS_POLL_INTERVAL_MS,
    READINESS_SCRIPT,
    RUN_FAILED,
    SessionOutcome,
    SessionRunner,
    classify_result,
    farm_status_script,
)

FARM = FarmConnection(local_identifier="ci-123")
DESKTOP = DEFAULT_MATRIX[0]


def _runner(driver_factory, logger, **kwargs: Any) -> SessionRunner:
    return SessionRunner("http://hub.example/wd/hub", driver_factory=driver_factory, logger=logger, **kwargs)


def _driver_calls(events: list[Any]) -> list[str]:
    return [e[1] for e in events if e[0] == "driver"]


def _status_payload(script: str) -> dict[str, Any]:
    prefix = "browserstack_executor: "
    assert script.startswith(prefix)
    return json.loads(script[len(prefix):])


@pytest.mark.parametrize(
    ("result", "status", "reason"),
    [
        ("SUCCESS", PASSED, None),
        ("Error: boom\n    at test.js:1", RUN_FAILED, "Error: boom\n    at test.js:1"),
        ("", RUN_FAILED, ""),
        (None, RUN_FAILED, NO_STRING_RETURNED),
        ({"ok": True}, RUN_FAILED, NO_STRING_RETURNED),
    ],
)
def test_classify_result(result: Any, status: str, reason: str | None) -> None:
    outcome = classify_result("cfg", result)
    assert outcome.status == status
    assert outcome.reason == reason
    assert outcome.ok is (status == PASSED)


@pytest.mark.asyncio
async def test_passing_suite_follows_the_session_protocol(events, make_driver, recording_logger) -> None:
    seen_caps: list[dict[str, Any]] = []

    def factory(url: str, caps: dict[str, Any]):
        seen_caps.append(caps)
        return make_driver(result="SUCCESS")

    outcome = await _runner(factory, recording_logger).run(BrowserConfiguration.local_browser(), 1122)

    assert outcome.ok
    assert outcome.name == "local browser"
    assert seen_caps == [{"acceptSslCerts": True, "acceptInsecureCerts": True}]
    driver_events = [e for e in events if e[0] == "driver"]
    assert driver_events == [
        ("driver", "set_script_timeout", 900.0),
        ("driver", "get", "https://bs-local.com:1122/zaplib/web/test_suite"),
        ("driver", "execute_async_script", ("runAllTests3x", READINESS_POLL_INTERVAL_MS)),
        ("driver", "quit"),
    ]


def test_readiness_script_polls_for_the_entry_point() -> None:
    """Checks the script wiring only; a page whose entry point appears late is run in test_live_browser."""
    script = " ".join(READINESS_SCRIPT.split())
    assert "const entryPoint = arguments[0];" in script
    assert "const intervalMs = arguments[1];" in script
    assert "const done = arguments[arguments.length - 1];" in script
    assert "const interval = setInterval(() => { if (typeof window[entryPoint] === 'function') {" in script
    assert "clearInterval(interval);" in script
    assert script.rstrip().endswith("}, intervalMs);")
    assert ".then(() => done('SUCCESS'), (err) => done(String((err && err.stack) || err)));" in script
    assert READINESS_POLL_INTERVAL_MS == 10


@pytest.mark.asyncio
async def test_delayed_entry_point_is_still_detected(events, make_driver, recording_logger) -> None:
    # The in-page harness becomes ready well after navigation finished.
    driver = make_driver(result="SUCCESS", on_script=lambda: time.sleep(0.3))
    runner = _runner(lambda url, caps: driver, recording_logger, script_timeout=30.0)

    outcome = await runner.run(DESKTOP, 1122)

    assert outcome.ok
    assert ("driver", "set_script_timeout", 30.0) in events


@pytest.mark.asyncio
async def test_failing_suite_is_run_failed_with_reason(make_driver, recording_logger) -> None:
    driver = make_driver(result="AssertionError: expected 1 to equal 2")
    outcome = await _runner(lambda url, caps: driver, recording_logger).run(DESKTOP, 1122)

    assert outcome.status == RUN_FAILED
    assert outcome.reason == "AssertionError: expected 1 to equal 2"


@pytest.mark.asyncio
async def test_connection_failure_is_never_run_failed(events, recording_logger) -> None:
    def factory(url: str, caps: dict[str, Any]):
        raise WebDriverException("Could not reach hub")

    outcome = await _runner(factory, recording_logger, farm=FARM).run(DESKTOP, 1122, report_to_farm=True)

    assert outcome.status == CONNECTION_FAILED
    assert "Could not reach hub" in (outcome.reason or "")
    # No session identity exists, so nothing is reported to the farm.
    assert _driver_calls(events) == []
    errors = [e for e in events if e[0] == "log" and e[1] == "error"]
    assert errors and errors[0][2] == "Connection error"
    assert errors[0][3]["browser"] == DESKTOP.name


@pytest.mark.asyncio
async def test_script_timeout_is_run_failed_and_session_released(events, make_driver, recording_logger) -> None:
    driver = make_driver(script_error=TimeoutException("script timeout"))
    outcome = await _runner(lambda url, caps: driver, recording_logger).run(DESKTOP, 1122)

    assert outcome.status == RUN_FAILED
    assert "TimeoutException" in (outcome.reason or "")
    assert _driver_calls(events)[-1] == "quit"


@pytest.mark.asyncio
async def test_farm_capabilities_and_pass_report(events, make_driver, recording_logger) -> None:
    seen_caps: list[dict[str, Any]] = []

    def factory(url: str, caps: dict[str, Any]):
        seen_caps.append(caps)
        return make_driver(result="SUCCESS")

    outcome = await _runner(factory, recording_logger, farm=FARM).run(DESKTOP, 1122, report_to_farm=True)

    assert outcome.ok
    caps = seen_caps[0]
    assert caps["acceptSslCerts"] is True
    assert caps["bstack:options"]["localIdentifier"] == "ci-123"
    assert caps["bstack:options"]["local"] == "true"

    reports = [e[2] for e in events if e[:2] == ("driver", "execute_script")]
    assert len(reports) == 1
    assert _status_payload(reports[0]) == {
        "action": "setSessionStatus",
        "arguments": {"status": "passed", "reason": ""},
    }


@pytest.mark.asyncio
async def test_failure_is_logged_before_farm_report_even_if_report_throws(
    events, make_driver, recording_logger
) -> None:
    driver = make_driver(result="Error: broken", report_error=WebDriverException("report endpoint down"))
    outcome = await _runner(lambda url, caps: driver, recording_logger, farm=FARM).run(
        DESKTOP, 1122, report_to_farm=True
    )

    assert outcome.status == RUN_FAILED
    assert outcome.reason == "Error: broken"

    failure_log = next(i for i, e in enumerate(events) if e[0] == "log" and e[2] == "Tests failed")
    report_call = next(i for i, e in enumerate(events) if e[:2] == ("driver", "execute_script"))
    report_warning = next(i for i, e in enumerate(events) if e[0] == "log" and e[2] == "Farm status report failed")
    assert failure_log < report_call < report_warning
    assert events[failure_log][3]["reason"] == "Error: broken"

    payload = _status_payload(events[report_call][2])
    assert payload["arguments"] == {"status": "failed", "reason": "Error: broken"}
    assert _driver_calls(events)[-1] == "quit"


@pytest.mark.asyncio
async def test_no_farm_report_without_flag(events, make_driver, recording_logger) -> None:
    driver = make_driver(result="Error: broken")
    await _runner(lambda url, caps: driver, recording_logger).run(DESKTOP, 1122, report_to_farm=False)

    assert "execute_script" not in _driver_calls(events)


@pytest.mark.asyncio
async def test_release_failure_is_warning_and_keeps_outcome(events, make_driver, recording_logger) -> None:
    driver = make_driver(result="SUCCESS", quit_error=WebDriverException("session already gone"))
    outcome = await _runner(lambda url, caps: driver, recording_logger).run(DESKTOP, 1122)

    assert outcome.ok
    warnings = [e for e in events if e[0] == "log" and e[1] == "warning"]
    assert [w[2] for w in warnings] == ["Failed to release session"]


def test_status_script_is_valid_json_for_any_reason() -> None:
    outcome = SessionOutcome.run_failed("cfg", 'Error: "quoted"\n\tat line')
    payload = _status_payload(farm_status_script(outcome))
    assert payload["arguments"]["reason"] == 'Error: "quoted"\n\tat line'


@pytest.mark.asyncio
async def test_sessions_run_concurrently_on_the_executor(events, make_driver, recording_logger) -> None:
    # Both scripts must be in flight at once for the barrier to release.
    barrier = threading.Barrier(2, timeout=5)
    executor = ThreadPoolExecutor(max_workers=2)
    try:
        runner = _runner(
            lambda url, caps: make_driver(result="SUCCESS", on_script=barrier.wait),
            recording_logger,
            executor=executor,
        )
        outcomes = await asyncio.gather(runner.run(DEFAULT_MATRIX[0], 1122), runner.run(DEFAULT_MATRIX[1], 1122))
    finally:
        executor.shutdown(wait=True)

    assert [o.ok for o in outcomes] == [True, True]


def test_entry_url_uses_named_host() -> None:
    runner = SessionRunner("http://hub", entry_path="suite/index.html", farm_hostname="localhost")
    assert runner.entry_url(8443) == "https://localhost:8443/suite/index.html"
