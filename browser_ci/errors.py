"""Error taxonomy for browser test runs.

Fatal errors (provisioning, bind, configuration) abort the run before any
session starts. Per-session errors are captured into that session's outcome
and only surface through ``TestsFailedError`` after every session finished.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .session import SessionOutcome


class BrowserCIError(Exception):
    """Base class for all browser CI errors."""


class ConfigurationError(BrowserCIError):
    """Invalid settings or browser matrix."""


class ProvisioningError(BrowserCIError):
    """The self-signed certificate could not be produced."""


class BindError(BrowserCIError):
    """The asset server could not load its TLS material or bind its port."""


class SessionConnectionError(BrowserCIError):
    """A remote browser session could not be opened."""


class ScriptExecutionError(BrowserCIError):
    """Navigation or the in-page test run failed inside an open session."""


class ReportingError(BrowserCIError):
    """The farm status report failed. Never changes a session outcome."""


class TestsFailedError(BrowserCIError):
    """At least one browser configuration did not pass."""

    __test__ = False

    def __init__(self, outcomes: Sequence[SessionOutcome]):
        self.outcomes = list(outcomes)
        failed = [o.name for o in self.outcomes if not o.ok]
        super().__init__(f"{len(failed)} of {len(self.outcomes)} browser configuration(s) failed: {', '.join(failed)}")
