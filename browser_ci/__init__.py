"""Cross-browser runner for the in-browser test suite."""

from .asset_server import AssetServer, ServerHandle
from .browsers import BrowserConfiguration, FarmConnection
from .certs import CertificatePair, generate_self_signed_certificate
from .config import CIConfig, load_config
from .orchestrator import Orchestrator
from .session import SessionOutcome, SessionRunner

__all__ = [
    "AssetServer",
    "BrowserConfiguration",
    "CIConfig",
    "CertificatePair",
    "FarmConnection",
    "Orchestrator",
    "ServerHandle",
    "SessionOutcome",
    "SessionRunner",
    "generate_self_signed_certificate",
    "load_config",
]
