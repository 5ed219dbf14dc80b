from .client import FlypassPortalClient, LoginRejectedError, PortalCredentials, PortalStepError
from .diagnostics import DiagnosticHook, FileDiagnostics, NullDiagnostics
from .engine import BrowserEngine, EngineTimeoutError, LaunchOptions
from .selectors import FlypassSelectors

__all__ = [
    "FlypassPortalClient",
    "PortalCredentials",
    "PortalStepError",
    "LoginRejectedError",
    "DiagnosticHook",
    "FileDiagnostics",
    "NullDiagnostics",
    "BrowserEngine",
    "EngineTimeoutError",
    "LaunchOptions",
    "FlypassSelectors",
]
