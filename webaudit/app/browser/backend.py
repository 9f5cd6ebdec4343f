"""
Browser backend contract.

The browser-driven stages (explore, test, responsive, verify) never
talk to a browser directly. They consume a BrowserBackend supplied by
the integration layer, either injected explicitly or loaded from the
WEBAUDIT_BROWSER_BACKEND import path ('package.module:factory').

IMPORTANT:
- Backend methods return structured phase data only; findings are
  produced by the finding generation engine.
- Any exception raised by a backend is converted into a failed stage
  result by the stage boundary. Its message is preserved verbatim.
"""

from __future__ import annotations

import importlib
import logging
from typing import Callable, Optional, Protocol, Sequence

from webaudit.app.schemas.phase_data import (
    PageData,
    PageDiagnosticReport,
    PageInteractionResult,
    ProbeResponse,
    ResponsivePageResult,
    Viewport,
)

logger = logging.getLogger(__name__)


class BrowserUnavailableError(RuntimeError):
    """Raised when a browser-driven stage runs without a usable backend."""


class BrowserBackend(Protocol):
    async def visit_page(self, url: str) -> PageData:
        ...

    async def diagnose_page(self, url: str) -> PageDiagnosticReport:
        ...

    async def test_interactions(self, url: str) -> PageInteractionResult:
        ...

    async def test_viewports(
        self,
        url: str,
        viewports: Sequence[Viewport],
    ) -> ResponsivePageResult:
        ...

    async def probe_endpoint(self, url: str, method: str = "GET") -> ProbeResponse:
        ...

    async def close(self) -> None:
        ...


BackendFactory = Callable[[], BrowserBackend]


def load_backend_factory(import_path: str) -> Optional[BackendFactory]:
    """
    Resolve 'package.module:factory' into a callable.

    An empty import path means no backend is configured.
    """
    if not import_path:
        return None

    module_name, _, attr = import_path.partition(":")
    if not module_name or not attr:
        raise BrowserUnavailableError(
            f"Invalid browser backend import path '{import_path}'"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise BrowserUnavailableError(
            f"Browser backend module '{module_name}' could not be imported: {exc}"
        ) from exc

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise BrowserUnavailableError(
            f"Browser backend factory '{attr}' not found in '{module_name}'"
        )

    logger.info("Using browser backend %s", import_path)
    return factory
