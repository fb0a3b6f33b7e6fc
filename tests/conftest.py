import os
import pathlib
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import tools`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from tools.chaincheck.config import ConfigManager  # noqa: E402
from tools.chaincheck.transport import TransportError  # noqa: E402


ZERO_HASH = "0" * 64


class ScriptedTransport:
    """
    Request transport that answers from a script keyed by (method, url).

    A scripted value that is an exception is raised; a callable is called
    with the JSON body. Unscripted requests fail with HTTP 404.
    """

    def __init__(self, script: Optional[Dict[Tuple[str, str], Any]] = None):
        self.script: Dict[Tuple[str, str], Any] = dict(script or {})
        self.calls: List[Tuple[str, str, Any, Optional[float]]] = []

    def request(self, method: str, path_or_url: str, json_body: Any = None, timeout: Optional[float] = None) -> Any:
        self.calls.append((method, path_or_url, json_body, timeout))
        key = (method, path_or_url)
        if key not in self.script:
            raise TransportError(f"{method} {path_or_url} returned HTTP 404", url=path_or_url, status_code=404)
        outcome = self.script[key]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(json_body)
        return outcome

    @property
    def urls(self) -> List[str]:
        return [url for _, url, _, _ in self.calls]


@pytest.fixture
def scripted() -> Callable[..., ScriptedTransport]:
    return ScriptedTransport


@pytest.fixture
def zero_hash() -> str:
    return ZERO_HASH


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Each test starts from default configuration with no CHAINCHECK_* overrides."""
    for name in list(os.environ):
        if name.startswith("CHAINCHECK_"):
            monkeypatch.delenv(name, raising=False)
    ConfigManager._instance = None
    yield
    ConfigManager._instance = None
