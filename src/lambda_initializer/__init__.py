"""Lambda initializer package.

The CDK construct lives in :mod:`lambda_initializer.construct` and is not
imported here, so the initializer image can import the handler without
``aws-cdk-lib`` installed.
"""

from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
import re

from .core import (
    InitEvent,
    InitializerRequest,
    broker_resource_pattern,
    build_request,
    creds_secret_name,
    function_name,
    lambda_handler,
    physical_resource_id,
    validate_memory_size,
)

_pyproject = Path(__file__).resolve().parent.parent.parent / "pyproject.toml"


def _read_version(path: Path) -> str:
    text = path.read_text(encoding="utf-8")
    match = re.search(r'^version\s*=\s*"([^"]+)"', text, flags=re.MULTILINE)
    if not match:
        raise RuntimeError("version not found in pyproject.toml")
    return match.group(1)


try:
    __version__ = version("lambda-initializer")
except PackageNotFoundError:
    __version__ = _read_version(_pyproject)

__all__ = [
    "lambda_handler",
    "InitEvent",
    "InitializerRequest",
    "build_request",
    "physical_resource_id",
    "function_name",
    "broker_resource_pattern",
    "validate_memory_size",
    "creds_secret_name",
    "__version__",
]
