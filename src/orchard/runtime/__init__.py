"""Container runtime transports.

  runtime  - RuntimeTransport / ContainerRunner protocols, request types, get_runtime()
  _cli     - CliTransport (``docker`` subprocesses)
  _api     - ApiTransport (Docker Engine API over the Unix socket)
"""

from orchard.runtime._api import ApiContainerRunner, ApiTransport
from orchard.runtime._cli import CliTransport
from orchard.runtime.runtime import (
    AttachOptions,
    BuildRequest,
    ContainerRunner,
    ContainerStatus,
    CreateRequest,
    RuntimeTransport,
    get_runtime,
    parse_inspect,
    set_runtime,
)

__all__ = [
    "ApiContainerRunner",
    "ApiTransport",
    "AttachOptions",
    "BuildRequest",
    "CliTransport",
    "ContainerRunner",
    "ContainerStatus",
    "CreateRequest",
    "RuntimeTransport",
    "get_runtime",
    "parse_inspect",
    "set_runtime",
]
