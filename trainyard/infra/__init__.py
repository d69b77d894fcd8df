"""Transport layer: HTTP for the marketplace API, SSH for remote execution."""

from trainyard.infra.http import HttpClient, HttpError
from trainyard.infra.ssh import SSHTransport, is_reachable

__all__ = ["HttpClient", "HttpError", "SSHTransport", "is_reachable"]
