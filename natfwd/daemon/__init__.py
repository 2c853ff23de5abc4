"""HTTP service exposing NAT-PMP port mapping."""

from natfwd.daemon.api_server import APIServer
from natfwd.daemon.main import ServiceMain, run_server

__all__ = ["APIServer", "ServiceMain", "run_server"]
