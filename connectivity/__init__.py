"""Connectivity gate - reachability and remote call timeouts."""

from connectivity.gate import (
    ConnectivityGate,
    ConnectivityProbe,
    TcpProbe,
    HttpHealthProbe,
    StaticProbe,
)

__all__ = [
    "ConnectivityGate",
    "ConnectivityProbe",
    "TcpProbe",
    "HttpHealthProbe",
    "StaticProbe",
]
