"""
SKYGATE SSH gateway.

The listener workers connect to, the paramiko callbacks behind it, worker
command parsing and reverse port forwarding.
"""

from .commands import WorkerCommand, parse_command
from .forwarding import PortForwards
from .interface import GatewayServerInterface
from .server import Gateway, GatewayConnection

__all__ = [
    "Gateway",
    "GatewayConnection",
    "GatewayServerInterface",
    "PortForwards",
    "WorkerCommand",
    "parse_command",
]
