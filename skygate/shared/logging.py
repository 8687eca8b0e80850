"""
SKYGATE — Shared Logging Configuration

Centralized logging setup for all SKYGATE components.
"""

import logging
import sys
from typing import Optional


# =============================================================================
# Log Format
# =============================================================================
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
CLUSTER_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(cluster)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class ClusterFilter(logging.Filter):
    """Stamps every record with the cluster name so log lines can be told apart."""

    def __init__(self, cluster_name: str) -> None:
        super().__init__()
        self.cluster_name = cluster_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.cluster = self.cluster_name
        return True


# =============================================================================
# Setup
# =============================================================================
def configure_logging(level: str = "INFO", cluster_name: str = "") -> logging.Handler:
    """
    Configure root logging for the gateway process.

    Args:
        level: Log level name (DEBUG, INFO, ...)
        cluster_name: Optional cluster name added to every line

    Returns:
        The installed console handler
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if cluster_name:
        handler.addFilter(ClusterFilter(cluster_name))
        handler.setFormatter(logging.Formatter(CLUSTER_LOG_FORMAT, DATE_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # paramiko logs every negotiation step at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    return handler


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a logger for a component.

    Args:
        name: Logger name (typically one of the component names below)
        level: Optional log level override

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


# =============================================================================
# Banner
# =============================================================================
def get_banner(ssh_address: str, debug_address: str, endpoints: int) -> str:
    """Generate the SKYGATE startup banner."""
    return f"""
  ____  _  ____   ______    _  _____ _____
 / ___|| |/ /\\ \\ / / ___|  / \\|_   _| ____|
 \\___ \\| ' /  \\ V / |  _  / _ \\ | | |  _|
  ___) | . \\   | || |_| |/ ___ \\| | | |___
 |____/|_|\\_\\  |_| \\____/_/   \\_\\_| |_____|

  SSH         : {ssh_address}
  Diagnostics : {debug_address}
  Endpoints   : {endpoints} control plane(s)
"""
