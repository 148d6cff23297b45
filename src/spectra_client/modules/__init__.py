"""
Spectra client modules grouped by responsibility.
"""

from .dashboard.feed_gateway import FeedGateway
from .feed.dispatcher import EventDispatcher
from .session.connector import SessionConnector
from .session.status_board import StatusBoard
from .status.prometheus_exporter import PrometheusExporter

__all__ = [
    "EventDispatcher",
    "FeedGateway",
    "PrometheusExporter",
    "SessionConnector",
    "StatusBoard",
]
