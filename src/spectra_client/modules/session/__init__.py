"""Ingest session lifecycle and operator notifications."""

from .connector import SessionConnector
from .state import CloseReason, ConnectionState
from .status_board import StatusBoard

__all__ = ["CloseReason", "ConnectionState", "SessionConnector", "StatusBoard"]
