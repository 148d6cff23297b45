"""
Spectra Client - game telemetry bridge

Receives Valorant match events from the instrumentation feed, shapes them
into ingest messages, and streams them to the Spectra ingest server over an
authenticated WebSocket session.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
