"""Feed intake and operator-facing surfaces."""

from .feed_gateway import FeedGateway

__all__ = ["FeedGateway"]
