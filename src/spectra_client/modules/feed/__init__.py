"""Provider event decoding, classification and formatting."""

from .dispatcher import EventDispatcher
from .formatting import format_message

__all__ = ["EventDispatcher", "format_message"]
