"""
Presentation surface that records what the operator should be seeing.

The desktop client this replaces changed its window title and raised modal
dialogs. Here every notification is logged and kept on a board that the
feed gateway serves on ``GET /status``.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections import deque
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Presenter(Protocol):
    """Receives user-facing notifications from the session connector."""

    def notify_title(self, text: str) -> None: ...

    def notify_error(self, title: str, message: str) -> None: ...


class ErrorNotice(BaseModel):
    title: str
    message: str
    raised_utc: dt.datetime = Field(default_factory=lambda: dt.datetime.now(tz=dt.UTC))


class StatusBoard:
    """In-memory presenter keeping the latest title and recent error dialogs."""

    def __init__(
        self,
        *,
        initial_title: str = "Spectra Client",
        max_errors: int = 20,
        max_titles: int = 50,
    ) -> None:
        self._title = initial_title
        self._titles: deque[str] = deque(maxlen=max_titles)
        self._errors: deque[ErrorNotice] = deque(maxlen=max_errors)
        self._player_name: str | None = None

    @property
    def title(self) -> str:
        return self._title

    @property
    def titles(self) -> list[str]:
        """Recently shown titles, oldest first."""
        return list(self._titles)

    @property
    def errors(self) -> list[ErrorNotice]:
        return list(self._errors)

    @property
    def player_name(self) -> str | None:
        return self._player_name

    def notify_title(self, text: str) -> None:
        self._title = text
        self._titles.append(text)
        logger.info("%s", text)

    def notify_error(self, title: str, message: str) -> None:
        self._errors.append(ErrorNotice(title=title, message=message))
        logger.error("%s: %s", title, message)

    def set_player_name(self, name: str) -> None:
        self._player_name = name
        logger.info("Detected player name: %s", name)

    def snapshot(self) -> dict[str, Any]:
        return {
            "title": self._title,
            "player_name": self._player_name,
            "errors": [notice.model_dump(mode="json") for notice in self._errors],
        }


__all__ = ["ErrorNotice", "Presenter", "StatusBoard"]
