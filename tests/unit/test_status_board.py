import logging

from spectra_client.modules.session.status_board import StatusBoard


def test_status_board_tracks_titles_and_errors(caplog) -> None:
    board = StatusBoard(max_errors=2)

    with caplog.at_level(logging.INFO, logger="spectra_client.modules.session.status_board"):
        board.notify_title("Spectra Client | Connecting...")
        board.notify_error("Spectra Client - Error", "first")
        board.notify_error("Spectra Client - Error", "second")
        board.notify_error("Spectra Client - Error", "third")
        board.set_player_name("Observer#EUW")

    snapshot = board.snapshot()
    assert snapshot["title"] == "Spectra Client | Connecting..."
    assert snapshot["player_name"] == "Observer#EUW"
    assert [error["message"] for error in snapshot["errors"]] == ["second", "third"]
    assert board.titles == ["Spectra Client | Connecting..."]
    assert any(record.levelno == logging.ERROR for record in caplog.records)


def test_status_board_keeps_recent_titles_only() -> None:
    board = StatusBoard(max_titles=2)

    for text in ("Connecting...", "Authenticating...", "Connected"):
        board.notify_title(f"Spectra Client | {text}")

    assert board.title == "Spectra Client | Connected"
    assert board.titles == ["Spectra Client | Authenticating...", "Spectra Client | Connected"]
