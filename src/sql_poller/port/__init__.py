from sql_poller.port.cursor_store import CursorStore

__all__ = ["CursorStore"]
