"""Per-conversation log channel for the agent dispatch system.

One process-wide, append-only channel is shared by every conversation. Each
line carries the conversation id so interleaved output from concurrent
conversations stays attributable.
"""

from collections import deque
from datetime import datetime
from typing import Callable, List, Optional
import threading

import structlog

from lm_dispatch.config import get_settings

logger = structlog.get_logger(__name__)

LineListener = Callable[[str], None]


class OutputChannel:
    """Append-only, bounded, thread-safe line buffer"""

    def __init__(self, name: str, max_lines: Optional[int] = None):
        self.name = name
        self._lines = deque(maxlen=max_lines)
        self._listeners: List[LineListener] = []
        self._lock = threading.Lock()

    def append_line(self, line: str):
        with self._lock:
            self._lines.append(line)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(line)
            except Exception as e:
                logger.error("Error in output channel listener", channel=self.name, error=str(e))

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def clear(self):
        with self._lock:
            self._lines.clear()

    def add_listener(self, listener: LineListener):
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: LineListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


_channel: Optional[OutputChannel] = None
_channel_lock = threading.Lock()


def get_output_channel() -> OutputChannel:
    """Get or create the output channel for agent logs"""
    global _channel
    if _channel is None:
        with _channel_lock:
            if _channel is None:
                settings = get_settings()
                _channel = OutputChannel(settings.output_channel_name, max_lines=settings.log_max_lines)
    return _channel


def format_prefix(conversation_id) -> str:
    timestamp = datetime.now().strftime("%H:%M:%S")
    return f"[{timestamp}] [Conv-{conversation_id}] "


def log_to_channel(conversation_id, message) -> None:
    """Log a message with the conversation id prefix on every line"""
    channel = get_output_channel()
    prefix = format_prefix(conversation_id)
    text = "" if message is None else str(message)

    for line in text.splitlines() or [""]:
        channel.append_line(prefix + line)
        logger.info(line, conversation_id=conversation_id)


def clear_log() -> None:
    """Clear the output channel; a no-op when it was never created"""
    if _channel is not None:
        _channel.clear()
