"""File-backed message bus for agents that share nothing but a directory.

Writers drop one markdown file per message into the shared log directory.
Every agent runs a consumer that tails the directory, delivers the messages
addressed to it in timestamp order and checkpoints its progress in an offset
file, so restarts neither lose nor replay delivered messages.
"""

from meshbus.codec import build_filename, parse_filename
from meshbus.config import BusSettings
from meshbus.consumer import LogConsumer
from meshbus.models import Message, MessageFrontmatter
from meshbus.offsets import OffsetTracker
from meshbus.store import MessageStore
from meshbus.supervisor import BusSupervisor

__version__ = "0.1.0"

__all__ = [
    "BusSettings",
    "BusSupervisor",
    "LogConsumer",
    "Message",
    "MessageFrontmatter",
    "MessageStore",
    "OffsetTracker",
    "__version__",
    "build_filename",
    "parse_filename",
]
