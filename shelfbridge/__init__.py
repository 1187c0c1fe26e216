"""
ShelfBridge - Sync reading progress from Audiobookshelf to Hardcover
"""

__version__ = "1.0.0"

from .audiobookshelf_client import AudiobookshelfClient
from .book_cache import ProgressCache
from .config import Config
from .hardcover_client import HardcoverClient
from .rate_gate import RateGate
from .sync_manager import SyncManager

__all__ = [
    "AudiobookshelfClient",
    "Config",
    "HardcoverClient",
    "ProgressCache",
    "RateGate",
    "SyncManager",
]
