"""
Icon Provider Classes

Sources of user icon bytes, tried in priority order by the icon service. The
stored upload wins; the fallback image always answers.
"""

import hashlib
import os
from abc import ABC, abstractmethod
from typing import Optional

from core.logging_config import get_logger
from core.storage import StorageSession

logger = get_logger(__name__)

# Icon Priority System (Higher number = Higher priority)
ICON_PRIORITY = {
    "stored": 10,  # User uploaded icon
    "fallback": 1,  # Lowest: shared default image
}

DEFAULT_FALLBACK_ICON = b"""<svg width="120" height="120" xmlns="http://www.w3.org/2000/svg">
  <circle cx="60" cy="60" r="60" fill="rgb(204,204,204)"/>
  <circle cx="60" cy="46" r="22" fill="#ffffff"/>
  <ellipse cx="60" cy="104" rx="38" ry="28" fill="#ffffff"/>
</svg>
"""


def icon_hash(image: bytes) -> str:
    """Hex SHA-256 digest of icon bytes, used as the icon's ETag"""
    return hashlib.sha256(image).hexdigest()


class IconProvider(ABC):
    """Abstract base class for all icon providers"""

    @abstractmethod
    async def get_icon(self, tx: StorageSession, user_id: int) -> Optional[bytes]:
        """Icon bytes for a user, or None when this source has none."""
        pass

    @property
    @abstractmethod
    def priority(self) -> int:
        """Provider priority (higher = preferred)"""
        pass

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Source identifier for this provider"""
        pass


class StoredIconProvider(IconProvider):
    """Icons uploaded by users"""

    @property
    def priority(self) -> int:
        return ICON_PRIORITY["stored"]

    @property
    def source_name(self) -> str:
        return "stored"

    async def get_icon(self, tx: StorageSession, user_id: int) -> Optional[bytes]:
        return await tx.get_icon_image(user_id)


class FallbackIconProvider(IconProvider):
    """Default image for users without an upload (always works)"""

    def __init__(self, image: Optional[bytes] = None):
        self.image = image if image is not None else self._load_image()

    @property
    def priority(self) -> int:
        return ICON_PRIORITY["fallback"]

    @property
    def source_name(self) -> str:
        return "fallback"

    async def get_icon(self, tx: StorageSession, user_id: int) -> Optional[bytes]:
        return self.image

    @property
    def hash(self) -> str:
        return icon_hash(self.image)

    def _load_image(self) -> bytes:
        path = os.getenv("FALLBACK_ICON_PATH")
        if not path:
            return DEFAULT_FALLBACK_ICON
        with open(path, "rb") as f:
            image = f.read()
        logger.info(f"Loaded fallback icon from {path}", extra={"bytes": len(image)})
        return image
