import logging
import time
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class QrCodeCache:
    """
    Latest WhatsApp QR payload per user, held in process memory only.

    Nothing here is persisted: entries are lost on restart and every process
    keeps its own copy, so a user's QR code is only visible on the process
    that runs that user's poll task. Deployments with more than one worker
    must pin a user's WhatsApp requests to a single process.
    """

    def __init__(self):
        self._entries: Dict[str, Tuple[str, float]] = {}

    def set(self, user_id: str, qr_code: str) -> None:
        self._entries[user_id] = (qr_code, time.time())

    def get(self, user_id: str) -> Optional[str]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        return entry[0]

    def updated_at(self, user_id: str) -> Optional[float]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        return entry[1]

    def clear(self, user_id: str) -> None:
        if self._entries.pop(user_id, None) is not None:
            logger.debug(f"Cleared cached QR code for user {user_id}.")

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
