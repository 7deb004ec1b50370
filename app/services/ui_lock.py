from typing import Set
from app.core.logging_config import logger


class UiLock:
    """
    Navigation lock asserted while an onboarding flow is mounted.

    Owned by the controller registry and passed to each controller, which
    acquires it for its own session key on mount and releases it on every
    unmount path. A session only ever sees its own hold, so one tab (or one
    user) never keeps the lock asserted for another.
    """

    def __init__(self):
        self._holders: Set[str] = set()

    def __len__(self) -> int:
        return len(self._holders)

    def is_held_by(self, holder: str) -> bool:
        return holder in self._holders

    def acquire(self, holder: str) -> None:
        if holder not in self._holders:
            self._holders.add(holder)
            logger.debug(f"UI lock acquired by {holder} ({len(self._holders)} holders)")

    def release(self, holder: str) -> None:
        if holder in self._holders:
            self._holders.discard(holder)
            logger.debug(f"UI lock released by {holder} ({len(self._holders)} holders)")
