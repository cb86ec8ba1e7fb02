"""First-install detection.

The attribution flow only runs for fresh installs; an app update must not
register a second backend user for an existing customer. The decision is
made once and persisted, so later launches (when the data directory is no
longer young) keep the original answer.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from asaflow.storage.base import StateStore

logger = logging.getLogger(__name__)

FRESH_INSTALL_WINDOW = timedelta(hours=24)


class DirectoryAgeDetector:
    """Treats the install as fresh if the app data directory is younger than a day.

    The directory's age is its birth time where the platform records one.
    Elsewhere (Linux) it is the oldest modification time among the
    directory's entries: existing files keep their timestamps when an
    update writes new ones next to them. The inode change time is never
    used, since any entry added, renamed or removed refreshes it.

    When the age cannot be determined (no birth time and an empty
    directory) the install is treated as fresh.
    """

    def __init__(
        self,
        data_dir: str | Path,
        window: timedelta = FRESH_INSTALL_WINDOW,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._data_dir = Path(data_dir)
        self._window = window
        self._clock = clock

    def created_at(self) -> datetime | None:
        """Creation time of the data directory, None if unavailable."""
        try:
            st = self._data_dir.stat()
        except OSError:
            return None

        birthtime = getattr(st, "st_birthtime", None)
        if birthtime:
            return datetime.fromtimestamp(birthtime, UTC)
        return self._oldest_entry_time()

    def _oldest_entry_time(self) -> datetime | None:
        """Earliest modification time of the directory's entries."""
        oldest: float | None = None
        try:
            with os.scandir(self._data_dir) as entries:
                for entry in entries:
                    try:
                        mtime = entry.stat(follow_symlinks=False).st_mtime
                    except OSError:
                        continue
                    if oldest is None or mtime < oldest:
                        oldest = mtime
        except OSError:
            return None

        if oldest is None:
            return None
        return datetime.fromtimestamp(oldest, UTC)

    def __call__(self) -> bool:
        created = self.created_at()
        if created is None:
            logger.info(
                f"Could not determine install type from {self._data_dir} - "
                "treating as fresh install"
            )
            return True

        age = self._clock() - created
        is_first_install = age < self._window
        logger.info(
            f"Install type determined from {self._data_dir} created "
            f"{age.total_seconds() / 3600:.1f} hours ago: "
            f"{'first install' if is_first_install else 'app update'}"
        )
        return is_first_install


InstallTypeDetector = Callable[[], bool]


async def resolve_install_type(store: StateStore, detector: InstallTypeDetector) -> bool:
    """
    Return whether this is a first install, deciding and persisting it once.

    Args:
        store: State store holding the persisted decision
        detector: Called only when no decision is stored yet

    Returns:
        True for a first install, False for an update
    """
    state = await store.load()
    if state.install_type_resolved:
        logger.debug(
            "Install type already determined: "
            f"{'first install' if state.is_first_install else 'app update'}"
        )
        return state.is_first_install

    is_first_install = detector()
    await store.set_install_type(is_first_install)
    return is_first_install
