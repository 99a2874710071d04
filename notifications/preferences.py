"""
Per-user notification preferences, created lazily with every flag on.

Concurrent first reads for the same user may both try to create the record;
the store's uniqueness constraint on user_id makes one of them lose, and the
loser simply re-reads the winner's record.
"""

import logging
from typing import Optional

from core.data_store import DataStore, get_data_store
from core.errors import DuplicateKeyError, StorageError
from core.models import NotificationPreference, PreferenceUpdate, utcnow

logger = logging.getLogger("preferences")


class PreferenceStore:
    """Read-mostly access to NotificationPreference records."""

    def __init__(self, data_store: Optional[DataStore] = None):
        self.data_store = data_store or get_data_store()

    def get(self, user_id: str) -> NotificationPreference:
        """Return the user's preferences, creating the default record if needed."""
        existing = self.data_store.find_preference(user_id)
        if existing is not None:
            return existing

        try:
            created = self.data_store.insert_preference(NotificationPreference(user_id=user_id))
            logger.info(f"Created default notification preferences for user {user_id}")
            return created
        except DuplicateKeyError:
            # Lost the creation race; the other writer's record is authoritative
            existing = self.data_store.find_preference(user_id)
            if existing is None:
                raise StorageError(f"Preferences for user {user_id} vanished after conflict")
            return existing

    def update(self, user_id: str, changes: PreferenceUpdate) -> NotificationPreference:
        """
        Merge the supplied fields into the user's preferences.

        Fields not present in `changes` keep their previous values, including
        individual event flags.
        """
        current = self.get(user_id)
        supplied = changes.model_dump(exclude_unset=True, exclude_none=True)

        event_changes = supplied.pop("events", None) or {}
        events = current.events.model_copy(update=event_changes)
        updated = current.model_copy(update={**supplied, "events": events, "updated_at": utcnow()})

        self.data_store.save_preference(updated)
        logger.info(f"Updated notification preferences for user {user_id}: {sorted(supplied) + sorted(event_changes)}")
        return updated
