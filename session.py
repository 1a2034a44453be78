import json
import logging
from typing import Optional

from kvstore import KeyValueStore
from schemas import User

logger = logging.getLogger(__name__)

SESSION_KEY = "app_current_user"


class Session:
    """
    The current-user pointer. Owned by whoever builds the StorageService;
    persisted in one key/value slot through load()/save().
    """

    def __init__(self, store: KeyValueStore, key: str = SESSION_KEY):
        self.store = store
        self.key = key
        self.user: Optional[User] = None

    def load(self) -> Optional[User]:
        raw = self.store.get_item(self.key)
        if raw is None:
            self.user = None
            return None
        try:
            data = json.loads(raw)
            self.user = User.model_validate(data) if data else None
        except ValueError as e:
            # a corrupt slot means "logged out", never a crash at startup
            logger.error(f"Error loading current user: {e}")
            self.user = None
        return self.user

    def save(self) -> None:
        payload = self.user.model_dump() if self.user else None
        self.store.set_item(self.key, json.dumps(payload))

    def set_user(self, user: Optional[User]) -> None:
        self.user = user
        self.save()

    def clear(self) -> None:
        self.set_user(None)
