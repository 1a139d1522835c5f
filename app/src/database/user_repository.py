import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from commons import utcnow
from configs.config import get_config
from src.database.connection import get_db

logger = logging.getLogger(__name__)
cfg = get_config()


class UserRepository:
    """Accounts that own evaluation jobs; the email is the ownership key."""

    def __init__(self):
        self._collection: Collection = get_db()[cfg.USERS_COLLECTION]

    def create_user(
        self,
        email: str,
        hashed_password: str,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a password account; emails are stored lower-cased."""
        now = utcnow()
        user_doc = {
            "email": email.lower(),
            "hashed_password": hashed_password,
            "display_name": display_name,
            "last_login_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            self._collection.insert_one(user_doc)
        except DuplicateKeyError:
            logger.warning("Registration rejected: %s already registered", email)
            raise HTTPException(status_code=400, detail="Email already registered")
        user_doc.pop("_id", None)
        return user_doc

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._collection.find_one({"email": email.lower()}, {"_id": 0})

    def record_login(self, email: str) -> bool:
        """Stamp ``last_login_at``; False when the account vanished."""
        now = utcnow()
        result = self._collection.update_one(
            {"email": email.lower()},
            {"$set": {"last_login_at": now, "updated_at": now}},
        )
        return result.matched_count > 0
