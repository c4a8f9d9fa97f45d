from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class DrainLock:
    """Named lease that admits a single drain loop across processes.

    The lease expires on its own after ``ttl_seconds`` unless renewed, so a
    crashed holder never locks out its successors.
    """

    def __init__(self, collection: Collection, name: str, ttl_seconds: int, owner: Optional[str] = None):
        self.collection = collection
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.owner = owner or default_owner_id()

    def acquire(self) -> bool:
        """Take or renew the lease. Never blocks; False means another owner holds it."""
        now_ts = time.time()
        expires_ts = now_ts + self.ttl_seconds
        try:
            doc = self.collection.find_one_and_update(
                {
                    "_id": self.name,
                    "$or": [{"owner": self.owner}, {"expires_at_ts": {"$lte": now_ts}}],
                },
                {
                    "$set": {
                        "owner": self.owner,
                        "expires_at_ts": expires_ts,
                        "expires_at": datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds),
                    }
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # The filter missed a live lease held by someone else and the upsert collided.
            return False
        return doc is not None and doc.get("owner") == self.owner

    renew = acquire

    def release(self) -> None:
        self.collection.delete_one({"_id": self.name, "owner": self.owner})

    def holder(self) -> Optional[str]:
        doc = self.collection.find_one({"_id": self.name})
        if doc is None or doc.get("expires_at_ts", 0) <= time.time():
            return None
        return doc.get("owner")
