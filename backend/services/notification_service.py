"""
Compliance Case Hub - Notification Service

Fire-and-forget notifications for workflow transitions.

An Audience selects recipients by one of:
- user_id:    a single user (e.g. the job's assigned person)
- capability: every user holding a capability (e.g. kyc.dlmro)
- role:       every user with a role name (e.g. admin)

notify() never raises. Failures are logged and dropped so a notification
problem can never block compliance progress.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from services.actors import ADMIN_ROLE, Capability, capability_user_query, role_user_query
from services.approval_engine import utcnow_iso

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    title: str
    description: str
    category: str
    related_entity: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Audience:
    user_id: Optional[str] = None
    capability: Optional[Capability] = None
    role: Optional[str] = None

    @classmethod
    def user(cls, user_id: str) -> "Audience":
        return cls(user_id=str(user_id))

    @classmethod
    def holders_of(cls, capability: Capability) -> "Audience":
        return cls(capability=capability)

    @classmethod
    def admins(cls) -> "Audience":
        return cls(role=ADMIN_ROLE)

    def to_user_query(self) -> Dict[str, Any]:
        """Mongo filter over the users collection."""
        if self.user_id is not None:
            return {"id": self.user_id}
        if self.capability is not None:
            return capability_user_query(self.capability)
        if self.role is not None:
            return role_user_query(self.role)
        raise ValueError("Audience has no selector")

    def describe(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        if self.capability is not None:
            return f"capability:{self.capability.value}"
        return f"role:{self.role}"


class Notifier(ABC):

    @abstractmethod
    async def notify(self, event: NotificationEvent, audience: Audience) -> None:
        """Deliver `event` to `audience`. Must not raise."""


# =============================================================================
# MONGODB NOTIFIER
# =============================================================================

class MongoNotifier(Notifier):
    """
    Stores one notification document per event with a recipients array
    resolved from the users collection. Nothing is stored when no user
    matches the audience.
    """

    def __init__(self, db):
        self.db = db

    async def create_indexes(self) -> None:
        await self.db.notifications.create_index("id", unique=True)
        await self.db.notifications.create_index("recipients.user")
        await self.db.notifications.create_index("created_at")

    async def notify(self, event: NotificationEvent, audience: Audience) -> None:
        try:
            users = await self.db.users.find(audience.to_user_query(), {"_id": 0, "id": 1}).to_list(None)
            recipients = [{"user": u["id"], "read": False} for u in users if u.get("id")]
            if not recipients:
                logger.info("No recipients for notification '%s' (%s)", event.title, audience.describe())
                return

            await self.db.notifications.insert_one({
                "id": str(uuid.uuid4()),
                **event.to_dict(),
                "recipients": recipients,
                "created_at": utcnow_iso(),
            })
            logger.debug("Notification '%s' sent to %d users", event.title, len(recipients))
        except Exception as e:
            logger.error("Error creating notification '%s' for %s: %s", event.title, audience.describe(), e)

    async def get_user_notifications(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Notifications addressed to a user, newest first, with a per-user read flag."""
        docs = await self.db.notifications.find(
            {"recipients.user": user_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(limit)

        notifications = []
        for doc in docs:
            recipient = next((r for r in doc.get("recipients", []) if r.get("user") == user_id), {})
            notifications.append({
                "id": doc["id"],
                "title": doc["title"],
                "description": doc["description"],
                "category": doc.get("category"),
                "related_entity": doc.get("related_entity", {}),
                "created_at": doc.get("created_at"),
                "status": "read" if recipient.get("read") else "unread",
            })
        return notifications

    async def mark_as_read(self, user_id: str, notification_ids: Optional[List[str]] = None) -> int:
        """Mark the given notifications (or all of them) read for one user."""
        query: Dict[str, Any] = {"recipients.user": user_id}
        if notification_ids:
            query["id"] = {"$in": list(notification_ids)}
        result = await self.db.notifications.update_many(
            query, {"$set": {"recipients.$.read": True}}
        )
        return result.modified_count

    async def get_unread_count(self, user_id: str) -> int:
        return await self.db.notifications.count_documents(
            {"recipients": {"$elemMatch": {"user": user_id, "read": False}}}
        )

    async def remove_notification(self, user_id: str, notification_id: str) -> bool:
        """Drop one notification from a user's feed. Other recipients keep it."""
        result = await self.db.notifications.update_one(
            {"id": notification_id, "recipients.user": user_id},
            {"$pull": {"recipients": {"user": user_id}}},
        )
        if result.modified_count == 0:
            return False
        await self._purge_orphans()
        return True

    async def clear_all(self, user_id: str) -> int:
        """Drop every notification from a user's feed."""
        result = await self.db.notifications.update_many(
            {"recipients.user": user_id},
            {"$pull": {"recipients": {"user": user_id}}},
        )
        if result.modified_count:
            await self._purge_orphans()
        return result.modified_count

    async def _purge_orphans(self) -> None:
        # Notifications nobody can see any more
        await self.db.notifications.delete_many({"recipients": {"$size": 0}})


# =============================================================================
# IN-MEMORY NOTIFIER
# =============================================================================

class InMemoryNotifier(Notifier):
    """Records every (event, audience) pair. Used in tests and demos."""

    def __init__(self):
        self.sent: List[Tuple[NotificationEvent, Audience]] = []

    async def notify(self, event: NotificationEvent, audience: Audience) -> None:
        logger.info("[NOTIFY] %s -> %s", event.title, audience.describe())
        self.sent.append((event, audience))
