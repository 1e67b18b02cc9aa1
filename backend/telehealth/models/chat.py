from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from telehealth.constants import Role
from telehealth.services.document_store import DocumentSnapshot


def parse_iso(value: str | None) -> datetime:
    """Parse a client ISO-8601 timestamp; unparseable values sort first."""
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class ChatMessage(BaseModel):
    """رسالة دردشة داخل جلسة الموعد (append-only).

    `created_at` is the sender's clock and drives display order; `timestamp` is
    the store's commit time and is kept for auditing only.
    """
    id: Optional[str] = None
    sender_id: str = Field(alias="senderId")
    sender_name: Optional[str] = Field(None, alias="senderName")
    sender_role: Role = Field(alias="senderRole")
    body: str = Field(alias="message")
    created_at: str = Field(alias="createdAt")
    timestamp: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True

    @classmethod
    def from_snapshot(cls, snap: DocumentSnapshot) -> "ChatMessage":
        return cls(id=snap.id, **snap.to_dict())

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)

    def sort_key(self) -> Tuple[datetime, str]:
        return parse_iso(self.created_at), self.id or ""
