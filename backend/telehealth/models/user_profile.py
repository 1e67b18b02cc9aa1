from typing import Optional, Union

from pydantic import BaseModel, Field

from telehealth.services.document_store import DocumentSnapshot


class UserProfile(BaseModel):
    """ملف المستخدم العام (users/<uid>) كما يظهر للطرف الآخر في الجلسة."""
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    specialization: Optional[str] = None
    years_of_experience: Optional[Union[int, str]] = Field(None, alias="yearsOfExperience")
    education: Optional[str] = None
    is_verified: Optional[bool] = Field(None, alias="isVerified")

    class Config:
        populate_by_name = True

    @classmethod
    def from_snapshot(cls, snap: DocumentSnapshot) -> "UserProfile":
        return cls(id=snap.id, **snap.to_dict())
