from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .errors import UserNotFoundError
from .storage import InMemoryStorage


class UserRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"


class CreateUserRequest(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=200)
    role: UserRole = UserRole.MEMBER


class User(BaseModel):
    id: UUID
    email: EmailStr
    name: str
    role: UserRole = UserRole.MEMBER
    reward_points: int = 0
    total_points_earned: int = 0
    total_points_spent: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserRepository:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def create(self, request: CreateUserRequest) -> User:
        user_data = {
            "id": uuid4(),
            "email": request.email,
            "name": request.name,
            "role": request.role,
            "reward_points": 0,
            "total_points_earned": 0,
            "total_points_spent": 0,
            "created_at": datetime.now(timezone.utc),
        }
        with self.storage.transaction():
            user_data = self.storage.users.insert(user_data["id"], user_data)
        return User(**user_data)

    def get(self, user_id: UUID) -> User:
        return User(**self.get_record(user_id))

    def get_record(self, user_id: UUID) -> dict:
        user_data = self.storage.users.get(user_id)
        if not user_data:
            raise UserNotFoundError(f"User {user_id} not found")
        return user_data

    def find(self, user_id: UUID) -> Optional[User]:
        user_data = self.storage.users.get(user_id)
        return User(**user_data) if user_data else None
