"""
User Directory Module

Wallet holders and their saved contacts. Offline "send" transactions name
their recipient by user id or phone number; the directory resolves both.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import re
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import OfflineValidationError, UserNotFoundError
from .logging_config import get_logger


class UserRole(Enum):
    """Roles a wallet holder can operate as"""
    CONSUMER = "consumer"
    MERCHANT = "merchant"
    AGENT = "agent"


PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")


def normalize_phone(phone: str) -> str:
    """Strip spaces, dashes and brackets: '+233 24-123 4567' -> '+233241234567'"""
    return re.sub(r"[\s\-()]", "", phone or "")


@dataclass
class User(StorageRecord):
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    current_role: UserRole = UserRole.CONSUMER
    is_active: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['current_role'] = self.current_role.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['current_role'] = UserRole(data.get('current_role', 'consumer'))
        return cls(**data)


@dataclass
class Contact(StorageRecord):
    owner_id: str
    name: str
    phone: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contact':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class UserDirectory:
    """Stores users and contacts, and resolves recipients by phone"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "users"
        self.contacts_table = "contacts"
        self.logger = get_logger("offline_sync.users")

    def create_user(
        self,
        first_name: str,
        last_name: str,
        phone_number: Optional[str] = None,
        current_role: UserRole = UserRole.CONSUMER,
        user_id: Optional[str] = None
    ) -> User:
        """
        Create a wallet holder

        Raises:
            OfflineValidationError: If the phone number is malformed or already taken
        """
        if phone_number:
            phone_number = normalize_phone(phone_number)
            if not PHONE_PATTERN.match(phone_number):
                raise OfflineValidationError(f"Invalid phone number: {phone_number}")
            if self.find_by_phone(phone_number):
                raise OfflineValidationError(f"Phone number {phone_number} is already registered")

        user_id = user_id or str(uuid.uuid4())
        if self.storage.exists(self.table_name, user_id):
            raise OfflineValidationError(f"User {user_id} already exists")

        now = datetime.now(timezone.utc)
        user = User(
            id=user_id,
            created_at=now,
            updated_at=now,
            first_name=first_name,
            last_name=last_name,
            phone_number=phone_number,
            current_role=current_role
        )
        self.storage.save(self.table_name, user.id, user.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.USER_CREATED,
            entity_type="user",
            entity_id=user.id,
            user_id=user.id,
            metadata={"role": current_role.value}
        )
        self.logger.info(f"User created: {user.id}")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.table_name, user_id)
        return User.from_dict(data) if data else None

    def require_active_user(self, user_id: str) -> User:
        """Load a user that exists and is active, or raise UserNotFoundError"""
        user = self.get_user(user_id)
        if not user or not user.is_active:
            raise UserNotFoundError("User not found")
        return user

    def find_by_phone(self, phone_number: str) -> Optional[User]:
        matches = self.storage.find(self.table_name, {"phone_number": normalize_phone(phone_number)})
        return User.from_dict(matches[0]) if matches else None

    def add_contact(self, owner_id: str, name: str, phone: str) -> Contact:
        self.require_active_user(owner_id)
        now = datetime.now(timezone.utc)
        contact = Contact(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            name=name,
            phone=normalize_phone(phone)
        )
        self.storage.save(self.contacts_table, contact.id, contact.to_dict())
        return contact

    def get_contacts(self, owner_id: str) -> List[Contact]:
        return [Contact.from_dict(data) for data in self.storage.find(self.contacts_table, {"owner_id": owner_id})]
