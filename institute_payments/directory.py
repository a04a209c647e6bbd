"""
Directory Module

Read-only lookups of the collaborators a payment references: the student
(user) and the formation being paid for. These records are owned by other
services; this module only projects the fields shown next to a payment.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .storage import StorageInterface


@dataclass
class UserSummary:
    """Display projection of a user"""
    id: str
    name: str
    lastname: str
    phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "lastname": self.lastname,
            "phone": self.phone
        }


@dataclass
class FormationSummary:
    """Display projection of a formation"""
    id: str
    title: str
    price: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "price": str(self.price) if self.price is not None else None
        }


class Directory:
    """
    Looks up users and formations by id
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.users_table = "users"
        self.formations_table = "formations"

    def get_user(self, user_id: str) -> Optional[UserSummary]:
        data = self.storage.load(self.users_table, str(user_id))
        if not data:
            return None
        return UserSummary(
            id=data['id'],
            name=data.get('name', ''),
            lastname=data.get('lastname', ''),
            phone=data.get('phone')
        )

    def get_formation(self, formation_id: str) -> Optional[FormationSummary]:
        data = self.storage.load(self.formations_table, str(formation_id))
        if not data:
            return None
        price = data.get('price')
        return FormationSummary(
            id=data['id'],
            title=data.get('title', ''),
            price=Decimal(str(price)) if price is not None else None
        )

    def register_user(self, user_id: str, name: str, lastname: str,
                      phone: Optional[str] = None) -> UserSummary:
        """Store a user record (used for seeding and tests)"""
        user = UserSummary(id=str(user_id), name=name, lastname=lastname, phone=phone)
        self.storage.save(self.users_table, user.id, user.to_dict())
        return user

    def register_formation(self, formation_id: str, title: str,
                           price: Optional[Any] = None) -> FormationSummary:
        """Store a formation record (used for seeding and tests)"""
        formation = FormationSummary(
            id=str(formation_id),
            title=title,
            price=Decimal(str(price)) if price is not None else None
        )
        self.storage.save(self.formations_table, formation.id, formation.to_dict())
        return formation
