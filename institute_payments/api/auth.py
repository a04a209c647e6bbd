"""
System container and authentication / authorization dependencies
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..storage import create_storage
from ..audit import AuditTrail
from ..alerts import AlertEmitter
from ..payments import PaymentManager
from ..sweeper import OverdueSweeper
from ..directory import Directory
from ..clock import Clock, SystemClock
from ..config import PaymentsConfig, get_config


ROLES = ("admin", "reception", "teacher", "student")
STAFF_ROLES = ("admin", "reception")

security = HTTPBearer(auto_error=False)


class PaymentSystem:
    """Payment engine with all components initialized"""

    def __init__(
        self,
        database_url: Optional[str] = None,
        clock: Optional[Clock] = None,
        config: Optional[PaymentsConfig] = None
    ):
        config = config or get_config()
        self.config = config
        self.clock = clock or SystemClock()

        self.storage = create_storage(database_url or config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=config.enable_audit_logging)
        self.alert_emitter = AlertEmitter(self.storage, self.audit_trail, self.clock)
        self.payment_manager = PaymentManager(
            self.storage,
            self.alert_emitter,
            self.audit_trail,
            self.clock,
            amount_tolerance=Decimal(config.amount_tolerance)
        )
        self.sweeper = OverdueSweeper(self.payment_manager, self.clock)
        self.directory = Directory(self.storage)

    def close(self) -> None:
        self.storage.close()


# Global payment system instance
payment_system = PaymentSystem()


# Dependency to get payment system
def get_payment_system() -> PaymentSystem:
    return payment_system


@dataclass
class CurrentUser:
    """Authenticated caller taken from the bearer token"""
    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> CurrentUser:
    """Dependency that validates the JWT and returns the caller"""
    config = get_config()
    if not config.auth_enabled:
        return CurrentUser(user_id="test_user", role="admin")

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(
            credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in ROLES:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(user_id=str(user_id), role=role)


def require_roles(*roles: str):
    """Dependency factory restricting a route to the given roles"""
    def check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return check
