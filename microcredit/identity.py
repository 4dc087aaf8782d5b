"""
Identity Module

Explicit caller identity passed into every ledger call. The ledgers never
authenticate; they trust an identity already resolved by an AuthProvider.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class UserRole(Enum):
    """Portal roles"""
    CLIENT = "client"
    ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    """Resolved caller identity used to stamp updatedBy/verifier fields"""
    uid: str
    email: Optional[str] = None
    role: UserRole = UserRole.CLIENT
    
    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# Actor recorded on automatic transitions (e.g. loan auto-completion)
SYSTEM_IDENTITY = Identity(uid="sistema", role=UserRole.ADMIN)


class AuthProvider(ABC):
    """Opaque authentication provider"""
    
    @abstractmethod
    def sign_in(self, email: str, password: str) -> Identity:
        """Authenticate and return the resolved identity"""
        pass
    
    @abstractmethod
    def sign_out(self, identity: Identity) -> None:
        """End the identity's session"""
        pass
    
    @abstractmethod
    def current_identity(self) -> Optional[Identity]:
        """Identity of the signed-in user, if any"""
        pass


class StaticAuthProvider(AuthProvider):
    """In-memory provider backed by a fixed user table (tests, local runs)"""
    
    def __init__(self, users: Optional[Dict[str, Tuple[str, Identity]]] = None):
        # email -> (password, identity)
        self._users = dict(users or {})
        self._current: Optional[Identity] = None
    
    def register(self, identity: Identity, password: str) -> None:
        if not identity.email:
            raise ValueError("Identity email is required for registration")
        self._users[identity.email.lower()] = (password, identity)
    
    def sign_in(self, email: str, password: str) -> Identity:
        entry = self._users.get(email.lower())
        if not entry or entry[0] != password:
            raise PermissionError("Invalid credentials")
        self._current = entry[1]
        return entry[1]
    
    def sign_out(self, identity: Identity) -> None:
        if self._current == identity:
            self._current = None
    
    def current_identity(self) -> Optional[Identity]:
        return self._current
