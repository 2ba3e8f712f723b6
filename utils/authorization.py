"""Authorization checks for already-authenticated principals"""

import logging
from dataclasses import dataclass
from typing import Optional

from utils.exceptions import Forbidden

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a core operation"""
    account_id: int
    is_admin: bool = False
    email: Optional[str] = None

    @classmethod
    def from_account(cls, account) -> "Principal":
        return cls(account_id=account.id, is_admin=bool(account.is_admin), email=account.email)

    def to_dict(self) -> dict:
        return {'userId': self.account_id, 'email': self.email, 'isAdmin': self.is_admin}


def can_act_on(principal: Principal, account_id: int) -> bool:
    """A principal may act on an account only if it is their own or they are an admin"""
    return principal.is_admin or principal.account_id == account_id


def ensure_can_act(principal: Principal, account_id: int) -> None:
    if not can_act_on(principal, account_id):
        logger.warning(
            f"⚠️ Principal {principal.account_id} attempted to act on account {account_id}"
        )
        raise Forbidden()


def ensure_admin(principal: Principal) -> None:
    if not principal.is_admin:
        logger.warning(f"⚠️ Non-admin principal {principal.account_id} attempted an admin operation")
        raise Forbidden("Access denied. Administrative privileges required.")
