"""Tenant and contact lookups used by the webhook pipeline."""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from relay.models import Contact, User
from relay.storage import SessionLocal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactRef:
    user_id: int
    contact_id: int


@dataclass(frozen=True)
class TenantCredentials:
    """Snapshot of the tenant fields needed for provider calls."""
    user_id: int
    phone_number_id: str
    token_meta: Optional[str]


class ContactResolver:
    """
    Map (tenant phone-number-id, counterparty phone) pairs to internal ids.

    Contacts are provisioned outside the relay; a miss is reported as None and
    never creates anything.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def get_tenant(self, phone_number_id: str) -> Optional[TenantCredentials]:
        with self._session_factory() as session:
            user = session.execute(
                select(User).where(User.phone_number_id == phone_number_id)
            ).scalar_one_or_none()
            if user is None:
                return None
            return TenantCredentials(
                user_id=user.id,
                phone_number_id=user.phone_number_id,
                token_meta=user.token_meta,
            )

    def resolve_contact(self, tenant_phone_id: str, counterparty_phone: str) -> Optional[ContactRef]:
        """
        Two-step lookup: phone-number-id to tenant, then (tenant, phone) to contact.

        Returns None if either step misses.
        """
        with self._session_factory() as session:
            user_id = session.execute(
                select(User.id).where(User.phone_number_id == tenant_phone_id)
            ).scalar_one_or_none()
            if user_id is None:
                logger.warning(f"No tenant registered for phone_number_id={tenant_phone_id}")
                return None

            contact_id = session.execute(
                select(Contact.id).where(
                    Contact.user_id == user_id,
                    Contact.phone_number == counterparty_phone,
                )
            ).scalar_one_or_none()
            if contact_id is None:
                logger.warning(f"Contact not found: user_id={user_id}, phone={counterparty_phone}")
                return None

            return ContactRef(user_id=user_id, contact_id=contact_id)

    def verify_token_exists(self, token: str) -> bool:
        with self._session_factory() as session:
            found = session.execute(
                select(User.id).where(User.verify_token == token).limit(1)
            ).first()
            return found is not None
