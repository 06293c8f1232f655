"""Contact service - contacts, groups and phone normalization."""
import logging
import re
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database.db import db
from database.models import Contact, ContactGroup, ContactGroupMember

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY_CODE = "+1"


def normalize_phone(phone: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a phone number to `+<digits>`.

    Non-digits (other than a leading `+`) are stripped; 10-digit local numbers
    get the default country code, longer ones just a `+`.
    """
    normalized = re.sub(r"[^\d+]", "", phone or "")
    if normalized.startswith("+"):
        return "+" + normalized[1:].replace("+", "")
    normalized = normalized.replace("+", "")
    if len(normalized) == 10:
        return default_country_code + normalized
    if len(normalized) > 10:
        return "+" + normalized
    return normalized


class ContactService:
    """Service for managing contacts and contact groups."""

    async def get_by_phone(self, phone: str) -> Optional[Contact]:
        async with db.session() as session:
            result = await session.execute(select(Contact).where(Contact.phone == normalize_phone(phone)))
            return result.scalar_one_or_none()

    async def get(self, contact_id: int) -> Optional[Contact]:
        async with db.session() as session:
            return await session.get(Contact, contact_id)

    async def add_contact(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Contact:
        """
        Create a contact.

        Raises:
            ValueError: empty/invalid phone or a contact with this phone already exists
        """
        normalized = normalize_phone(phone)
        if len(normalized) < 8:
            raise ValueError(f"Invalid phone number: {phone!r}")
        if await self.get_by_phone(normalized):
            raise ValueError(f"Contact with phone {normalized} already exists")

        try:
            async with db.session() as session:
                contact = Contact(name=(name or normalized).strip(), phone=normalized, email=email, notes=notes)
                session.add(contact)
                await session.flush()
        except IntegrityError as e:
            raise ValueError(f"Contact with phone {normalized} already exists") from e

        logger.info(f"Added contact {contact.id} ({normalized})")
        return contact

    async def get_or_create_by_phone(self, phone: str) -> Contact:
        """Return the contact for `phone`, registering an unknown number on first contact."""
        existing = await self.get_by_phone(phone)
        if existing:
            return existing

        normalized = normalize_phone(phone)
        try:
            async with db.session() as session:
                contact = Contact(name=normalized, phone=normalized)
                session.add(contact)
                await session.flush()
            logger.info(f"Registered new contact {contact.id} from inbound {normalized}")
            return contact
        except IntegrityError:
            # Registered concurrently by another inbound message.
            existing = await self.get_by_phone(normalized)
            if existing is None:
                raise
            return existing

    async def create_group(self, name: str, description: Optional[str] = None) -> ContactGroup:
        """
        Raises:
            ValueError: a group with this name already exists
        """
        try:
            async with db.session() as session:
                group = ContactGroup(name=name.strip(), description=description)
                session.add(group)
                await session.flush()
        except IntegrityError as e:
            raise ValueError(f"Group {name!r} already exists") from e
        return group

    async def add_to_group(self, group_id: int, contact_ids: List[int]) -> int:
        """Add contacts to a group. Returns how many memberships were new."""
        added = 0
        async with db.session() as session:
            if not await session.get(ContactGroup, group_id):
                raise ValueError(f"Group {group_id} not found")
            result = await session.execute(
                select(ContactGroupMember.contact_id).where(ContactGroupMember.group_id == group_id)
            )
            existing = set(result.scalars().all())
            for contact_id in dict.fromkeys(contact_ids):
                if contact_id in existing:
                    continue
                if not await session.get(Contact, contact_id):
                    raise ValueError(f"Contact {contact_id} not found")
                session.add(ContactGroupMember(group_id=group_id, contact_id=contact_id))
                added += 1
        return added

    async def member_ids(self, group_ids: List[int]) -> List[int]:
        """Active contacts in any of `group_ids`, in membership order, without repeats."""
        if not group_ids:
            return []
        async with db.session() as session:
            result = await session.execute(
                select(ContactGroupMember.contact_id)
                .join(Contact, Contact.id == ContactGroupMember.contact_id)
                .where(ContactGroupMember.group_id.in_(group_ids), Contact.is_active.is_(True))
                .order_by(ContactGroupMember.group_id, ContactGroupMember.id)
            )
            return list(dict.fromkeys(result.scalars().all()))
