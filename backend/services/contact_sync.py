"""
Contact/Tag Sync
================
Mirrors payment outcomes onto CRM contacts. Status tags form one mutually
exclusive family (Success, Failed, Reconciled, drop-off): applying one
removes the others, so a contact always shows a single funnel stage.
"""

from datetime import datetime
from typing import Optional, Union

import structlog

from repositories.interfaces import IContactRepository, ITagRepository
from schemas.payment_models import STATUS_TAG_FAMILY, Contact, ContactStatus, Tag


class ContactTagSync:

    def __init__(self, contacts: IContactRepository, tags: ITagRepository):
        self.contacts = contacts
        self.tags = tags
        self._logger = structlog.get_logger().bind(component="contact_sync")

    async def ensure_tag(self, name: str) -> Tag:
        tag = await self.tags.get_by_name(name)
        if tag is None:
            tag = await self.tags.save(Tag(name=name))
            self._logger.info("tag_created", name=name)
        return tag

    async def apply_status(
        self,
        email: str,
        status: Union[ContactStatus, str],
        username: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Contact:
        status_name = ContactStatus(status).value
        contact = await self.contacts.get_by_email(email)
        created = contact is None
        if created:
            contact = Contact(email=email, username=username or "", phone=str(phone or ""))

        target = await self.ensure_tag(status_name)

        exclusive_ids = set()
        for name in STATUS_TAG_FAMILY - {status_name}:
            other = await self.tags.get_by_name(name)
            if other:
                exclusive_ids.add(other.tag_id)

        tag_ids = [t for t in contact.tags if t not in exclusive_ids]
        if target.tag_id not in tag_ids:
            tag_ids.append(target.tag_id)

        updates = {
            "tags": tag_ids,
            "status_tag": status_name,
            "updated_at": datetime.utcnow(),
        }
        if username:
            updates["username"] = username
        if phone:
            updates["phone"] = str(phone)

        contact = await self.contacts.save(contact.model_copy(update=updates))
        self._logger.info("contact_status_applied",
                          email=contact.email,
                          status=status_name,
                          created=created)
        return contact
