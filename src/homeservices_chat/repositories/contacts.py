"""Shared contact list.

Only two writers touch it: the presence tracker flips liveness flags and the
room session resets unread counts when a conversation is opened.
"""

from typing import Dict, Iterable, List, Optional

import structlog

from ..domain.models import Contact

logger = structlog.get_logger()


class ContactStore:
    """Contacts keyed by id, kept in the order the backend listed them."""

    def __init__(self, contacts: Iterable[Contact] = ()) -> None:
        self._contacts: Dict[str, Contact] = {}
        self.replace_all(contacts)

    def __len__(self) -> int:
        return len(self._contacts)

    def __contains__(self, contact_id: object) -> bool:
        return contact_id in self._contacts

    @property
    def contacts(self) -> List[Contact]:
        return list(self._contacts.values())

    def get(self, contact_id: str) -> Optional[Contact]:
        return self._contacts.get(contact_id)

    def replace_all(self, contacts: Iterable[Contact]) -> None:
        """Swap in a freshly loaded contact list."""
        self._contacts = {contact.id: contact for contact in contacts}

    def set_online(self, contact_id: str, is_online: bool) -> bool:
        """Update a contact's liveness; ids not in the list are ignored."""
        contact = self._contacts.get(contact_id)
        if contact is None:
            logger.debug("presence_for_unknown_contact", contact_id=contact_id)
            return False
        self._contacts[contact_id] = contact.model_copy(update={"is_online": is_online})
        return True

    def reset_unread(self, contact_id: str) -> bool:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return False
        if contact.unread_count:
            self._contacts[contact_id] = contact.model_copy(update={"unread_count": 0})
        return True
