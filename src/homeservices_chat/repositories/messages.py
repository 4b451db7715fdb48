"""In-memory message log for the active room."""

from datetime import date, datetime, tzinfo
from itertools import groupby
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from ..domain.activity import date_label
from ..domain.models import DateGroup, Message, ReadReceipt

logger = structlog.get_logger()


class MessageStore:
    """Ordered message log merging optimistic and server-confirmed entries.

    Messages are kept in arrival order and de-duplicated by id. Mutators never
    await, so each one is applied atomically from the event loop's point of
    view. The date-grouped projection is memoized on the store version.
    """

    def __init__(self, room_id: str, messages: Iterable[Message] = ()) -> None:
        """Initialize the log, de-duplicating the initial page."""
        self.room_id = room_id
        self._messages: List[Message] = []
        self._positions: Dict[str, int] = {}
        self._version = 0
        self._projection_key: Optional[Tuple[int, date, Optional[tzinfo]]] = None
        self._projection: List[DateGroup] = []
        for message in messages:
            self.append(message)

    @property
    def version(self) -> int:
        """Incremented on every change to the log."""
        return self._version

    @property
    def messages(self) -> List[Message]:
        """Snapshot of the log in arrival order."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._positions

    def get(self, message_id: str) -> Optional[Message]:
        """Look up a message by id."""
        position = self._positions.get(message_id)
        if position is None:
            return None
        return self._messages[position]

    def _touch(self) -> None:
        self._version += 1

    def _reindex(self) -> None:
        self._positions = {message.id: index for index, message in enumerate(self._messages)}

    def append(self, message: Message) -> bool:
        """Add a message unless its id is already stored.

        A known id is amended with the later copy, keeping every read receipt.
        Returns True when a new entry was added.
        """
        position = self._positions.get(message.id)
        if position is not None:
            current = self._messages[position]
            self._messages[position] = current.merged_with(message)
            self._touch()
            logger.debug("message_amended", room_id=self.room_id, message_id=message.id)
            return False

        self._positions[message.id] = len(self._messages)
        self._messages.append(message)
        self._touch()
        return True

    def replace(self, temp_id: str, final: Message) -> None:
        """Swap an optimistic entry for its confirmed copy in the same position.

        When a pushed copy of the confirmed message is already stored it is
        folded into the swapped entry and dropped, so the id stays unique.
        """
        position = self._positions.get(temp_id)
        if position is None:
            logger.debug("replace_target_missing", room_id=self.room_id, temp_id=temp_id)
            self.append(final)
            return

        duplicate = self._positions.get(final.id)
        if duplicate is not None and duplicate != position:
            final = self._messages[duplicate].merged_with(final)
            self._messages[position] = final
            del self._messages[duplicate]
            self._reindex()
            logger.info(
                "optimistic_message_raced_push",
                room_id=self.room_id,
                temp_id=temp_id,
                message_id=final.id,
            )
        else:
            self._messages[position] = self._messages[position].merged_with(final)
            del self._positions[temp_id]
            self._positions[final.id] = position
        self._touch()

    def update(self, message: Message) -> bool:
        """Replace the stored copy of ``message`` by id; unknown ids are ignored."""
        position = self._positions.get(message.id)
        if position is None:
            return False
        self._messages[position] = self._messages[position].merged_with(message)
        self._touch()
        return True

    def merge_read_updates(self, messages: Iterable[Message]) -> int:
        """Apply server-confirmed read state; returns how many entries changed."""
        return sum(1 for message in messages if self.update(message))

    def add_read_receipt(self, message_id: str, user_id: str, read_at: datetime) -> bool:
        position = self._positions.get(message_id)
        if position is None:
            return False
        receipt = ReadReceipt(user_id=user_id, read_at=read_at)
        self._messages[position] = self._messages[position].with_receipt(receipt)
        self._touch()
        return True

    def remove(self, message_id: str) -> bool:
        """Drop a message, typically a rolled-back optimistic entry."""
        position = self._positions.get(message_id)
        if position is None:
            return False
        del self._messages[position]
        self._reindex()
        self._touch()
        return True

    def project(self, today: Optional[date] = None, tz: Optional[tzinfo] = None) -> List[DateGroup]:
        """Group messages by calendar day in ``tz`` (local time when omitted).

        Messages within a group ascend by ``created_at``, keeping arrival order
        on ties; groups ascend by date. Repeated calls on an unchanged log
        return the same result.
        """
        if today is None:
            today = datetime.now(tz).date()
        key = (self._version, today, tz)
        if key == self._projection_key:
            return self._projection

        ordered = sorted(self._messages, key=lambda m: m.created_at)
        groups = []
        for day, messages in groupby(ordered, key=lambda m: m.created_at.astimezone(tz).date()):
            groups.append(DateGroup(date_key=day, label=date_label(day, today), messages=list(messages)))

        self._projection_key = key
        self._projection = groups
        return groups
