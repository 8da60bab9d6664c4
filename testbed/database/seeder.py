"""
Baseline and caller-supplied seed data for test databases.

Every row is inserted on its own. A failed row is logged and skipped, except
that the default baseline cannot continue without at least one coach.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

import bcrypt

from testbed.database.cleanup_coordinator import DELETION_ORDER, Table
from testbed.database.errors import SeedingError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[a-z_][a-z0-9_]*$')

# Parents before children
INSERTION_ORDER = tuple(reversed(DELETION_ORDER))


@dataclass
class SeedDataItem:
    """One caller-supplied row."""
    table: Union[Table, str]
    data: Dict[str, Any]


@dataclass
class SeededData:
    """IDs of the rows created by a seeding run."""
    users: List[str] = field(default_factory=list)
    coaches: List[str] = field(default_factory=list)
    booking_types: List[str] = field(default_factory=list)
    time_slots: List[str] = field(default_factory=list)
    custom_rows: int = 0


def hash_password(password: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds)).decode('utf-8')


class DatabaseSeeder:
    """Inserts seed rows through an asyncpg pool or connection."""

    USER_PASSWORD = 'testpassword123'
    COACH_PASSWORD = 'coachpassword123'

    def __init__(
        self,
        connection: Any,
        user_count: int = 2,
        coach_count: int = 2,
        booking_type_count: int = 2,
        time_slot_count: int = 2,
        bcrypt_rounds: int = 10
    ):
        self.connection = connection
        self.user_count = user_count
        self.coach_count = coach_count
        self.booking_type_count = booking_type_count
        self.time_slot_count = time_slot_count
        self.bcrypt_rounds = bcrypt_rounds

    async def _insert(self, table: Table, row: Dict[str, Any]) -> Optional[str]:
        """
        Insert one row, generating an id when none is given.

        Returns:
            The row id, or None when the insert failed and was skipped
        """
        row = dict(row)
        row.setdefault('id', str(uuid.uuid4()))

        for column in row:
            if not _IDENTIFIER.match(column):
                logger.warning(f"Skipping {table.value} row with invalid column name: {column!r}")
                return None

        columns = ', '.join(f'"{column}"' for column in row)
        placeholders = ', '.join(f'${index}' for index in range(1, len(row) + 1))
        query = f'INSERT INTO "{table.value}" ({columns}) VALUES ({placeholders})'

        try:
            await self.connection.execute(query, *row.values())
            return row['id']
        except Exception as e:
            logger.warning(f"Failed to seed {table.value} row {row['id']}: {e}")
            return None

    async def _seed_accounts(self, role: str, count: int, password: str) -> List[str]:
        password_hash = hash_password(password, self.bcrypt_rounds)
        now = datetime.now(timezone.utc)
        label = 'user' if role == 'USER' else 'coach'

        created = []
        for i in range(1, count + 1):
            suffix = uuid.uuid4().hex[:8]
            account_id = await self._insert(Table.ACCOUNTS, {
                'email': f"test{label}{i}_{suffix}@example.com",
                'name': f"Test {label.capitalize()} {i}",
                'password_hash': password_hash,
                'role': role,
                'created_at': now,
                'updated_at': now,
            })
            if account_id:
                created.append(account_id)
        return created

    async def seed_defaults(self) -> SeededData:
        """
        Insert the baseline: users, coaches, and booking types and time
        slots for the first coach.

        Raises:
            SeedingError: If no coach could be created
        """
        seeded = SeededData()
        seeded.users = await self._seed_accounts('USER', self.user_count, self.USER_PASSWORD)
        seeded.coaches = await self._seed_accounts('COACH', self.coach_count, self.COACH_PASSWORD)

        if not seeded.coaches:
            raise SeedingError(
                'seed default data',
                'No coaches were created, cannot seed coach-owned rows',
                {'requested_coaches': self.coach_count, 'created_users': len(seeded.users)}
            )

        coach_id = seeded.coaches[0]
        now = datetime.now(timezone.utc)

        for i in range(1, self.booking_type_count + 1):
            booking_type_id = await self._insert(Table.BOOKING_TYPES, {
                'name': f"Test Booking Type {i}",
                'description': f"Seeded booking type {i}",
                'base_price': Decimal('50.00') * i,
                'is_active': True,
                'coach_id': coach_id,
                'created_at': now,
                'updated_at': now,
            })
            if booking_type_id:
                seeded.booking_types.append(booking_type_id)

        for i in range(1, self.time_slot_count + 1):
            time_slot_id = await self._insert(Table.TIME_SLOTS, {
                'date_time': now + timedelta(hours=24 * i),
                'duration_min': 60,
                'is_available': True,
                'coach_id': coach_id,
                'created_at': now,
                'updated_at': now,
            })
            if time_slot_id:
                seeded.time_slots.append(time_slot_id)

        logger.info(
            f"Seeded {len(seeded.users)} users, {len(seeded.coaches)} coaches, "
            f"{len(seeded.booking_types)} booking types, {len(seeded.time_slots)} time slots"
        )
        return seeded

    async def insert_items(self, items: Iterable[SeedDataItem]) -> SeededData:
        """
        Insert caller-supplied rows, parents before children.

        ``item.table`` may be a Table or its plain name. Rows for unknown
        tables are logged and skipped.
        """
        items = list(items)
        by_table: Dict[Table, List[Dict[str, Any]]] = {}
        for item in items:
            try:
                table = Table(item.table)
            except ValueError:
                logger.warning(f"Skipping seed row for unknown table {item.table!r}")
                continue
            by_table.setdefault(table, []).append(item.data)

        seeded = SeededData()
        for table in INSERTION_ORDER:
            for data in by_table.get(table, ()):
                if await self._insert(table, data):
                    seeded.custom_rows += 1

        logger.info(f"Seeded {seeded.custom_rows} of {len(items)} custom rows")
        return seeded
