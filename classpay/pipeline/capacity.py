"""
Capacity Guard
==============
Seat-limit checks against a class.

These checks are optimistic: seats are not held while an attempt is
PENDING. The hard limit is enforced by the store when registrations are
inserted (``IRegistrationRepository.create_within_capacity``).
"""

import structlog

from classpay.errors import ClassFull, ClassNotFound
from classpay.storage.base import IClassCatalog

logger = structlog.get_logger().bind(component="capacity_guard")


class CapacityGuard:

    def __init__(self, classes: IClassCatalog):
        self.classes = classes

    async def seats_remaining(self, class_id: str) -> int:
        class_info = await self.classes.get_class(class_id)
        if class_info is None:
            raise ClassNotFound(f"Class not found: {class_id}")
        taken = await self.classes.count_registrations(class_id)
        return max(class_info.capacity - taken, 0)

    async def can_reserve(self, class_id: str, seats: int = 1) -> bool:
        """True when ``seats`` more registrations fit in the class right now."""
        return await self.seats_remaining(class_id) >= seats

    async def ensure_seats(self, class_id: str, seats: int = 1) -> None:
        """Raise ClassFull when fewer than ``seats`` remain."""
        remaining = await self.seats_remaining(class_id)
        if remaining < seats:
            logger.info("class_full", class_id=class_id, requested=seats, remaining=remaining)
            if remaining == 0:
                raise ClassFull("Class is full")
            raise ClassFull(
                f"Only {remaining} seat(s) left in this class",
                details={"seats_remaining": remaining},
            )
