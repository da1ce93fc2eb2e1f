"""Lease-end side effects.

Applied after reversals: move the stored end date, expire the tenancy when
the lease is over, then cascade to the debtor and the room.  The cascades
are best-effort.  Each runs inside its own savepoint so a failure there is
reported as a warning and never rolls back the ledger writes.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.models.residence import Room, RoomStatus
from residence_ledger.models.tenancy import (
    ApplicationStatus,
    Debtor,
    DebtorStatus,
    LeaseApplication,
)
from residence_ledger.services.audit_trail import record_audit
from residence_ledger.services.ledger.identity import load_debtor
from residence_ledger.services.ledger.reversals import Actor

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (ApplicationStatus.APPROVED, ApplicationStatus.PENDING)


@dataclass
class LeaseEndOutcome:
    end_date_updated: bool = False
    previous_end_date: date | None = None
    status_expired: bool = False
    debtor_expired: bool = False
    room_released: bool = False
    debtor_kept_for: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "end_date_updated": self.end_date_updated,
            "previous_end_date": self.previous_end_date.isoformat() if self.previous_end_date else None,
            "status_expired": self.status_expired,
            "debtor_expired": self.debtor_expired,
            "room_released": self.room_released,
            "debtor_kept_for": self.debtor_kept_for,
            "warnings": list(self.warnings),
        }


def room_status_for(occupancy: int, capacity: int) -> RoomStatus:
    if occupancy <= 0:
        return RoomStatus.AVAILABLE
    if occupancy < capacity:
        return RoomStatus.RESERVED
    return RoomStatus.OCCUPIED


async def _find_debtor(db: AsyncSession, application: LeaseApplication) -> Debtor | None:
    return await load_debtor(db, application)


async def _find_room(db: AsyncSession, application: LeaseApplication) -> Room | None:
    if not application.allocated_room or not application.residence_id:
        return None
    result = await db.execute(
        select(Room).where(
            Room.residence_id == application.residence_id,
            Room.room_number == application.allocated_room,
        )
    )
    return result.scalar_one_or_none()


async def expire_debtor(db: AsyncSession, application: LeaseApplication, actor: Actor) -> bool:
    debtor = await _find_debtor(db, application)
    if debtor is None:
        logger.info("No debtor for application %s, nothing to expire", application.id)
        return False
    if debtor.status == DebtorStatus.EXPIRED:
        return False
    previous = debtor.status
    debtor.status = DebtorStatus.EXPIRED
    record_audit(
        db,
        entity_type="debtor",
        entity_id=debtor.id,
        action="expire",
        user_id=actor.id,
        old_values={"status": previous},
        new_values={"status": DebtorStatus.EXPIRED},
        details={"application_id": application.id},
    )
    await db.flush()
    logger.info("Debtor %s expired with application %s", debtor.id, application.id)
    return True


async def release_room(db: AsyncSession, application: LeaseApplication, actor: Actor) -> bool:
    room = await _find_room(db, application)
    if room is None:
        logger.info("No allocated room for application %s", application.id)
        return False
    old = {"current_occupancy": room.current_occupancy, "status": room.status}
    room.current_occupancy = max(0, (room.current_occupancy or 0) - 1)
    room.status = room_status_for(room.current_occupancy, room.capacity or 1)
    record_audit(
        db,
        entity_type="room",
        entity_id=str(room.id),
        action="release_occupancy",
        user_id=actor.id,
        old_values=old,
        new_values={"current_occupancy": room.current_occupancy, "status": room.status},
        details={"application_id": application.id},
    )
    await db.flush()
    logger.info(
        "Room %s occupancy now %d (%s)", room.room_number, room.current_occupancy, room.status.value
    )
    return True


async def apply_lease_end(
    db: AsyncSession,
    application: LeaseApplication,
    new_end_date: date,
    *,
    actor: Actor,
    reason: str,
    update_end_date: bool = True,
    today: date | None = None,
    renewals: Iterable[LeaseApplication] = (),
) -> LeaseEndOutcome:
    """Move the end date earlier and expire the tenancy if the lease is over.

    The room decrement only happens on the transition to ``expired`` so a
    rerun against an already-expired tenancy leaves occupancy alone.  The
    debtor is shared by the student's tenancies, so it stays active while
    any of *renewals* is still running.
    """
    today = today or date.today()
    outcome = LeaseEndOutcome(previous_end_date=application.end_date)

    if update_end_date and (application.end_date is None or new_end_date < application.end_date):
        application.end_date = new_end_date
        application.updated_by = actor.label
        record_audit(
            db,
            entity_type="lease_application",
            entity_id=application.id,
            action="update_end_date",
            user_id=actor.id,
            old_values={"end_date": outcome.previous_end_date},
            new_values={"end_date": new_end_date},
            details={"reason": reason},
        )
        outcome.end_date_updated = True
        logger.info(
            "Application %s end date %s -> %s",
            application.id, outcome.previous_end_date, new_end_date,
        )

    if new_end_date > today or application.status not in EXPIRABLE_STATUSES:
        await db.flush()
        return outcome

    previous_status = application.status
    application.status = ApplicationStatus.EXPIRED
    application.expiry_reason = reason
    application.expired_at = datetime.now(timezone.utc)
    application.updated_by = actor.label
    record_audit(
        db,
        entity_type="lease_application",
        entity_id=application.id,
        action="expire",
        user_id=actor.id,
        old_values={"status": previous_status},
        new_values={"status": ApplicationStatus.EXPIRED, "expiry_reason": reason},
    )
    await db.flush()
    outcome.status_expired = True
    logger.info("Application %s expired (was %s)", application.id, previous_status.value)

    renewals = list(renewals)
    if renewals:
        outcome.debtor_kept_for = renewals[0].id
        logger.info(
            "Debtor for %s left active, renewal %s is still running",
            application.id, outcome.debtor_kept_for,
        )
    else:
        try:
            async with db.begin_nested():
                outcome.debtor_expired = await expire_debtor(db, application, actor)
        except Exception as exc:
            logger.warning("Debtor cascade failed for application %s: %s", application.id, exc)
            outcome.warnings.append(f"Debtor status not updated: {exc}")

    try:
        async with db.begin_nested():
            outcome.room_released = await release_room(db, application, actor)
    except Exception as exc:
        logger.warning("Room cascade failed for application %s: %s", application.id, exc)
        outcome.warnings.append(f"Room occupancy not updated: {exc}")

    return outcome
