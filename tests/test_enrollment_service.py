import asyncio
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select, update

sys.path.append(str(Path(__file__).resolve().parents[1]))

from helpers import FakeClock, setup_db  # noqa: E402

from academy.errors import EnrollmentNotFoundError, EnrollmentRevokedError  # noqa: E402
from academy.models.enrollment import Enrollment, EnrollmentStatus  # noqa: E402
from academy.services.enrollment_service import EnrollmentLedger, ProductRef  # noqa: E402

COURSE = ProductRef.course("c1")


def test_grant_is_idempotent_while_active():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            first = await ledger.grant(db, "u1", COURSE, expires_at=clock() + timedelta(days=30))
            second = await ledger.grant(db, "u1", COURSE, expires_at=clock() + timedelta(days=90))
            await db.commit()
            count = await db.scalar(select(func.count(Enrollment.id)))
        return first, second, count

    first, second, count = asyncio.run(scenario())
    assert first.id == second.id
    assert count == 1
    # The second call returned the existing row unchanged
    assert second.expires_at == first.expires_at


def test_grant_sets_grace_period_after_expiry():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            expires = clock() + timedelta(days=365)
            enrollment = await ledger.grant(db, "u1", COURSE, expires_at=expires, grace_period_days=7)
            lifetime = await ledger.grant(db, "u1", ProductRef.course("c2"))
            no_grace = await ledger.grant(db, "u1", ProductRef.course("c3"), expires_at=expires)
            await db.commit()
        return expires, enrollment, lifetime, no_grace

    expires, enrollment, lifetime, no_grace = asyncio.run(scenario())
    assert enrollment.grace_period_ends_at == expires + timedelta(days=7)
    assert enrollment.grace_period_ends_at >= enrollment.expires_at
    assert enrollment.course_id == "c1"
    assert enrollment.product_key == "course:c1"
    assert lifetime.expires_at is None and lifetime.grace_period_ends_at is None
    assert no_grace.grace_period_ends_at == no_grace.expires_at


def test_has_access_at_grace_boundary():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            enrollment = await ledger.grant(
                db, "u1", COURSE, expires_at=clock() + timedelta(days=10), grace_period_days=7
            )
            await db.commit()
            grace_end = enrollment.grace_period_ends_at

            results = {}
            clock.now = grace_end - timedelta(seconds=1)
            results["before"] = await ledger.has_access(db, "u1", COURSE)
            clock.now = grace_end
            results["at"] = await ledger.has_access(db, "u1", COURSE)
            clock.now = grace_end + timedelta(seconds=1)
            results["after"] = await ledger.has_access(db, "u1", COURSE)
            results["other_user"] = await ledger.has_access(db, "u2", COURSE)
        return results

    results = asyncio.run(scenario())
    assert results == {"before": True, "at": True, "after": False, "other_user": False}


def test_full_lifecycle_expires_after_grace():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            expires = clock() + timedelta(days=365)
            enrollment = await ledger.grant(db, "u", COURSE, expires_at=expires, grace_period_days=7)
            await db.commit()
            access_before = await ledger.has_access(db, "u", COURSE)

            clock.now = expires + timedelta(days=8)
            count = await ledger.process_expired(db)
            await db.commit()
            refreshed = await ledger.get_enrollment(db, enrollment.id)
            access_after = await ledger.has_access(db, "u", COURSE)
            second_run = await ledger.process_expired(db)
        return access_before, count, refreshed.status, access_after, second_run

    access_before, count, status, access_after, second_run = asyncio.run(scenario())
    assert access_before is True
    assert count == 1
    assert status == EnrollmentStatus.EXPIRED
    assert access_after is False
    assert second_run == 0


def test_process_expired_keeps_grace_and_lifetime_enrollments():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            expires = clock() + timedelta(days=1)
            in_grace = await ledger.grant(db, "u", COURSE, expires_at=expires, grace_period_days=7)
            lifetime = await ledger.grant(db, "u", ProductRef.membership("BASIC"))
            await db.commit()
            clock.now = expires + timedelta(days=3)
            count = await ledger.process_expired(db)
            await db.commit()
            statuses = [
                (await ledger.get_enrollment(db, in_grace.id)).status,
                (await ledger.get_enrollment(db, lifetime.id)).status,
            ]
        return count, statuses

    count, statuses = asyncio.run(scenario())
    assert count == 0
    assert statuses == [EnrollmentStatus.ACTIVE, EnrollmentStatus.ACTIVE]


def test_process_expired_counts_only_rows_it_expired():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            expires = clock() + timedelta(days=10)
            extended = await ledger.grant(db, "u1", COURSE, expires_at=expires)
            lapsed = await ledger.grant(db, "u2", COURSE, expires_at=expires)
            await db.commit()
            clock.now = expires + timedelta(days=1)
            new_expiry = clock.now + timedelta(days=30)

            execute = db.execute
            calls = []

            async def execute_then_extend(statement, *args, **kwargs):
                result = await execute(statement, *args, **kwargs)
                calls.append(statement)
                if len(calls) == 1:
                    # Extension lands after the batch picked its rows
                    await execute(
                        update(Enrollment)
                        .where(Enrollment.id == extended.id)
                        .values(expires_at=new_expiry, grace_period_ends_at=new_expiry)
                        .execution_options(synchronize_session=False)
                    )
                return result

            db.execute = execute_then_extend
            count = await ledger.process_expired(db)
            await db.commit()

        async with SessionLocal() as db:
            statuses = {
                e.id: e.status for e in (await db.execute(select(Enrollment))).scalars().all()
            }
        return count, statuses, extended.id, lapsed.id

    count, statuses, extended_id, lapsed_id = asyncio.run(scenario())
    assert count == 1
    assert statuses[extended_id] == EnrollmentStatus.ACTIVE
    assert statuses[lapsed_id] == EnrollmentStatus.EXPIRED


def test_revoke_is_idempotent_and_records_reason():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            enrollment = await ledger.grant(db, "u", COURSE, expires_at=clock() + timedelta(days=30))
            await ledger.revoke(db, enrollment.id, "Full refund issued")
            revoked_at = enrollment.revoked_at
            clock.advance(hours=1)
            await ledger.revoke(db, enrollment.id, "Second call")
            await db.commit()
            pending = await ledger.pending_notifications(db, enrollment.id)
            access = await ledger.has_access(db, "u", COURSE)
        return enrollment, revoked_at, pending, access

    enrollment, revoked_at, pending, access = asyncio.run(scenario())
    assert enrollment.status == EnrollmentStatus.REVOKED
    assert enrollment.revoked_at == revoked_at
    assert enrollment.meta["revocation_reason"] == "Full refund issued"
    assert pending == []
    assert access is False


def test_revoke_unknown_enrollment():
    async def scenario():
        _, SessionLocal = await setup_db()
        async with SessionLocal() as db:
            await EnrollmentLedger().revoke(db, 404, "nope")

    with pytest.raises(EnrollmentNotFoundError) as exc:
        asyncio.run(scenario())
    assert exc.value.code == "ENROLLMENT_NOT_FOUND"


def test_extend_preserves_grace_duration_and_resurrects_expired():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            expires = clock() + timedelta(days=10)
            enrollment = await ledger.grant(db, "u", COURSE, expires_at=expires, grace_period_days=7)
            await db.commit()

            clock.now = expires + timedelta(days=20)
            await ledger.process_expired(db)
            await db.commit()
            expired_status = (await ledger.get_enrollment(db, enrollment.id)).status

            extended = await ledger.extend(db, enrollment.id, 30, payment_intent_id="pi_ext", reason="Purchased")
            await db.commit()
            access = await ledger.has_access(db, "u", COURSE)
        return expires, expired_status, extended, access

    expires, expired_status, extended, access = asyncio.run(scenario())
    assert expired_status == EnrollmentStatus.EXPIRED
    assert extended.status == EnrollmentStatus.ACTIVE
    # Extension counts from the old expiry, even when it is in the past
    assert extended.expires_at == expires + timedelta(days=30)
    assert extended.grace_period_ends_at - extended.expires_at == timedelta(days=7)
    assert extended.meta["extensions"][0]["payment_intent_id"] == "pi_ext"
    assert access is True


def test_extend_without_expiry_starts_from_now():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            enrollment = await ledger.grant(db, "u", COURSE)
            extended = await ledger.extend(db, enrollment.id, 14)
            await db.commit()
        return clock(), extended

    now, extended = asyncio.run(scenario())
    assert extended.expires_at == now + timedelta(days=14)
    assert extended.grace_period_ends_at == extended.expires_at


def test_extend_refuses_revoked_enrollment():
    async def scenario():
        _, SessionLocal = await setup_db()
        ledger = EnrollmentLedger(clock=FakeClock())
        async with SessionLocal() as db:
            enrollment = await ledger.grant(db, "u", COURSE)
            await ledger.revoke(db, enrollment.id, "admin")
            await ledger.extend(db, enrollment.id, 30)

    with pytest.raises(EnrollmentRevokedError) as exc:
        asyncio.run(scenario())
    assert exc.value.code == "ENROLLMENT_REVOKED"


def test_warnings_skip_offsets_in_the_past_and_reschedule_on_extend():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            enrollment = await ledger.grant(db, "u", COURSE, expires_at=clock() + timedelta(days=5))
            before = [n.notification_type for n in await ledger.pending_notifications(db, enrollment.id)]
            await ledger.extend(db, enrollment.id, 30)
            after = [n.notification_type for n in await ledger.pending_notifications(db, enrollment.id)]
            await db.commit()
        return before, after

    before, after = asyncio.run(scenario())
    assert before == ["3_day_warning", "1_day_warning"]
    assert after == ["7_day_warning", "3_day_warning", "1_day_warning"]


def test_due_notifications_and_mark_sent():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            enrollment = await ledger.grant(db, "u", COURSE, expires_at=clock() + timedelta(days=30))
            await db.commit()
            clock.now = enrollment.expires_at - timedelta(days=5)
            due = await ledger.due_notifications(db)
            for notification, _ in due:
                await ledger.mark_notification_sent(db, notification)
            await db.commit()
            due_again = await ledger.due_notifications(db)
        return due, due_again

    due, due_again = asyncio.run(scenario())
    assert [n.notification_type for n, _ in due] == ["7_day_warning"]
    assert due[0][0].status == "sent"
    assert due_again == []


def test_enrollment_status_reports_extension_window():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            expires = clock() + timedelta(days=20)
            await ledger.grant(db, "u", COURSE, expires_at=expires, grace_period_days=7)
            await db.commit()
            fresh = await ledger.get_enrollment_status(db, "u", COURSE)
            clock.now = expires + timedelta(days=2)
            grace = await ledger.get_enrollment_status(db, "u", COURSE)
            missing = await ledger.get_enrollment_status(db, "u", ProductRef.course("other"))
        return fresh, grace, missing

    fresh, grace, missing = asyncio.run(scenario())
    assert fresh.has_access and fresh.days_remaining == 20 and fresh.can_extend
    assert grace.in_grace_period and grace.has_access and grace.days_remaining == 0
    assert not missing.has_access and missing.enrollment_id is None


def test_grant_replaces_active_row_past_its_grace_end():
    async def scenario():
        _, SessionLocal = await setup_db()
        clock = FakeClock()
        ledger = EnrollmentLedger(clock=clock)
        async with SessionLocal() as db:
            old = await ledger.grant(db, "u", COURSE, expires_at=clock() + timedelta(days=1))
            await db.commit()
            clock.advance(days=3)
            new = await ledger.grant(db, "u", COURSE, expires_at=clock() + timedelta(days=30))
            await db.commit()
            active = await ledger.get_active_enrollments(db, "u")
        return old, new, active

    old, new, active = asyncio.run(scenario())
    assert old.id != new.id
    assert old.status == EnrollmentStatus.EXPIRED
    assert [e.id for e in active] == [new.id]
