from datetime import timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, StatementError
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select

from ..core.errors import (
    AlreadyFinalizedError,
    AlreadyRefundedError,
    InvalidInputError,
    InvalidRefundAmountError,
    ReservationNotFoundError,
    StoreUnavailableError,
)
from ..models import (
    AccountModel,
    AccountRef,
    HistoryFilters,
    LedgerEntryModel,
    LedgerEntryType,
    ReservationModel,
    ReservationStatus,
)
from ..models.db import utcnow
from ..services import LedgerService


def _entries(session: Session, reservation_id: str) -> list[LedgerEntryModel]:
    stmt = select(LedgerEntryModel).where(LedgerEntryModel.reservation_id == reservation_id)
    return list(session.exec(stmt))


def test_get_balance_creates_account_lazily(service: LedgerService, session: Session) -> None:
    ref = AccountRef(user_id="new-user")

    first = service.get_balance(ref)
    second = service.get_balance(ref)

    assert first.model_dump() == {"balance": 0, "free_balance": 0, "total_charged": 0}
    assert second == first
    accounts = list(session.exec(select(AccountModel).where(AccountModel.user_id == "new-user")))
    assert len(accounts) == 1


def test_reserve_confirm_scenario(service: LedgerService, session: Session, user, fund) -> None:
    fund(user, 100)
    amount = service.calculate_required_credits(125, 1)
    assert amount == 45

    result = service.reserve_credits(user, "job1", amount)
    assert result.success
    assert result.balance == 55
    reservation = result.reservation
    assert reservation.status == ReservationStatus.RESERVED
    assert reservation.expires_at - reservation.reserved_at == timedelta(minutes=30)

    assert service.confirm_deduction(reservation.reservation_id, "job1") is True
    assert service.get_balance(user).balance == 55
    assert service.confirm_deduction(reservation.reservation_id, "job1") is True
    assert service.get_balance(user).balance == 55

    entries = _entries(session, reservation.reservation_id)
    assert [(entry.type, entry.amount) for entry in entries] == [(LedgerEntryType.USE, -45)]
    assert service.get_reservation(reservation.reservation_id).status == ReservationStatus.CONFIRMED


def test_insufficient_credits_leaves_no_trace(
    service: LedgerService, session: Session, user, fund
) -> None:
    fund(user, 10)

    result = service.reserve_credits(user, "job2", 45)

    assert not result.success
    assert result.error == "INSUFFICIENT_CREDITS"
    assert result.balance == 10
    assert result.required == 45
    assert service.get_balance(user).balance == 10
    assert list(session.exec(select(ReservationModel))) == []


def test_duplicate_reserve_returns_same_reservation(
    service: LedgerService, user, fund, guard
) -> None:
    fund(user, 100)

    first = service.reserve_credits(user, "job-dup", 30)
    second = service.reserve_credits(user, "job-dup", 30)

    assert first.success
    assert second.error == "DUPLICATE_REQUEST"
    assert second.reservation.reservation_id == first.reservation.reservation_id
    assert service.get_balance(user).balance == 70
    assert guard.lookup("job-dup") == first.reservation.reservation_id


def test_duplicate_detected_without_guard(session: Session, settings, user, fund) -> None:
    fund(user, 100)
    first = LedgerService(session, settings=settings).reserve_credits(user, "job-x", 30)

    # A fresh guard stands in for a restarted process.
    again = LedgerService(session, settings=settings).reserve_credits(user, "job-x", 30)

    assert again.error == "DUPLICATE_REQUEST"
    assert again.reservation.reservation_id == first.reservation.reservation_id
    assert LedgerService(session, settings=settings).get_balance(user).balance == 70


def test_confirmed_job_still_counts_as_duplicate(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    first = service.reserve_credits(user, "job-c", 30)
    service.confirm_deduction(first.reservation.reservation_id, "job-c")

    again = service.reserve_credits(user, "job-c", 30)

    assert again.error == "DUPLICATE_REQUEST"
    assert service.get_balance(user).balance == 70


def test_refunded_job_can_reserve_again(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    first = service.reserve_credits(user, "job-r", 30)
    service.refund_credits(first.reservation.reservation_id, "job-r", "job failed")

    second = service.reserve_credits(user, "job-r", 30)

    assert second.success
    assert second.reservation.reservation_id != first.reservation.reservation_id
    assert service.get_balance(user).balance == 70


def test_live_reservation_unique_per_job_in_store(
    service: LedgerService, session: Session, user, fund
) -> None:
    fund(user, 100)
    first = service.reserve_credits(user, "job-u", 30)
    now = utcnow()

    with pytest.raises(IntegrityError):
        service.repository.add_reservation(
            account_id=first.reservation.account_id,
            job_id="job-u",
            amount=5,
            reserved_at=now,
            expires_at=now + timedelta(minutes=30),
        )
    session.rollback()


def test_reserve_race_on_same_job_rolls_back_debit(
    service: LedgerService, user, fund, monkeypatch
) -> None:
    fund(user, 100)
    winner = service.reserve_credits(user, "job-race", 30)
    service.guard.clear()
    # Simulate a caller whose lookup ran before the winner committed.
    monkeypatch.setattr(service, "_find_live_reservation", lambda job_id: None)

    loser = service.reserve_credits(user, "job-race", 30)

    assert loser.error == "DUPLICATE_REQUEST"
    assert loser.reservation.reservation_id == winner.reservation.reservation_id
    assert service.get_balance(user).balance == 70


def test_refund_restores_balance(service: LedgerService, session: Session, user, fund) -> None:
    fund(user, 100)
    reservation = service.reserve_credits(user, "job-f", 45).reservation

    refund = service.refund_credits(reservation.reservation_id, "job-f", "transcription failed")

    assert refund.refund_amount == 45
    assert refund.balance == 100
    assert service.get_balance(user).balance == 100
    stored = service.get_reservation(reservation.reservation_id)
    assert stored.status == ReservationStatus.REFUNDED
    assert stored.refunded_at is not None
    refund_entries = [
        entry for entry in _entries(session, reservation.reservation_id)
        if entry.type == LedgerEntryType.REFUND
    ]
    assert [(entry.amount, entry.balance_after, entry.description) for entry in refund_entries] == [
        (45, 100, "transcription failed")
    ]


def test_second_refund_is_rejected(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    reservation = service.reserve_credits(user, "job-f2", 45).reservation
    service.refund_credits(reservation.reservation_id, "job-f2", "cancelled")

    with pytest.raises(AlreadyRefundedError):
        service.refund_credits(reservation.reservation_id, "job-f2", "cancelled")

    assert service.get_balance(user).balance == 100


def test_partial_refund(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    reservation = service.reserve_credits(user, "job-p", 45).reservation

    refund = service.refund_credits(reservation.reservation_id, "job-p", "partial", 20)

    assert refund.refund_amount == 20
    assert service.get_balance(user).balance == 75


@pytest.mark.parametrize("partial", [0, -5, 46])
def test_partial_refund_out_of_range(service: LedgerService, user, fund, partial) -> None:
    fund(user, 100)
    reservation = service.reserve_credits(user, "job-bad", 45).reservation

    with pytest.raises(InvalidRefundAmountError):
        service.refund_credits(reservation.reservation_id, "job-bad", "oops", partial)

    assert service.get_balance(user).balance == 55
    assert service.get_reservation(reservation.reservation_id).status == ReservationStatus.RESERVED


def test_terminal_states_do_not_reverse(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    confirmed = service.reserve_credits(user, "job-t1", 10).reservation
    service.confirm_deduction(confirmed.reservation_id, "job-t1")
    refunded = service.reserve_credits(user, "job-t2", 10).reservation
    service.refund_credits(refunded.reservation_id, "job-t2", "failed")

    with pytest.raises(AlreadyFinalizedError):
        service.refund_credits(confirmed.reservation_id, "job-t1", "too late")
    with pytest.raises(AlreadyFinalizedError):
        service.confirm_deduction(refunded.reservation_id, "job-t2")

    assert service.get_balance(user).balance == 90


def test_refund_after_stale_read_credits_once(
    service: LedgerService, session: Session, user, fund
) -> None:
    fund(user, 100)
    reservation = service.reserve_credits(user, "job-s1", 40).reservation
    service.refund_credits(reservation.reservation_id, "job-s1", "first callback")

    with pytest.MonkeyPatch.context() as patch:
        original = service.repository.get_reservation

        def _stale(reservation_id, job_id=None):
            row = original(reservation_id, job_id)
            set_committed_value(row, "status", ReservationStatus.RESERVED)
            return row

        patch.setattr(service.repository, "get_reservation", _stale)
        with pytest.raises(AlreadyRefundedError):
            service.refund_credits(reservation.reservation_id, "job-s1", "second callback")
        assert service.expire_reservation(reservation.reservation_id) is False
        with pytest.raises(AlreadyFinalizedError):
            service.confirm_deduction(reservation.reservation_id, "job-s1")

    assert service.get_balance(user).balance == 100
    entries = _entries(session, reservation.reservation_id)
    assert sorted(entry.type.value for entry in entries) == ["refund", "reservation"]
    stored = service.get_reservation(reservation.reservation_id)
    assert stored.status == ReservationStatus.REFUNDED
    assert stored.confirmed_at is None


def test_unknown_reservation_pairing(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    reservation = service.reserve_credits(user, "job-n", 10).reservation

    with pytest.raises(ReservationNotFoundError):
        service.confirm_deduction(reservation.reservation_id, "other-job")
    with pytest.raises(ReservationNotFoundError):
        service.refund_credits("rsv_missing", "job-n", "failed")
    with pytest.raises(ReservationNotFoundError):
        service.get_reservation("rsv_missing")


@pytest.mark.parametrize(("job_id", "amount"), [("", 10), ("job", 0), ("job", -3)])
def test_reserve_rejects_invalid_input(service: LedgerService, user, job_id, amount) -> None:
    with pytest.raises(InvalidInputError):
        service.reserve_credits(user, job_id, amount)


def test_anonymous_accounts_spend_free_balance_only(service: LedgerService) -> None:
    anon = AccountRef(device_id="device-1", ip_address="203.0.113.7")

    assert service.get_balance(anon).free_balance == 50
    result = service.reserve_credits(anon, "anon-job", 30)
    assert result.success
    assert result.balance == 20

    balance = service.get_balance(anon)
    assert (balance.balance, balance.free_balance) == (0, 20)

    service.refund_credits(result.reservation.reservation_id, "anon-job", "failed")
    balance = service.get_balance(anon)
    assert (balance.balance, balance.free_balance) == (0, 50)


def test_anonymous_identity_by_ip_only(service: LedgerService) -> None:
    by_ip = AccountRef(ip_address="198.51.100.1")
    service.reserve_credits(by_ip, "ip-job", 5)

    assert service.get_balance(by_ip).free_balance == 45


def test_anonymous_identity_requires_device_or_ip(service: LedgerService) -> None:
    with pytest.raises(InvalidInputError):
        service.get_balance(AccountRef())


def test_charge_is_idempotent_per_payment(service: LedgerService, user) -> None:
    first = service.charge_credits(user, 500, "pay-1", "Starter pack")
    replay = service.charge_credits(user, 500, "pay-1", "Starter pack")

    assert not first.replayed
    assert replay.replayed
    balance = service.get_balance(user)
    assert (balance.balance, balance.total_charged) == (500, 500)

    with pytest.raises(InvalidInputError):
        service.charge_credits(user, 900, "pay-1")


def test_concurrent_payment_delivery_credits_once(
    service: LedgerService, user, monkeypatch
) -> None:
    service.charge_credits(user, 500, "pay-2")
    original = service.repository.find_charge
    calls = []

    def miss_first(payment_id):
        calls.append(payment_id)
        return None if len(calls) == 1 else original(payment_id)

    monkeypatch.setattr(service.repository, "find_charge", miss_first)
    replay = service.charge_credits(user, 500, "pay-2")

    assert replay.replayed
    balance = service.get_balance(user)
    assert (balance.balance, balance.total_charged) == (500, 500)


def test_charge_requires_registered_account(service: LedgerService) -> None:
    with pytest.raises(InvalidInputError):
        service.charge_credits(AccountRef(device_id="device-9"), 100, "pay-anon")


def test_ledger_replay_reproduces_balances(
    service: LedgerService, session: Session, user, fund
) -> None:
    fund(user, 200)
    a = service.reserve_credits(user, "a", 45).reservation
    b = service.reserve_credits(user, "b", 60).reservation
    c = service.reserve_credits(user, "c", 20).reservation
    service.confirm_deduction(a.reservation_id, "a")
    service.refund_credits(b.reservation_id, "b", "failed", 25)
    service.refund_credits(c.reservation_id, "c", "cancelled")
    fund(user, 30)

    account = service.repository.find_account(user)
    entries = service.repository.list_entries(account.id, newest_first=False)
    running = entries[0].balance_after - entries[0].amount
    for entry in entries:
        running += entry.amount
        assert entry.balance_after == running
    assert running == service.get_balance(user).balance == 200 - 45 - 60 + 25 + 30


def test_list_history_filters_and_pages(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    for job in ("h1", "h2", "h3"):
        service.reserve_credits(user, job, 10)

    first_page = service.list_history(user, page=1, limit=2)
    assert first_page.total == 4
    assert first_page.total_pages == 2
    assert [entry.job_id for entry in first_page.items] == ["h3", "h2"]

    second_page = service.list_history(user, page=2, limit=2)
    assert [entry.job_id for entry in second_page.items] == ["h1", None]

    charges = service.list_history(user, HistoryFilters(type=LedgerEntryType.CHARGE))
    assert [entry.amount for entry in charges.items] == [100]

    future = service.list_history(user, HistoryFilters(start=utcnow() + timedelta(days=1)))
    assert future.total == 0


def test_list_history_date_bounds_are_utc(service: LedgerService, user, fund) -> None:
    fund(user, 100)
    now = utcnow()

    naive = service.list_history(
        user,
        HistoryFilters(
            start=(now - timedelta(hours=1)).replace(tzinfo=None),
            end=(now + timedelta(hours=1)).replace(tzinfo=None),
        ),
    )
    assert naive.total == 1

    seoul = timezone(timedelta(hours=9))
    shifted = service.list_history(
        user, HistoryFilters(start=(now + timedelta(minutes=30)).astimezone(seoul))
    )
    assert shifted.total == 0

    with pytest.raises(InvalidInputError):
        service.list_history(
            user,
            HistoryFilters(start=now, end=(now - timedelta(days=1)).replace(tzinfo=None)),
        )


def test_statement_bug_is_not_reported_as_outage(
    service: LedgerService, session: Session, user, fund, monkeypatch
) -> None:
    fund(user, 100)

    def _fail() -> None:
        raise StatementError("bad bind", "UPDATE accounts", {}, ValueError("naive datetime"))

    with monkeypatch.context() as patch:
        patch.setattr(session, "commit", _fail)
        with pytest.raises(StatementError):
            service.reserve_credits(user, "job-bug", 30)

    assert service.get_balance(user).balance == 100


def test_list_history_unknown_identity_is_empty(service: LedgerService, session: Session) -> None:
    history = service.list_history(AccountRef(user_id="ghost"))

    assert history.items == []
    assert history.total == 0
    assert list(session.exec(select(AccountModel))) == []


def test_list_history_rejects_oversized_page(service: LedgerService, user) -> None:
    with pytest.raises(InvalidInputError):
        service.list_history(user, limit=1000)


def test_commit_failure_surfaces_store_unavailable(
    service: LedgerService, session: Session, user, fund, monkeypatch
) -> None:
    fund(user, 100)

    def _fail() -> None:
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    with monkeypatch.context() as patch:
        patch.setattr(session, "commit", _fail)
        with pytest.raises(StoreUnavailableError):
            service.reserve_credits(user, "job-io", 30)

    assert service.get_balance(user).balance == 100
    assert service.guard.lookup("job-io") is None
    assert list(session.exec(select(ReservationModel))) == []
