"""Tests for JobEscrow — proves the lifecycle and custody invariants hold."""

import threading

import pytest

from jobescrow.errors import (
    InsufficientDeposit,
    InsufficientFunds,
    InvalidParameter,
    InvalidState,
    NotAuthorized,
    TransferFailed,
)
from jobescrow.escrow.job_escrow import JobEscrow
from jobescrow.ledger.host import TransferResult
from jobescrow.ledger.memory import InMemoryLedger
from jobescrow.models.digest import content_digest
from jobescrow.models.job import JobState

CREATOR = "carol"
SELLER = "sally"
BUYER = "bob"
H1 = content_digest(b"first delivery")
H2 = content_digest(b"second delivery")


@pytest.fixture
def ledger() -> InMemoryLedger:
    ledger = InMemoryLedger()
    ledger.mint(BUYER, 1_000)
    ledger.mint("mallory", 1_000)
    return ledger


def _make_escrow(
    ledger: InMemoryLedger,
    amount: int = 100,
    cut: int = 10,
    deposit: int = 50,
    mark_canceled: bool = False,
) -> JobEscrow:
    return JobEscrow.create(
        ledger,
        job_id="J-001",
        name="Logo design",
        seller=SELLER,
        amount=amount,
        cut_percentage=cut,
        deposit_percentage=deposit,
        creator=CREATOR,
        mark_canceled=mark_canceled,
    )


def _submitted(ledger: InMemoryLedger, **kwargs) -> JobEscrow:
    escrow = _make_escrow(ledger, **kwargs)
    escrow.receive_funds(BUYER, escrow.get_deposit_amount())
    escrow.submit(CREATOR, H1)
    return escrow


class TestCreation:
    def test_derives_cut_and_deposit(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        assert escrow.get_state() == JobState.CREATED
        assert escrow.get_deposit_amount() == 50
        assert escrow.get_cut_amount() == 10
        assert escrow.get_buyer() is None
        assert escrow.get_submission_hash() is None
        assert escrow.get_rejection_reason() is None

    def test_flooring_happens_after_multiplying(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger, amount=99, cut=33, deposit=67)
        assert escrow.get_cut_amount() == 32
        assert escrow.get_deposit_amount() == 66

    @pytest.mark.parametrize("cut,deposit", [(101, 50), (10, 101), (-1, 50), (10, -1)])
    def test_rejects_out_of_range_percentages(
        self, ledger: InMemoryLedger, cut: int, deposit: int,
    ) -> None:
        with pytest.raises(InvalidParameter, match="within"):
            _make_escrow(ledger, cut=cut, deposit=deposit)

    def test_boundary_percentages_allowed(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger, cut=0, deposit=100)
        assert escrow.get_cut_amount() == 0
        assert escrow.get_deposit_amount() == 100

    def test_rejects_negative_amount(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(InvalidParameter):
            _make_escrow(ledger, amount=-1)

    def test_rejects_blank_job_id(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(InvalidParameter):
            JobEscrow.create(ledger, " ", "x", SELLER, 10, 0, 0, CREATOR)


class TestDeposit:
    def test_short_deposit_fails_and_changes_nothing(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        with pytest.raises(InsufficientDeposit) as exc:
            escrow.receive_funds(BUYER, 49)
        assert exc.value.required == 50
        assert escrow.get_state() == JobState.CREATED
        assert escrow.get_buyer() is None
        assert escrow.get_balance() == 0
        assert ledger.balance_of(BUYER) == 1_000

    def test_deposit_sets_buyer_once(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        assert escrow.receive_funds(BUYER, 60) == JobState.DEPOSITED
        assert escrow.get_buyer() == BUYER
        assert escrow.get_balance() == 60

    def test_second_deposit_is_invalid_state(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 50)
        with pytest.raises(InvalidState):
            escrow.receive_funds("mallory", 50)
        assert escrow.get_buyer() == BUYER
        assert escrow.get_balance() == 50
        assert ledger.balance_of("mallory") == 1_000

    def test_zero_deposit_when_none_expected(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger, deposit=0)
        escrow.receive_funds(BUYER, 0)
        assert escrow.get_state() == JobState.DEPOSITED
        assert escrow.get_buyer() == BUYER

    def test_unfunded_caller_fails_transfer(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        with pytest.raises(TransferFailed):
            escrow.receive_funds("pauper", 50)
        assert escrow.get_state() == JobState.CREATED
        assert escrow.get_buyer() is None

    def test_negative_value_rejected(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        with pytest.raises(InvalidParameter):
            escrow.receive_funds(BUYER, -1)


class TestSubmission:
    def test_creator_submits_after_deposit(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 50)
        assert escrow.submit(CREATOR, H1) == JobState.SUBMITTED
        assert escrow.get_submission_hash() == H1

    def test_hex_digest_accepted(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 50)
        escrow.submit(CREATOR, "0x" + H1.hex())
        assert escrow.get_submission_hash() == H1

    def test_submit_before_deposit_is_invalid(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        with pytest.raises(InvalidState):
            escrow.submit(CREATOR, H1)

    def test_non_creator_rejected_in_every_state(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        with pytest.raises(NotAuthorized):
            escrow.submit(SELLER, H1)
        escrow.receive_funds(BUYER, 50)
        with pytest.raises(NotAuthorized):
            escrow.submit(BUYER, H1)
        escrow.submit(CREATOR, H1)
        with pytest.raises(NotAuthorized):
            escrow.submit(SELLER, H2)
        assert escrow.get_submission_hash() == H1

    def test_bad_digest_leaves_state(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 50)
        with pytest.raises(InvalidParameter):
            escrow.submit(CREATOR, b"\x00" * 31)
        assert escrow.get_state() == JobState.DEPOSITED
        assert escrow.get_submission_hash() is None

    def test_value_while_deposited_is_rejected(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 50)
        with pytest.raises(InvalidState):
            escrow.receive_funds(BUYER, 10)
        assert escrow.get_balance() == 50


class TestChangeRequests:
    def test_change_then_resubmit(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        assert escrow.request_change(CREATOR) == JobState.CHANGE_REQUESTED
        escrow.submit(CREATOR, H2)
        assert escrow.get_state() == JobState.SUBMITTED
        assert escrow.get_submission_hash() == H2

    def test_request_change_only_from_submitted(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        with pytest.raises(InvalidState):
            escrow.request_change(CREATOR)
        escrow.receive_funds(BUYER, 50)
        with pytest.raises(InvalidState):
            escrow.request_change(CREATOR)

    def test_request_change_creator_only(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        with pytest.raises(NotAuthorized):
            escrow.request_change(BUYER)
        assert escrow.get_state() == JobState.SUBMITTED

    def test_value_while_change_requested_is_rejected(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        escrow.request_change(CREATOR)
        with pytest.raises(InvalidState):
            escrow.receive_funds(BUYER, 50)
        assert escrow.get_balance() == 50


class TestFinalPayment:
    def test_end_to_end_payout(self, ledger: InMemoryLedger) -> None:
        """amount=100, cut=10%, deposit=50%; buyer pays 60 then 40."""
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 60)
        assert escrow.get_balance() == 60
        assert escrow.get_buyer() == BUYER
        escrow.submit(CREATOR, H1)
        assert escrow.get_submission_hash() == H1

        assert escrow.receive_funds(BUYER, 40) == JobState.FINISHED
        assert ledger.balance_of(CREATOR) == 10
        assert ledger.balance_of(SELLER) == 90
        assert escrow.get_balance() == 0
        assert ledger.balance_of(BUYER) == 900

    def test_short_payment_is_retained(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger, deposit=20)
        escrow.receive_funds(BUYER, 20)
        escrow.submit(CREATOR, H1)
        with pytest.raises(InsufficientFunds) as exc:
            escrow.receive_funds(BUYER, 10)
        assert exc.value.balance == 30
        assert escrow.get_balance() == 30
        assert escrow.get_state() == JobState.SUBMITTED
        assert ledger.balance_of(BUYER) == 970

    def test_payments_accumulate_until_amount(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        with pytest.raises(InsufficientFunds):
            escrow.receive_funds(BUYER, 25)
        assert escrow.receive_funds(BUYER, 25) == JobState.FINISHED
        assert ledger.balance_of(SELLER) == 90

    def test_overpayment_goes_to_seller(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        escrow.receive_funds(BUYER, 70)
        assert ledger.balance_of(CREATOR) == 10
        assert ledger.balance_of(SELLER) == 110

    def test_zero_cut_skips_creator(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger, cut=0)
        escrow.receive_funds(BUYER, 50)
        history = ledger.history()
        assert all(t.recipient != CREATOR for t in history)
        assert ledger.balance_of(SELLER) == 100

    def test_anyone_may_pay_while_submitted(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        escrow.receive_funds("mallory", 50)
        assert escrow.get_state() == JobState.FINISHED
        assert escrow.get_buyer() == BUYER

    def test_finished_rejects_value(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        escrow.receive_funds(BUYER, 50)
        with pytest.raises(InvalidState):
            escrow.receive_funds(BUYER, 1)


class TestAtomicity:
    def test_seller_rejection_rolls_back_everything(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        ledger.reject_incoming(SELLER)
        with pytest.raises(TransferFailed) as exc:
            escrow.receive_funds(BUYER, 50)
        assert exc.value.purpose == "seller payment"
        assert escrow.get_state() == JobState.SUBMITTED
        assert escrow.get_balance() == 50
        assert ledger.balance_of(CREATOR) == 0
        assert ledger.balance_of(SELLER) == 0
        assert ledger.balance_of(BUYER) == 950

    def test_retry_after_rejection_succeeds(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        ledger.reject_incoming(SELLER)
        with pytest.raises(TransferFailed):
            escrow.receive_funds(BUYER, 50)
        ledger.accept_incoming(SELLER)
        assert escrow.receive_funds(BUYER, 50) == JobState.FINISHED

    def test_creator_rejection_rolls_back(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        ledger.reject_incoming(CREATOR)
        with pytest.raises(TransferFailed) as exc:
            escrow.receive_funds(BUYER, 50)
        assert exc.value.purpose == "cut"
        assert escrow.get_state() == JobState.SUBMITTED
        assert ledger.balance_of(SELLER) == 0

    def test_refund_rejection_keeps_reason_unset(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 50)
        ledger.reject_incoming(BUYER)
        with pytest.raises(TransferFailed):
            escrow.cancel(CREATOR, "changed my mind")
        assert escrow.get_rejection_reason() is None
        assert escrow.get_balance() == 50


class TestCancel:
    def test_cancel_before_deposit(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        assert escrow.cancel(CREATOR, "not needed") == 0
        assert escrow.get_rejection_reason() == "not needed"
        assert escrow.get_state() == JobState.CREATED

    def test_cancel_after_deposit_refunds_buyer(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 60)
        assert escrow.cancel(CREATOR, "seller unavailable") == 60
        assert ledger.balance_of(BUYER) == 1_000
        assert escrow.get_balance() == 0
        assert escrow.get_state() == JobState.DEPOSITED

    @pytest.mark.parametrize("change_requested", [False, True])
    def test_cancel_refused_during_review(
        self, ledger: InMemoryLedger, change_requested: bool,
    ) -> None:
        escrow = _submitted(ledger)
        if change_requested:
            escrow.request_change(CREATOR)
        with pytest.raises(InvalidState):
            escrow.cancel(CREATOR, "too late")
        assert escrow.get_rejection_reason() is None
        assert escrow.get_balance() == 50

    def test_cancel_after_finish_is_zero_refund(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        escrow.receive_funds(BUYER, 50)
        assert escrow.cancel(CREATOR, "post-mortem") == 0
        assert escrow.get_state() == JobState.FINISHED
        assert escrow.get_rejection_reason() == "post-mortem"

    def test_cancel_creator_only(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger)
        with pytest.raises(NotAuthorized):
            escrow.cancel(BUYER, "nope")

    def test_canceled_created_job_still_accepts_deposit(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.cancel(CREATOR, "pause")
        escrow.receive_funds("mallory", 50)
        assert escrow.get_buyer() == "mallory"
        assert escrow.get_state() == JobState.DEPOSITED


class TestMarkCanceled:
    def test_cancel_moves_to_canceled(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger, mark_canceled=True)
        escrow.receive_funds(BUYER, 50)
        escrow.cancel(CREATOR, "closed")
        assert escrow.get_state() == JobState.CANCELED
        assert ledger.balance_of(BUYER) == 1_000

    def test_canceled_job_rejects_everything(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger, mark_canceled=True)
        escrow.cancel(CREATOR, "closed")
        with pytest.raises(InvalidState):
            escrow.receive_funds(BUYER, 50)
        with pytest.raises(InvalidState):
            escrow.submit(CREATOR, H1)
        assert escrow.cancel(CREATOR, "again") == 0
        assert escrow.get_state() == JobState.CANCELED

    def test_finished_stays_finished(self, ledger: InMemoryLedger) -> None:
        escrow = _submitted(ledger, mark_canceled=True)
        escrow.receive_funds(BUYER, 50)
        escrow.cancel(CREATOR, "archived")
        assert escrow.get_state() == JobState.FINISHED


class TestSnapshotView:
    def test_snapshot_reports_balance(self, ledger: InMemoryLedger) -> None:
        escrow = _make_escrow(ledger)
        escrow.receive_funds(BUYER, 55)
        data = escrow.snapshot()
        assert data["balance"] == 55
        assert data["buyer"] == BUYER
        assert data["state"] == "deposited"


class _PausingLedger(InMemoryLedger):
    """Blocks inside transfers to one recipient until released."""

    def __init__(self, pause_for: str) -> None:
        super().__init__()
        self.pause_for = pause_for
        self.paused = threading.Event()
        self.release = threading.Event()

    def transfer(self, sender: str, recipient: str, amount: int) -> TransferResult:
        if recipient == self.pause_for:
            self.paused.set()
            self.release.wait(5)
        return super().transfer(sender, recipient, amount)


class TestConcurrentViews:
    def test_views_never_see_rolled_back_payout(self) -> None:
        ledger = _PausingLedger(pause_for=SELLER)
        ledger.mint(BUYER, 1_000)
        escrow = _submitted(ledger)
        ledger.reject_incoming(SELLER)

        errors = []

        def finalize() -> None:
            try:
                escrow.receive_funds(BUYER, 50)
            except TransferFailed as e:
                errors.append(e)

        seen = []

        def view() -> None:
            seen.append((escrow.get_balance(), ledger.balance_of(CREATOR), escrow.snapshot()["state"]))

        payer = threading.Thread(target=finalize)
        payer.start()
        assert ledger.paused.wait(5)

        reader = threading.Thread(target=view)
        reader.start()
        reader.join(0.2)
        assert seen == []

        ledger.release.set()
        payer.join()
        reader.join()
        assert len(errors) == 1
        assert seen == [(50, 0, "submitted")]
