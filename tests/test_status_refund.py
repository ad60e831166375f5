import pytest

from clinic_pos.charge import ChargeOrchestrator
from clinic_pos.errors import NotFoundError, PreconditionError


def test_lookup_returns_snapshot(orchestrator, fake_stripe):
    fake_stripe.add_intent("pi_abc", "succeeded", amount=25000, description="Deposit", patient_name="Jane")

    snapshot = orchestrator.lookup("pi_abc")

    assert snapshot.payment_intent_id == "pi_abc"
    assert snapshot.status == "succeeded"
    assert snapshot.amount_display == "$250.00"
    assert snapshot.refundable
    assert snapshot.to_dict()["refundable"] is True


def test_lookup_pending_is_not_refundable(orchestrator, fake_stripe):
    fake_stripe.add_intent("pi_abc", "processing")
    assert not orchestrator.lookup("pi_abc").refundable


@pytest.mark.parametrize("pi", [None, "", "   "])
def test_lookup_missing_id(orchestrator, fake_stripe, pi):
    with pytest.raises(NotFoundError):
        orchestrator.lookup(pi)
    assert fake_stripe.calls == []


def test_lookup_unknown_id(orchestrator):
    with pytest.raises(NotFoundError) as exc:
        orchestrator.lookup("pi_nope")
    assert "pi_nope" in str(exc.value)


def test_lookup_is_repeatable(orchestrator, fake_stripe):
    fake_stripe.add_intent("pi_abc", "canceled")
    assert orchestrator.lookup("pi_abc") == orchestrator.lookup("pi_abc")
    assert fake_stripe.count("create_refund") == 0


@pytest.mark.parametrize("status", [
    "requires_payment_method", "requires_action", "processing", "requires_capture", "canceled", "",
])
def test_refund_requires_succeeded(orchestrator, fake_stripe, status):
    fake_stripe.add_intent("pi_abc", status)

    with pytest.raises(PreconditionError):
        orchestrator.refund("pi_abc")

    assert fake_stripe.count("create_refund") == 0


def test_refund_unknown_id(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.refund("pi_nope")


def test_refund_succeeded_payment(orchestrator, fake_stripe):
    fake_stripe.add_intent("pi_abc", "succeeded", amount=25000, latest_charge="ch_123")

    result = orchestrator.refund("pi_abc")

    assert result.refund_id == "re_1"
    assert result.charge_id == "ch_123"
    assert result.amount_display == "$250.00"
    _, call = fake_stripe.calls[-1]
    assert call["charge"] == "ch_123"
    assert call["idempotency_key"] == "refund-ch_123"
    assert call["metadata"]["payment_intent"] == "pi_abc"


def test_repeated_refund_reuses_idempotency_key(orchestrator, fake_stripe):
    fake_stripe.add_intent("pi_abc", "succeeded", latest_charge="ch_123")

    first = orchestrator.refund("pi_abc")
    second = orchestrator.refund("pi_abc")

    assert first.refund_id == second.refund_id
    assert len(fake_stripe.refunds) == 1


def test_explicit_idempotency_key(orchestrator, fake_stripe):
    fake_stripe.add_intent("pi_abc", "succeeded", latest_charge="ch_123")

    orchestrator.refund("pi_abc")
    other = orchestrator.refund("pi_abc", idempotency_key="partial-2")

    assert other.refund_id == "re_2"
    assert fake_stripe.calls[-1][1]["idempotency_key"] == "partial-2"


def test_refund_is_recorded_in_store(config, fake_stripe, store):
    orchestrator = ChargeOrchestrator(config, client=fake_stripe, store=store, sleep=lambda s: None)
    fake_stripe.statuses = ["succeeded"]
    orchestrator.charge("30")

    orchestrator.refund("pi_test_1")

    assert store.get("pi_test_1")["refund_id"] == "re_1"


def test_reader_status(orchestrator):
    reader = orchestrator.reader_status()
    assert reader["reader_id"] == "tmr_test"
    assert reader["status"] == "online"
    assert reader["device_type"] == "bbpos_wisepos_e"
    assert reader["action"] is None
