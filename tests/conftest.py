import pytest

from clinic_pos.charge import ChargeOrchestrator
from clinic_pos.config import PosConfig
from clinic_pos.errors import NotFoundError
from clinic_pos.store import ChargeStore


class FakeStripe:
    """Stands in for StripeClient. Each retrieve pops the next scripted status."""

    def __init__(self, statuses=()):
        self.calls = []
        self.statuses = list(statuses)
        self.intents = {}
        self.refunds = {}
        self.fail_on = {}
        self.api_errors = 0
        self._seq = 0

    @property
    def api_calls(self):
        return len(self.calls)

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)

    def add_intent(self, pi_id, status, amount=1000, description="", patient_name="", latest_charge=None):
        if status == "succeeded" and latest_charge is None:
            latest_charge = f"ch_{pi_id}"
        self.intents[pi_id] = {
            "id": pi_id,
            "object": "payment_intent",
            "status": status,
            "amount": amount,
            "currency": "usd",
            "description": description,
            "metadata": {"patient_name": patient_name, "source": "clinic-pos"},
            "latest_charge": latest_charge,
        }
        return self.intents[pi_id]

    def _maybe_fail(self, name):
        exc = self.fail_on.get(name)
        if exc is not None:
            self.api_errors += 1
            raise exc

    def create_payment_intent(self, params):
        self.calls.append(("create_payment_intent", params))
        self._maybe_fail("create_payment_intent")
        self._seq += 1
        pi = self.add_intent(
            f"pi_test_{self._seq}",
            "requires_payment_method",
            amount=int(params["amount"]),
            description=params.get("description", ""),
            patient_name=params.get("metadata[patient_name]", ""),
        )
        return dict(pi)

    def process_payment_intent(self, reader_id, payment_intent_id):
        self.calls.append(("process_payment_intent", (reader_id, payment_intent_id)))
        self._maybe_fail("process_payment_intent")
        return {"id": reader_id, "action": {"type": "process_payment_intent", "status": "in_progress"}}

    def present_payment_method(self, reader_id):
        self.calls.append(("present_payment_method", reader_id))
        return {"id": reader_id}

    def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("retrieve_payment_intent", payment_intent_id))
        if payment_intent_id not in self.intents:
            raise NotFoundError(f"No such payment_intent: '{payment_intent_id}'")
        pi = self.intents[payment_intent_id]
        if self.statuses:
            status = self.statuses.pop(0)
            if isinstance(status, Exception):
                self.api_errors += 1
                raise status
            pi["status"] = status
            if status == "succeeded" and not pi["latest_charge"]:
                pi["latest_charge"] = f"ch_{payment_intent_id}"
        return dict(pi)

    def create_refund(self, charge_id, idempotency_key=None, metadata=None):
        self.calls.append(("create_refund", {"charge": charge_id, "idempotency_key": idempotency_key,
                                             "metadata": metadata}))
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]
        refund = {"id": f"re_{len(self.refunds) + 1}", "charge": charge_id, "status": "succeeded",
                  "amount": next((pi["amount"] for pi in self.intents.values()
                                  if pi["latest_charge"] == charge_id), 0)}
        self.refunds[idempotency_key] = refund
        return refund

    def retrieve_reader(self, reader_id):
        self.calls.append(("retrieve_reader", reader_id))
        return {"id": reader_id, "object": "terminal.reader", "label": "Front desk",
                "device_type": "bbpos_wisepos_e", "status": "online", "action": None, "livemode": False}


@pytest.fixture
def config():
    return PosConfig(stripe_secret_key="sk_test_123", reader_id="tmr_test", poll_interval=1.5, poll_attempts=80)


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(config, fake_stripe, sleeps):
    return ChargeOrchestrator(config, client=fake_stripe, sleep=sleeps.append)


@pytest.fixture
def store(tmp_path):
    s = ChargeStore(str(tmp_path / "charges.db"))
    yield s
    s.close()
