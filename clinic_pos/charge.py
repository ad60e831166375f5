"""
Charge orchestration
====================
Server-driven card-present charge against a single Stripe Terminal reader.

Flow:
  1. Create a PaymentIntent (card_present, automatic capture)
  2. Send it to the reader (reader prompts the patient to tap/insert)
  3. Poll the PaymentIntent until it settles or the poll budget runs out

There are no webhooks: the outcome is only ever observed by polling. Status
lookup and refund work from a PaymentIntent id alone, so a charge whose
polling loop was lost can still be followed up.
"""
from __future__ import annotations

import enum
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

from .config import PosConfig
from .errors import (
    ConfigurationError,
    NotFoundError,
    PreconditionError,
    UpstreamError,
    ValidationError,
)
from .store import ChargeStore
from .stripe_api import StripeClient

logger = logging.getLogger("clinic_pos.charge")

CURRENCY = "usd"
SOURCE_TAG = "clinic-pos"

# Finished background polls kept in memory; older ones are looked up in Stripe
MAX_KEPT_RESULTS = 500

# Statuses that mean "keep waiting"
TRANSIENT_STATUSES = ("requires_payment_method", "requires_action", "processing")


class ChargeOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    AUTHORIZED_PENDING_CAPTURE = "authorized_pending_capture"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"


def parse_amount(value: Any) -> int:
    """Convert a dollar amount ("250", "12.345", 9.99) to cents, rounding half up."""
    if value is None or isinstance(value, bool):
        raise ValidationError("Amount is required")
    text = str(value).strip()
    if not text:
        raise ValidationError("Amount is required")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValidationError(f"Amount is not a number: {text}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be > 0")
    try:
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise ValidationError("Amount is too large")


def format_amount(cents: Optional[int]) -> str:
    return f"${Decimal(cents or 0) / 100:.2f}"


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


@dataclass
class ChargeRequest:
    amount: int                         # cents
    description: str
    patient_name: Optional[str] = None
    receipt_email: Optional[str] = None

    def to_params(self) -> Dict[str, str]:
        params = {
            "amount": str(self.amount),
            "currency": CURRENCY,
            "payment_method_types[0]": "card_present",
            "capture_method": "automatic",
            "description": self.description,
            "metadata[patient_name]": self.patient_name or "",
            "metadata[source]": SOURCE_TAG,
        }
        if self.receipt_email:
            params["receipt_email"] = self.receipt_email
        return params


@dataclass
class PaymentSnapshot:
    """Point-in-time view of a PaymentIntent."""
    payment_intent_id: str
    status: str
    amount: int = 0
    description: str = ""
    patient_name: str = ""
    latest_charge: Optional[str] = None

    @classmethod
    def from_intent(cls, pi: Dict[str, Any]) -> "PaymentSnapshot":
        latest_charge = pi.get("latest_charge")
        if isinstance(latest_charge, dict):
            latest_charge = latest_charge.get("id")
        return cls(
            payment_intent_id=pi.get("id", ""),
            status=pi.get("status", ""),
            amount=int(pi.get("amount") or 0),
            description=pi.get("description") or "",
            patient_name=(pi.get("metadata") or {}).get("patient_name", ""),
            latest_charge=latest_charge,
        )

    @property
    def refundable(self) -> bool:
        return self.status == "succeeded"

    @property
    def amount_display(self) -> str:
        return format_amount(self.amount)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount_display"] = self.amount_display
        data["refundable"] = self.refundable
        return data


@dataclass
class ChargeResult:
    outcome: ChargeOutcome
    snapshot: PaymentSnapshot
    polls: int = 0

    @property
    def payment_intent_id(self) -> str:
        return self.snapshot.payment_intent_id

    @property
    def status(self) -> str:
        return self.snapshot.status

    @property
    def refundable(self) -> bool:
        return self.outcome == ChargeOutcome.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        data = self.snapshot.to_dict()
        data["outcome"] = self.outcome.value
        data["polls"] = self.polls
        data["refundable"] = self.refundable
        return data


@dataclass
class RefundResult:
    refund_id: str
    payment_intent_id: str
    charge_id: str
    amount: int = 0
    status: str = ""

    @property
    def amount_display(self) -> str:
        return format_amount(self.amount)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount_display"] = self.amount_display
        return data


class ChargeOrchestrator:
    """
    Runs charges on the configured reader and answers status/refund requests.

    One instance serves every request; the only shared state is the config,
    the optional ledger, and the results of background polls started with
    ``submit``.
    """

    def __init__(self, config: PosConfig, client: Optional[StripeClient] = None,
                 store: Optional[ChargeStore] = None, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._owns_client = client is None
        self.client = client or StripeClient(config.stripe_secret_key, config.api_url, config.api_timeout)
        self.store = store
        self._sleep = sleep
        self._lock = threading.Lock()
        self._results: "OrderedDict[str, ChargeResult]" = OrderedDict()
        self._threads: Dict[str, threading.Thread] = {}

    @property
    def reader_id(self) -> str:
        return self.config.reader_id

    # -- Validation ---------------------------------------------------------
    def prepare(self, amount: Any, patient_name: Optional[str] = None,
                receipt_email: Optional[str] = None, description: Optional[str] = None) -> ChargeRequest:
        """Check configuration and inputs. Makes no remote call."""
        if not self.reader_id:
            raise ConfigurationError("STRIPE_READER_ID is not set")
        if self._owns_client and not self.config.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")

        return ChargeRequest(
            amount=parse_amount(amount),
            description=_clean(description) or self.config.default_description,
            patient_name=_clean(patient_name),
            receipt_email=_clean(receipt_email),
        )

    # -- Charge flow --------------------------------------------------------
    def charge(self, amount: Any, patient_name: Optional[str] = None,
               receipt_email: Optional[str] = None, description: Optional[str] = None) -> ChargeResult:
        """Run a full charge and block until it settles or the poll budget runs out."""
        request = self.prepare(amount, patient_name, receipt_email, description)
        pi = self._create_and_dispatch(request)
        return self._poll(pi["id"], pi.get("status", ""))

    def submit(self, amount: Any, patient_name: Optional[str] = None,
               receipt_email: Optional[str] = None, description: Optional[str] = None) -> PaymentSnapshot:
        """
        Create and dispatch synchronously, then poll in a background thread.
        Returns straight away; use ``result`` to collect the outcome.
        """
        request = self.prepare(amount, patient_name, receipt_email, description)
        pi = self._create_and_dispatch(request)
        pi_id = pi["id"]

        t = threading.Thread(target=self._poll_in_background, args=(pi_id, pi.get("status", "")),
                             name=f"poll-{pi_id}", daemon=True)
        with self._lock:
            self._threads[pi_id] = t
        t.start()
        return PaymentSnapshot.from_intent(pi)

    def result(self, payment_intent_id: str) -> Optional[ChargeResult]:
        with self._lock:
            return self._results.get(payment_intent_id)

    def join(self, payment_intent_id: str, timeout: Optional[float] = None) -> Optional[ChargeResult]:
        """Wait for a background poll started by ``submit``."""
        with self._lock:
            t = self._threads.get(payment_intent_id)
        if t is not None:
            t.join(timeout)
        return self.result(payment_intent_id)

    def _poll_in_background(self, payment_intent_id: str, initial_status: str):
        try:
            result = self._poll(payment_intent_id, initial_status)
        except Exception:
            logger.exception(f"[CHARGE] Background poll for {payment_intent_id} crashed")
            # unresolved, so callers stop waiting and check the status themselves
            result = ChargeResult(ChargeOutcome.TIMED_OUT,
                                  PaymentSnapshot(payment_intent_id=payment_intent_id, status=initial_status))
        with self._lock:
            self._results[payment_intent_id] = result
            while len(self._results) > MAX_KEPT_RESULTS:
                self._results.popitem(last=False)
            self._threads.pop(payment_intent_id, None)

    def api_stats(self) -> Dict[str, int]:
        return {
            "calls": getattr(self.client, "api_calls", 0),
            "errors": getattr(self.client, "api_errors", 0),
        }

    def _create_and_dispatch(self, request: ChargeRequest) -> Dict[str, Any]:
        """
        Two Stripe calls, neither retried:
          1. POST /v1/payment_intents
          2. POST /v1/terminal/readers/{id}/process_payment_intent
        """
        logger.info(f"[CHARGE] Charge request: {request.amount}¢ '{request.description}'")

        pi = self.client.create_payment_intent(request.to_params())
        pi_id = pi.get("id")
        if not pi_id:
            raise UpstreamError("Stripe did not return a PaymentIntent id")
        logger.info(f"[CHARGE] PaymentIntent created: {pi_id} status={pi.get('status', '')}")
        self._remember_created(pi_id, request, pi.get("status", ""))

        action = self.client.process_payment_intent(self.reader_id, pi_id)
        action_status = (action.get("action") or {}).get("status", "")
        logger.info(f"[CHARGE] Sent {pi_id} to reader {self.reader_id}: {action_status}")

        if self.config.simulate_tap:
            self.client.present_payment_method(self.reader_id)
            logger.info(f"[CHARGE] Simulated card tap on reader {self.reader_id}")

        return pi

    def _poll(self, payment_intent_id: str, initial_status: str = "") -> ChargeResult:
        """
        Re-fetch the PaymentIntent every ``poll_interval`` seconds, at most
        ``poll_attempts`` times, and stop on the first settled status.
        """
        interval = self.config.poll_interval
        attempts = self.config.poll_attempts
        last_status = initial_status
        polls = 0

        logger.info(f"[CHARGE] Polling {payment_intent_id} (interval={interval}s, attempts={attempts})")

        for _ in range(attempts):
            self._sleep(interval)
            polls += 1
            try:
                pi = self.client.retrieve_payment_intent(payment_intent_id)
            except Exception as e:
                logger.warning(f"[CHARGE] Poll {polls} error: {e!r}")
                continue

            status = pi.get("status", "")
            if status != last_status:
                logger.info(f"[CHARGE] Poll {polls}: status={status}")
                self._remember_status(payment_intent_id, status)
            last_status = status
            snapshot = PaymentSnapshot.from_intent(pi)

            if status == "succeeded":
                logger.info(f"[CHARGE] Payment succeeded: {payment_intent_id} {snapshot.amount}¢")
                return self._finish(ChargeResult(ChargeOutcome.SUCCEEDED, snapshot, polls))

            if status == "requires_capture":
                logger.info(f"[CHARGE] Payment authorized, capture pending: {payment_intent_id}")
                return self._finish(ChargeResult(ChargeOutcome.AUTHORIZED_PENDING_CAPTURE, snapshot, polls))

            if status == "canceled":
                logger.info(f"[CHARGE] Payment canceled: {payment_intent_id}")
                return self._finish(ChargeResult(ChargeOutcome.CANCELED, snapshot, polls))

            if status not in TRANSIENT_STATUSES:
                logger.warning(f"[CHARGE] Unexpected status '{status}' for {payment_intent_id}, giving up")
                break
        else:
            logger.warning(f"[CHARGE] Poll budget exhausted for {payment_intent_id} "
                           f"after {attempts * interval:.0f}s")

        return self._unresolved(payment_intent_id, last_status, polls)

    def _unresolved(self, payment_intent_id: str, last_status: str, polls: int) -> ChargeResult:
        """One last fetch; report whatever the status is without judging it."""
        try:
            snapshot = PaymentSnapshot.from_intent(self.client.retrieve_payment_intent(payment_intent_id))
        except Exception as e:
            logger.warning(f"[CHARGE] Final fetch for {payment_intent_id} failed: {e}")
            snapshot = PaymentSnapshot(payment_intent_id=payment_intent_id, status=last_status)
        return self._finish(ChargeResult(ChargeOutcome.TIMED_OUT, snapshot, polls))

    def _finish(self, result: ChargeResult) -> ChargeResult:
        outcome = None if result.outcome == ChargeOutcome.TIMED_OUT else result.outcome.value
        self._remember_status(result.payment_intent_id, result.status, outcome)
        return result

    # -- Status & refund ----------------------------------------------------
    def lookup(self, payment_intent_id: Optional[str]) -> PaymentSnapshot:
        pi = self._retrieve(payment_intent_id)
        snapshot = PaymentSnapshot.from_intent(pi)
        self._remember_status(snapshot.payment_intent_id, snapshot.status)
        return snapshot

    def refund(self, payment_intent_id: Optional[str], idempotency_key: Optional[str] = None) -> RefundResult:
        """
        Refund a succeeded PaymentIntent in full.

        Unless ``idempotency_key`` is given, the key is derived from the charge
        id, so repeating the request returns the refund Stripe already made.
        """
        snapshot = PaymentSnapshot.from_intent(self._retrieve(payment_intent_id))
        if snapshot.status != "succeeded":
            raise PreconditionError(
                f"Only succeeded payments can be refunded ({snapshot.payment_intent_id} is {snapshot.status})"
            )
        if not snapshot.latest_charge:
            raise UpstreamError(f"PaymentIntent {snapshot.payment_intent_id} has no charge to refund")

        key = idempotency_key or f"refund-{snapshot.latest_charge}"
        refund = self.client.create_refund(
            snapshot.latest_charge,
            idempotency_key=key,
            metadata={"payment_intent": snapshot.payment_intent_id, "source": SOURCE_TAG},
        )
        result = RefundResult(
            refund_id=refund.get("id", ""),
            payment_intent_id=snapshot.payment_intent_id,
            charge_id=snapshot.latest_charge,
            amount=int(refund.get("amount") or snapshot.amount),
            status=refund.get("status", ""),
        )
        logger.info(f"[CHARGE] Refund {result.refund_id} for {result.payment_intent_id} "
                    f"({result.amount}¢, {result.status})")
        if self.store is not None:
            try:
                self.store.record_refund(result.payment_intent_id, result.refund_id)
            except sqlite3.Error as e:
                logger.error(f"[CHARGE] Failed to record refund: {e}")
        return result

    def reader_status(self) -> Dict[str, Any]:
        if not self.reader_id:
            raise ConfigurationError("STRIPE_READER_ID is not set")
        reader = self.client.retrieve_reader(self.reader_id)
        action = reader.get("action") or {}
        return {
            "reader_id": reader.get("id", self.reader_id),
            "label": reader.get("label", ""),
            "device_type": reader.get("device_type", "unknown"),
            "status": reader.get("status", "offline"),
            "action": action.get("type"),
            "action_status": action.get("status"),
            "livemode": bool(reader.get("livemode", False)),
        }

    def _retrieve(self, payment_intent_id: Optional[str]) -> Dict[str, Any]:
        payment_intent_id = _clean(payment_intent_id)
        if not payment_intent_id:
            raise NotFoundError("Missing PaymentIntent id (?pi=pi_...)")
        try:
            return self.client.retrieve_payment_intent(payment_intent_id)
        except NotFoundError:
            raise NotFoundError(f"No such PaymentIntent: {payment_intent_id}")

    # -- Ledger -------------------------------------------------------------
    def _remember_created(self, payment_intent_id: str, request: ChargeRequest, status: str):
        if self.store is None:
            return
        try:
            self.store.record_created(payment_intent_id, request.amount, status,
                                      description=request.description,
                                      patient_name=request.patient_name or "",
                                      reader_id=self.reader_id)
        except sqlite3.Error as e:
            logger.error(f"[CHARGE] Failed to record {payment_intent_id}: {e}")

    def _remember_status(self, payment_intent_id: str, status: str, outcome: Optional[str] = None):
        if self.store is None or not payment_intent_id:
            return
        try:
            self.store.update_status(payment_intent_id, status, outcome)
        except sqlite3.Error as e:
            logger.error(f"[CHARGE] Failed to update {payment_intent_id}: {e}")
