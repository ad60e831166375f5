#!/usr/bin/env python3
"""
Clinic POS server
=================
Operator-facing Flask app in front of the charge orchestrator.

HTML pages (front desk):
  GET  /              charge form
  POST /charge        run a charge, block until it settles (max ~2 min)
  GET  /status?pi=    PaymentIntent status
  GET  /refund?pi=    refund a succeeded PaymentIntent

JSON API:
  POST /api/charges               start a charge, poll in the background
  GET  /api/charges               recent charges from the local ledger
  GET  /api/charges/<pi>          status (+ outcome once polling finished)
  POST /api/charges/<pi>/refund   refund
  GET  /api/reader                reader status
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, render_template, request
from flask_cors import CORS

from .charge import ChargeOrchestrator
from .config import PosConfig
from .errors import PosError
from .store import ChargeStore

logger = logging.getLogger("clinic_pos.server")


def build_orchestrator(config: PosConfig) -> ChargeOrchestrator:
    store = ChargeStore(config.db_path) if config.db_path else None
    return ChargeOrchestrator(config, store=store)


def _payload() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        return body
    return request.form.to_dict()


def create_app(config: Optional[PosConfig] = None,
               orchestrator: Optional[ChargeOrchestrator] = None) -> Flask:
    config = config or PosConfig.from_env()
    orchestrator = orchestrator or build_orchestrator(config)

    app = Flask(__name__)
    app.config["POS"] = config
    app.extensions["charge_orchestrator"] = orchestrator
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    @app.errorhandler(PosError)
    def handle_pos_error(e: PosError):
        logger.warning(f"{request.method} {request.path} failed ({e.kind}): {e.message}")
        if request.path.startswith("/api/"):
            return jsonify(e.to_dict()), e.status_code
        return render_template("error.html", error=e), e.status_code

    # -- Front desk pages ---------------------------------------------------
    @app.get("/")
    def index():
        return render_template("index.html", reader_id=config.reader_id, live_mode=config.live_mode)

    @app.post("/charge")
    def charge():
        form = request.form
        result = orchestrator.charge(
            form.get("amount"),
            patient_name=form.get("patient_name"),
            receipt_email=form.get("receipt_email"),
            description=form.get("description"),
        )
        return render_template("result.html", result=result, snapshot=result.snapshot)

    @app.get("/status")
    def status():
        snapshot = orchestrator.lookup(request.args.get("pi"))
        return render_template("status.html", snapshot=snapshot)

    @app.route("/refund", methods=["GET", "POST"])
    def refund():
        pi = request.values.get("pi")
        result = orchestrator.refund(pi)
        return render_template("refund.html", refund=result)

    @app.get("/health")
    def health():
        return jsonify({"ok": True, "api_stats": orchestrator.api_stats()})

    # -- JSON API -----------------------------------------------------------
    @app.post("/api/charges")
    def api_submit():
        body = _payload()
        snapshot = orchestrator.submit(
            body.get("amount"),
            patient_name=body.get("patient_name"),
            receipt_email=body.get("receipt_email"),
            description=body.get("description"),
        )
        return jsonify({"ok": True, "payment_intent_id": snapshot.payment_intent_id,
                        "status": snapshot.status, "amount": snapshot.amount}), 202

    @app.get("/api/charges")
    def api_recent():
        if orchestrator.store is None:
            return jsonify({"ok": True, "charges": [], "ledger": False})
        limit = request.args.get("limit", 50, type=int)
        return jsonify({"ok": True, "charges": orchestrator.store.recent(limit), "ledger": True})

    @app.get("/api/charges/<payment_intent_id>")
    def api_status(payment_intent_id: str):
        snapshot = orchestrator.lookup(payment_intent_id)
        data = {"ok": True, "payment": snapshot.to_dict()}
        result = orchestrator.result(payment_intent_id)
        data["outcome"] = result.outcome.value if result else None
        return jsonify(data)

    @app.post("/api/charges/<payment_intent_id>/refund")
    def api_refund(payment_intent_id: str):
        body = _payload()
        result = orchestrator.refund(payment_intent_id, idempotency_key=body.get("idempotency_key"))
        return jsonify({"ok": True, "refund": result.to_dict()})

    @app.get("/api/reader")
    def api_reader():
        return jsonify({"ok": True, "reader": orchestrator.reader_status()})

    return app


def main():
    config = PosConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    orchestrator = build_orchestrator(config)
    if orchestrator.store is not None:
        for row in orchestrator.store.pending():
            logger.warning(f"Unsettled charge from a previous run: {row['payment_intent_id']} "
                           f"(last status {row['status']}); check /status?pi={row['payment_intent_id']}")

    app = create_app(config, orchestrator)
    logger.info(f"Clinic POS listening on http://{config.host}:{config.port} "
                f"(reader={config.reader_id or 'unset'}, live={config.live_mode})")
    if not config.reader_id:
        logger.warning("STRIPE_READER_ID is not set; charges will be refused")
    app.run(host=config.host, port=config.port, threaded=True)


if __name__ == "__main__":
    main()
