from __future__ import annotations

from collections import deque
from typing import Any, Deque, Dict, Optional
import hmac
import itertools
import logging
import threading

from flask import Flask, abort, jsonify, request

from .service import EVENTS, PrinterService

logger = logging.getLogger(__name__)


class _BadRequest(ValueError):
    pass


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_field(body: Dict[str, Any], name: str, default: Optional[int] = None) -> Optional[int]:
    value = body.get(name, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise _BadRequest(f"'{name}' must be an integer")
    if isinstance(value, str):
        v = value.strip().lower()
        try:
            return int(v, 16) if v.startswith("0x") else int(v)
        except ValueError:
            raise _BadRequest(f"'{name}' must be an integer")
    if isinstance(value, int):
        return value
    raise _BadRequest(f"'{name}' must be an integer")


def _bool_field(body: Dict[str, Any], name: str, default: bool = False) -> bool:
    value = body.get(name, default)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _str_field(body: Dict[str, Any], name: str, default: str = "") -> str:
    value = body.get(name, default)
    return "" if value is None else str(value)


class EventLog:
    """Bounded log of printer events so HTTP clients can poll for them."""

    def __init__(self, service: PrinterService, maxlen: int = 200):
        self._events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        for name in EVENTS:
            service.add_listener(name, self._recorder(name))

    def _recorder(self, name: str):
        def _record(payload: Dict[str, Any]) -> None:
            with self._lock:
                self._events.append({"id": next(self._ids), "event": name, "data": payload})
        return _record

    def since(self, last_id: int) -> list:
        with self._lock:
            return [e for e in self._events if e["id"] > last_id]


def create_app(service: PrinterService, api_token: str = "") -> Flask:
    app = Flask(__name__)
    events = EventLog(service)
    app.config["PRINTER_SERVICE"] = service

    @app.before_request
    def _check_token():
        if not api_token:
            return None
        supplied = request.headers.get("X-API-Token", "")
        auth = request.headers.get("Authorization", "")
        if auth.lower().startswith("bearer "):
            supplied = auth[7:].strip()
        if not hmac.compare_digest(supplied.encode("utf-8"), api_token.encode("utf-8")):
            abort(401)
        return None

    @app.after_request
    def _apply_secure_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["Cache-Control"] = "no-store"
        return resp

    @app.errorhandler(_BadRequest)
    def _bad_request(exc):
        return jsonify({"success": False, "error": str(exc)}), 400

    @app.errorhandler(401)
    def _unauthorized(_exc):
        return jsonify({"success": False, "error": "Unauthorized"}), 401

    @app.errorhandler(404)
    def _not_found(_exc):
        return jsonify({"success": False, "error": "Not found"}), 404

    @app.get("/api/status")
    def status():
        return jsonify(service.is_connected())

    @app.get("/api/printer")
    def printer_info():
        return jsonify(service.get_printer_info())

    @app.get("/api/devices")
    def devices():
        return jsonify(service.list_devices())

    @app.get("/api/events")
    def poll_events():
        since = request.args.get("since", "0")
        try:
            last_id = int(since)
        except ValueError:
            raise _BadRequest("'since' must be an integer")
        return jsonify({"success": True, "events": events.since(last_id)})

    @app.post("/api/connect")
    def connect():
        body = _json_body()
        vendor_id = _int_field(body, "vendor_id")
        if vendor_id is None:
            return jsonify(service.connect())
        product_id = _int_field(body, "product_id", 0) or 0
        return jsonify(service.connect_usb(vendor_id, product_id))

    @app.post("/api/disconnect")
    def disconnect():
        return jsonify(service.disconnect())

    @app.post("/api/raw")
    def raw_command():
        body = _json_body()
        if "hex" in body:
            try:
                command: Any = bytes.fromhex(_str_field(body, "hex"))
            except ValueError:
                raise _BadRequest("'hex' must be a hex string")
        else:
            command = _str_field(body, "command")
        return jsonify(service.send_raw_command(command))

    @app.post("/api/text")
    def print_text():
        body = _json_body()
        return jsonify(service.print_text(_str_field(body, "text")))

    @app.post("/api/formatted")
    def print_formatted():
        body = _json_body()
        return jsonify(service.print_formatted(
            _str_field(body, "text"),
            bold=_bool_field(body, "bold"),
            align=_str_field(body, "align", "left"),
            size=_str_field(body, "size", "normal"),
        ))

    @app.post("/api/feed")
    def feed():
        return jsonify(service.feed(_int_field(_json_body(), "lines", 3)))

    @app.post("/api/cut")
    def cut():
        return jsonify(service.cut(partial=_bool_field(_json_body(), "partial")))

    @app.post("/api/drawer")
    def open_drawer():
        return jsonify(service.open_drawer())

    @app.post("/api/barcode")
    def print_barcode():
        body = _json_body()
        return jsonify(service.print_barcode(_str_field(body, "data"), height=_int_field(body, "height", 80)))

    @app.post("/api/qr")
    def print_qr():
        body = _json_body()
        return jsonify(service.print_qr(_str_field(body, "data"), size=_int_field(body, "size", 6)))

    @app.post("/api/test-print")
    def test_print():
        return jsonify(service.test_print())

    return app
