"""Operator API for the filtering proxy.

Shows the state of the three rule lists, lets an operator force a reload
(and see why one failed), dry-runs URLs and text against the active rules,
and tails the audit log. It runs inside the proxy process so it shares the
live RuleStore and AuditLog.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from flask import Flask, abort, jsonify, request
from werkzeug.serving import make_server

from filtering.audit_log import AuditLog, get_audit_log
from filtering.errors import ReloadError, public_error_message
from filtering.policy import AdmissionPolicy, ContentPolicy
from filtering.rule_store import LIST_NAMES, get_rule_store


logger = logging.getLogger(__name__)

app = Flask(__name__)


@app.after_request
def _security_headers(resp):
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("Cache-Control", "no-store")
    return resp


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True})


@app.route("/api/rules", methods=["GET"])
def api_rules():
    store = get_rule_store()
    return jsonify({"lists": [s.to_dict() for s in store.statuses()]})


@app.route("/api/rules/<name>/reload", methods=["POST"])
def api_rules_reload(name: str):
    if name not in LIST_NAMES:
        abort(404)
    store = get_rule_store()
    try:
        store.reload(name)
    except ReloadError as e:
        return jsonify({"ok": False, "error": public_error_message(e), "list": store.status(name).to_dict()}), 400
    except OSError as e:
        logger.exception("Reload of %s failed", name)
        return jsonify({"ok": False, "error": public_error_message(e), "list": store.status(name).to_dict()}), 500
    return jsonify({"ok": True, "list": store.status(name).to_dict()})


@app.route("/api/rules/test", methods=["POST"])
def api_rules_test():
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return jsonify({"ok": False, "error": "Expected a JSON object."}), 400
    url = str(data.get("url") or "").strip()
    if not url:
        return jsonify({"ok": False, "error": "url is required."}), 400

    store = get_rule_store()
    # Dry runs audit into a throwaway log, not the real file.
    scratch = AuditLog(None, recent_max=1)
    admission = AdmissionPolicy(store, scratch)

    out: Dict[str, Any] = {
        "ok": True,
        "url": url,
        "whitelist_match": store.whitelist.first_match(url),
        "blacklist_match": store.blacklist.first_match(url),
        "decision": admission.decide(url).value,
    }

    text: Optional[str] = data.get("text")
    if text is not None:
        content = ContentPolicy(store, scratch, admission)
        out["denylist_match"] = store.denylist.first_match(str(text))
        out["verdict"] = content.decide(str(text), url).value
    return jsonify(out)


@app.route("/api/audit", methods=["GET"])
def api_audit():
    try:
        limit = int((request.args.get("limit") or "50").strip())
    except ValueError:
        limit = 50
    limit = max(1, min(200, limit))
    entries = get_audit_log().recent(limit)
    return jsonify({"entries": [e.to_dict() for e in entries]})


def start_admin_server(host: str, port: int) -> threading.Thread:
    """Serve the admin API on a daemon thread next to the proxy event loop."""
    srv = make_server(host, int(port), app, threaded=True)
    t = threading.Thread(target=srv.serve_forever, name="admin-api", daemon=True)
    t.start()
    logger.info("Admin API listening on %s:%s", host, port)
    return t
