# license_client.py: bot-side license checks against the guild license server
# - verify_license() / deactivate_guild() never raise; they return a dict with
#   "ok" and a "state" of "valid", "denied" or "indeterminate"
# - Only an explicit denial should stop a bot: network trouble and 5xx answers
#   are "indeterminate" (see should_shutdown)
# - LicenseWatcher re-verifies on a fixed interval in a daemon thread
# - Small CLI: `python license_client.py verify|deactivate --key ... --guild ...`

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import ConnectionError as ReqConnErr, ConnectTimeout, ReadTimeout, SSLError
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

# -------------------------- Configuration knobs --------------------------

SERVER = os.environ.get("LICENSE_SERVER", "http://localhost:5000").rstrip("/")
API_KEY = os.environ.get("LICENSE_API_KEY", "")

CONNECT_TO = int(os.environ.get("LICENSE_CONNECT_TIMEOUT", "6"))
READ_TO    = int(os.environ.get("LICENSE_READ_TIMEOUT", "15"))
TIMEOUT    = (CONNECT_TO, READ_TO)

RETRIES        = int(os.environ.get("LICENSE_RETRIES", "3"))
BACKOFF_FACTOR = float(os.environ.get("LICENSE_BACKOFF", "0.8"))

RECHECK_INTERVAL = int(os.environ.get("LICENSE_RECHECK_SECONDS", "3600"))

VALID = "valid"
DENIED = "denied"
INDETERMINATE = "indeterminate"


# ------------------------------- Utilities --------------------------------

def _session() -> requests.Session:
    # re-adding a guild is idempotent on the server, so POST retries are safe
    s = requests.Session()
    retry = Retry(
        total=RETRIES,
        connect=RETRIES,
        read=RETRIES,
        backoff_factor=BACKOFF_FACTOR,
        status_forcelist=(429, 502, 503, 504),
        allowed_methods=frozenset(["GET", "POST"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def _headers(api_key: Optional[str]) -> Dict[str, str]:
    return {"X-API-Key": api_key if api_key is not None else API_KEY}


def _post(session: Optional[requests.Session], url: str, payload: Dict[str, Any], api_key: Optional[str]):
    # a caller-supplied session stays open; a throwaway one is closed after the call
    if session is not None:
        return session.post(url, json=payload, headers=_headers(api_key), timeout=TIMEOUT)
    with _session() as s:
        return s.post(url, json=payload, headers=_headers(api_key), timeout=TIMEOUT)


def _normalize_error(prefix: str, exc: Exception) -> str:
    if isinstance(exc, (ReadTimeout, ConnectTimeout)):
        return f"{prefix}: Connection timed out."
    if isinstance(exc, SSLError):
        return f"{prefix}: TLS/Certificate error. Set REQUESTS_CA_BUNDLE if behind an inspecting proxy."
    if isinstance(exc, ReqConnErr):
        return f"{prefix}: Connection error: {exc!s}"
    return f"{prefix}: {exc!s}"


def _json(resp) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _indeterminate(error: str, status: Optional[int] = None) -> Dict[str, Any]:
    out = {"ok": False, "state": INDETERMINATE, "error": error}
    if status is not None:
        out["status"] = status
    return out


# ------------------------------- Public API --------------------------------

def verify_license(license_key: str,
                   guild_id: str,
                   device_id: Optional[str] = None,
                   server: Optional[str] = None,
                   api_key: Optional[str] = None,
                   session: Optional[requests.Session] = None) -> Dict[str, Any]:
    """
    Ask the server whether this guild may run under the license.
    Calls: POST /api/verify-license

    Returns:
      { "ok": True,  "state": "valid", "message": "...", "license": {...} }
      { "ok": False, "state": "denied", "code": "expired", "message": "...", ... }
      { "ok": False, "state": "indeterminate", "error": "..." }
    """
    if not license_key or not guild_id:
        return {"ok": False, "state": INDETERMINATE, "error": "license_key and guild_id required"}

    url = f"{server or SERVER}/api/verify-license"
    payload = {"license_key": license_key.strip(), "guild_id": str(guild_id).strip()}
    if device_id:
        payload["device_id"] = device_id

    try:
        resp = _post(session, url, payload, api_key)
    except Exception as e:
        msg = _normalize_error("License check error", e)
        logger.warning(msg)
        return _indeterminate(msg)

    data = _json(resp)
    if resp.status_code != 200 or "valid" not in data:
        # auth, rate limit and server failures say nothing about the license itself
        return _indeterminate(data.get("error") or f"License check failed ({resp.status_code}).", resp.status_code)

    if data["valid"]:
        return {"ok": True, "state": VALID, "message": data.get("message"), "license": data.get("license")}

    out = {"ok": False, "state": DENIED}
    out.update({k: v for k, v in data.items() if k != "valid"})
    return out


def deactivate_guild(license_key: str,
                     guild_id: str,
                     server: Optional[str] = None,
                     api_key: Optional[str] = None,
                     session: Optional[requests.Session] = None) -> Dict[str, Any]:
    """
    Release this guild's slot, e.g. from a shutdown handler.
    Calls: POST /api/licenses/<key>/deactivate

    "not_member" counts as ok: there was nothing to clean up.
    """
    url = f"{server or SERVER}/api/licenses/{license_key.strip()}/deactivate"
    try:
        resp = _post(session, url, {"guild_id": str(guild_id).strip()}, api_key)
    except Exception as e:
        msg = _normalize_error("Deactivation error", e)
        logger.warning(msg)
        return _indeterminate(msg)

    data = _json(resp)
    code = data.get("code")
    if code == "removed":
        return {"ok": True, "removed": True, "code": code, "message": data.get("message")}
    if code in ("not_member", "not_found"):
        return {"ok": code == "not_member", "removed": False, "code": code, "message": data.get("message")}
    return _indeterminate(data.get("error") or f"Deactivation failed ({resp.status_code}).", resp.status_code)


def should_shutdown(result: Dict[str, Any]) -> bool:
    """True only for an explicit denial from the server."""
    return result.get("state") == DENIED


class LicenseWatcher:
    """Re-verifies on a fixed interval; calls on_denied once on an explicit denial."""

    def __init__(self,
                 license_key: str,
                 guild_id: str,
                 on_denied: Callable[[Dict[str, Any]], None],
                 interval: int = RECHECK_INTERVAL,
                 verify: Callable[..., Dict[str, Any]] = verify_license):
        self.license_key = license_key
        self.guild_id = guild_id
        self.on_denied = on_denied
        self.interval = interval
        self._verify = verify
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[Dict[str, Any]] = None

    def check_once(self) -> Dict[str, Any]:
        result = self._verify(self.license_key, self.guild_id)
        self.last_result = result
        if result.get("state") == INDETERMINATE:
            logger.warning("License check indeterminate; keeping current state: %s", result.get("error"))
        return result

    def _run(self) -> None:
        while not self._stop.is_set():
            result = self.check_once()
            if should_shutdown(result):
                self.on_denied(result)
                return
            self._stop.wait(self.interval)

    def start(self) -> "LicenseWatcher":
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="license-watcher", daemon=True)
            self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


# ------------------------------- CLI (optional quick tests) -----------------

if __name__ == "__main__":
    import argparse
    ap = argparse.ArgumentParser(description="Guild license client")
    sub = ap.add_subparsers(dest="cmd")

    vc = sub.add_parser("verify", help="Verify a license for a guild")
    vc.add_argument("--key", required=True, help="License key")
    vc.add_argument("--guild", required=True, help="Guild (Discord server) id")
    vc.add_argument("--device", default=None, help="Device id (optional)")

    dc = sub.add_parser("deactivate", help="Release a guild's slot")
    dc.add_argument("--key", required=True, help="License key")
    dc.add_argument("--guild", required=True, help="Guild (Discord server) id")

    args = ap.parse_args()
    if args.cmd == "verify":
        print(json.dumps(verify_license(args.key, args.guild, device_id=args.device), indent=2))
    elif args.cmd == "deactivate":
        print(json.dumps(deactivate_guild(args.key, args.guild), indent=2))
    else:
        ap.print_help()
