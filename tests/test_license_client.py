"""Tests for the bot-side client with a stubbed requests session."""

import threading
from unittest.mock import MagicMock, Mock

import requests

import license_client
from license_client import LicenseWatcher, deactivate_guild, should_shutdown, verify_license


def _session(status_code=200, body=None, exc=None):
    s = Mock()
    if exc is not None:
        s.post.side_effect = exc
    else:
        resp = Mock(status_code=status_code)
        resp.json.return_value = body if body is not None else {}
        s.post.return_value = resp
    return s


class TestVerifyLicense:
    def test_valid(self) -> None:
        s = _session(body={"valid": True, "code": "valid", "message": "ok", "license": {"license_key": "K"}})
        result = verify_license("K", "G", device_id="shard-1", server="http://srv", api_key="k", session=s)
        assert result["ok"] is True
        assert result["state"] == "valid"
        url = s.post.call_args.args[0]
        assert url == "http://srv/api/verify-license"
        assert s.post.call_args.kwargs["json"] == {"license_key": "K", "guild_id": "G", "device_id": "shard-1"}
        assert s.post.call_args.kwargs["headers"] == {"X-API-Key": "k"}

    def test_denied(self) -> None:
        s = _session(body={"valid": False, "code": "expired", "message": "License has expired"})
        result = verify_license("K", "G", session=s)
        assert result["state"] == "denied"
        assert result["code"] == "expired"
        assert should_shutdown(result)

    def test_server_error_is_indeterminate(self) -> None:
        result = verify_license("K", "G", session=_session(503, {"valid": False, "error": "License store unavailable"}))
        assert result["state"] == "indeterminate"
        assert result["status"] == 503
        assert not should_shutdown(result)

    def test_auth_error_is_indeterminate(self) -> None:
        result = verify_license("K", "G", session=_session(403, {"valid": False, "error": "Invalid API key"}))
        assert result["state"] == "indeterminate"

    def test_network_error_is_indeterminate(self) -> None:
        result = verify_license("K", "G", session=_session(exc=requests.exceptions.ConnectTimeout()))
        assert result["state"] == "indeterminate"
        assert "timed out" in result["error"]
        assert not should_shutdown(result)

    def test_missing_arguments(self) -> None:
        assert verify_license("", "G")["ok"] is False


class TestDeactivateGuild:
    def test_removed(self) -> None:
        s = _session(body={"removed": True, "code": "removed", "message": "Guild deactivated successfully"})
        result = deactivate_guild("K", "G", server="http://srv", session=s)
        assert result == {"ok": True, "removed": True, "code": "removed", "message": "Guild deactivated successfully"}
        assert s.post.call_args.args[0] == "http://srv/api/licenses/K/deactivate"

    def test_not_member_is_fine(self) -> None:
        result = deactivate_guild("K", "G", session=_session(400, {"removed": False, "code": "not_member"}))
        assert result["ok"] is True
        assert result["removed"] is False

    def test_not_found(self) -> None:
        result = deactivate_guild("K", "G", session=_session(404, {"removed": False, "code": "not_found"}))
        assert result["ok"] is False
        assert result["code"] == "not_found"

    def test_outage(self) -> None:
        result = deactivate_guild("K", "G", session=_session(exc=requests.exceptions.ConnectionError("refused")))
        assert result["state"] == "indeterminate"


class TestSessionLifetime:
    def test_throwaway_session_is_closed(self, monkeypatch) -> None:
        s = MagicMock()
        s.__enter__.return_value = s
        s.post.return_value = Mock(status_code=200, **{"json.return_value": {"valid": True}})
        monkeypatch.setattr(license_client, "_session", lambda: s)

        assert verify_license("K", "G")["state"] == "valid"
        deactivate_guild("K", "G")
        assert s.__exit__.call_count == 2

    def test_caller_session_stays_open(self) -> None:
        s = _session(body={"valid": True})
        verify_license("K", "G", session=s)
        s.close.assert_not_called()


class TestLicenseWatcher:
    def test_stops_on_denial(self) -> None:
        answers = iter([
            {"ok": False, "state": "indeterminate", "error": "timeout"},
            {"ok": True, "state": "valid"},
            {"ok": False, "state": "denied", "code": "inactive"},
        ])
        denied = threading.Event()
        seen = []

        def on_denied(result):
            seen.append(result)
            denied.set()

        watcher = LicenseWatcher("K", "G", on_denied, interval=0, verify=lambda key, guild: next(answers))
        watcher.start()
        assert denied.wait(5)
        watcher.stop(timeout=5)
        assert seen == [{"ok": False, "state": "denied", "code": "inactive"}]
        assert watcher.last_result["state"] == "denied"

    def test_check_once_keeps_running_on_indeterminate(self) -> None:
        calls = Mock(return_value={"ok": False, "state": license_client.INDETERMINATE, "error": "x"})
        on_denied = Mock()
        watcher = LicenseWatcher("K", "G", on_denied, verify=calls)
        result = watcher.check_once()
        assert result["state"] == "indeterminate"
        on_denied.assert_not_called()
