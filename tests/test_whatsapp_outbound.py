"""Tests for Evolution outbound send - auth fallback, retries, NO PII in logs."""

import socket
import urllib.error
from unittest.mock import patch

import pytest

from aliado.infra.config import ConfigurationError
from aliado.whatsapp import outbound
from aliado.whatsapp.errors import ProviderSendError, ProviderTimeoutError
from aliado.whatsapp.outbound import (
    AUTH_SCHEMES,
    _build_request_parts,
    extract_provider_message_id,
    send_text_via_evolution,
)

TEST_JID = "5511999998888@s.whatsapp.net"
MESSAGE_TEXT = "dummy_text"


class LogRecorder:
    """Simple recorder to capture log calls deterministically."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, level, *args, **kwargs):
        self.calls.append((level, args, kwargs))

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def debug(self, *args, **kwargs):
        self._record("debug", *args, **kwargs)

    def get_all_logged_content(self) -> str:
        return " ".join(f"{args} {kwargs}" for _, args, kwargs in self.calls)

    def has_extra_field(self, key: str) -> bool:
        return any(
            key in kwargs.get("extra", {}).get("extra_fields", {}) for _, _, kwargs in self.calls
        )


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url="http://test", code=code, msg="err", hdrs={}, fp=None)


@pytest.fixture
def mock_evolution_env(monkeypatch):
    monkeypatch.setenv("EVOLUTION_BASE_URL", "http://localhost:8080/")
    monkeypatch.setenv("EVOLUTION_INSTANCE", "test-instance")
    monkeypatch.setenv("EVOLUTION_API_KEY", "test-api-key")


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch("aliado.whatsapp.outbound.time.sleep"):
        yield


class TestRequestShape:
    def test_url_body_and_default_auth(self, mock_evolution_env):
        with patch.object(outbound, "_do_request", return_value={"key": {"id": "PROV1"}}) as req:
            result = send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)

        assert result == "PROV1"
        url, data, headers, timeout = req.call_args.args
        assert url == "http://localhost:8080/message/sendText/test-instance"
        assert data == b'{"number": "5511999998888@s.whatsapp.net", "text": "dummy_text"}'
        assert headers["apikey"] == "test-api-key"
        assert timeout == 10.0

    def test_timeout_from_env(self, mock_evolution_env, monkeypatch):
        monkeypatch.setenv("EVOLUTION_HTTP_TIMEOUT", "3.5")
        with patch.object(outbound, "_do_request", return_value={}) as req:
            send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)
        assert req.call_args.args[3] == 3.5

    def test_missing_config(self):
        with pytest.raises(ConfigurationError):
            send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)

    @pytest.mark.parametrize(
        "response,expected",
        [
            ({"key": {"id": "A"}}, "A"),
            ({"messageId": "B"}, "B"),
            ({"id": "C"}, "C"),
            ({"status": "PENDING"}, None),
        ],
    )
    def test_extract_provider_message_id(self, response, expected):
        assert extract_provider_message_id(response) == expected


class TestAuthFallback:
    def test_scheme_order(self):
        assert AUTH_SCHEMES == ("apikey_header", "bearer", "x_api_key", "apikey_query")

    def test_build_request_parts(self):
        base = "http://h/message/sendText/i"
        assert _build_request_parts("apikey_header", base, "k")[1]["apikey"] == "k"
        assert _build_request_parts("bearer", base, "k")[1]["Authorization"] == "Bearer k"
        assert _build_request_parts("x_api_key", base, "k")[1]["X-API-Key"] == "k"
        url, headers = _build_request_parts("apikey_query", base, "k y")
        assert url == "http://h/message/sendText/i?apikey=k%20y"
        assert "apikey" not in headers

    def test_falls_back_on_401_until_accepted(self, mock_evolution_env):
        seen = []

        def fake_request(url, data, headers, timeout):
            seen.append((url, dict(headers)))
            if len(seen) < 4:
                raise _http_error(401)
            return {"key": {"id": "OK"}}

        with patch.object(outbound, "_do_request", side_effect=fake_request):
            assert send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT) == "OK"

        assert "apikey" in seen[0][1]
        assert seen[1][1]["Authorization"] == "Bearer test-api-key"
        assert seen[2][1]["X-API-Key"] == "test-api-key"
        assert seen[3][0].endswith("?apikey=test-api-key")

    def test_403_also_falls_back(self, mock_evolution_env):
        with patch.object(
            outbound, "_do_request", side_effect=[_http_error(403), {"id": "X"}]
        ) as req:
            assert send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT) == "X"
        assert req.call_count == 2

    def test_all_schemes_rejected(self, mock_evolution_env):
        with patch.object(outbound, "_do_request", side_effect=_http_error(401)) as req:
            with pytest.raises(ProviderSendError) as exc_info:
                send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)
        assert req.call_count == len(AUTH_SCHEMES)
        assert exc_info.value.status_code == 401

    def test_other_4xx_does_not_fall_back(self, mock_evolution_env):
        with patch.object(outbound, "_do_request", side_effect=_http_error(400)) as req:
            with pytest.raises(ProviderSendError) as exc_info:
                send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)
        assert req.call_count == 1
        assert exc_info.value.status_code == 400


class TestRetries:
    def test_5xx_retried_once(self, mock_evolution_env):
        with patch.object(
            outbound, "_do_request", side_effect=[_http_error(503), {"id": "R"}]
        ) as req:
            assert send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT) == "R"
        assert req.call_count == 2

    def test_persistent_5xx_fails(self, mock_evolution_env):
        with patch.object(outbound, "_do_request", side_effect=_http_error(500)) as req:
            with pytest.raises(ProviderSendError):
                send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)
        assert req.call_count == 2

    def test_network_error_exhausted(self, mock_evolution_env):
        with patch.object(
            outbound, "_do_request", side_effect=urllib.error.URLError("connection refused")
        ):
            with pytest.raises(ProviderSendError, match="unreachable"):
                send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)

    def test_timeout_raises_timeout_error(self, mock_evolution_env):
        with patch.object(outbound, "_do_request", side_effect=socket.timeout("timed out")):
            with pytest.raises(ProviderTimeoutError):
                send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)

    def test_url_error_wrapping_timeout(self, mock_evolution_env):
        error = urllib.error.URLError(TimeoutError("timed out"))
        with patch.object(outbound, "_do_request", side_effect=error):
            with pytest.raises(ProviderTimeoutError):
                send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)

    def test_non_json_success_returns_none(self, mock_evolution_env):
        with patch.object(outbound, "_do_request", side_effect=ValueError("not json")):
            assert send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT) is None


class TestNoPiiLeakage:
    """Recipient and text never appear in logs, on any path."""

    def _assert_clean(self, recorder):
        logged = recorder.get_all_logged_content()
        assert TEST_JID not in logged, "JID leaked!"
        assert "5511999998888" not in logged, "Phone leaked!"
        assert MESSAGE_TEXT not in logged, "Message text leaked!"

    def test_success_path(self, mock_evolution_env):
        recorder = LogRecorder()
        with patch("aliado.whatsapp.outbound.logger", recorder):
            with patch.object(outbound, "_do_request", return_value={"status": "sent"}):
                send_text_via_evolution(
                    to_ref=TEST_JID, text=MESSAGE_TEXT, correlation_id="test-corr-001"
                )
        self._assert_clean(recorder)
        assert recorder.has_extra_field("to_hash")
        assert recorder.has_extra_field("text_len")

    def test_fallback_and_error_paths(self, mock_evolution_env):
        recorder = LogRecorder()
        with patch("aliado.whatsapp.outbound.logger", recorder):
            with patch.object(outbound, "_do_request", side_effect=_http_error(401)):
                with pytest.raises(ProviderSendError):
                    send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)
        self._assert_clean(recorder)
        assert any("rejected" in str(args) for _, args, _ in recorder.calls)

    def test_retry_path(self, mock_evolution_env):
        recorder = LogRecorder()
        with patch("aliado.whatsapp.outbound.logger", recorder):
            with patch.object(
                outbound,
                "_do_request",
                side_effect=[urllib.error.URLError("refused"), {"id": "X"}],
            ):
                send_text_via_evolution(to_ref=TEST_JID, text=MESSAGE_TEXT)
        self._assert_clean(recorder)
        assert any("retrying" in str(args) for _, args, _ in recorder.calls)
