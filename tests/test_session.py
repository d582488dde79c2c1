"""
Kimland Stock Sync - Session Authenticator Tests
Tests for the 3-step login handshake and its success classification.
"""

import threading
import time
import uuid
from http.cookies import SimpleCookie
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest
import requests
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.session import (
    Session,
    SessionAuthenticator,
    page_is_authenticated,
    page_is_login_form,
)
from conftest import (
    AUTHENTICATED_PAGE_HTML,
    LOGIN_FORM_PAGE_HTML,
    FakeHttp,
    FakeResponse,
)


def handshake_http(login_body="1", final_page=AUTHENTICATED_PAGE_HTML, initial_cookie="first", rotated="rotated"):
    """Fake site answering the three handshake requests."""
    http = FakeHttp()
    http.add(
        "GET", "/app/client/index.php",
        FakeResponse("<html>login</html>", cookies={"PHPSESSID": initial_cookie} if initial_cookie else {}),
        FakeResponse(final_page),
    )
    http.add("POST", "/app/client/login/", FakeResponse(login_body, cookies={"PHPSESSID": rotated} if rotated else {}))
    return http


class TestHandshake:
    """Tests for authenticate()."""

    def test_successful_login(self, credentials):
        """All three signals agree → logged in with the rotated token."""
        http = handshake_http()
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is True
        assert auth.is_logged_in()
        assert auth.session_token == "rotated"

    def test_login_post_carries_credentials_and_cookie(self, credentials):
        """Step 2 posts user/password/username with the first cookie, XHR style."""
        http = handshake_http()
        auth = SessionAuthenticator("https://kimland.dz", http=http)
        auth.authenticate(credentials)

        method, url, kwargs = http.calls[1]
        assert method == "POST"
        assert url == "https://kimland.dz/app/client/login/"
        assert kwargs["data"] == {"user": "shop@example.com", "password": "s3cret", "username": "boutique"}
        assert kwargs["headers"]["Cookie"] == "PHPSESSID=first"
        assert kwargs["headers"]["X-Requested-With"] == "XMLHttpRequest"

    def test_final_get_uses_rotated_token(self, credentials):
        """Step 3 re-fetches the index with the token returned by the login."""
        http = handshake_http()
        auth = SessionAuthenticator("https://kimland.dz", http=http)
        auth.authenticate(credentials)

        _, _, kwargs = http.calls[2]
        assert kwargs["headers"]["Cookie"] == "PHPSESSID=rotated"

    def test_keeps_first_token_when_not_rotated(self, credentials):
        http = handshake_http(rotated=None)
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is True
        assert auth.session_token == "first"

    def test_sentinel_two_but_login_form_fails(self, credentials):
        """Success sentinel "2" is not enough when the page still shows the login form."""
        http = handshake_http(login_body="2", final_page=LOGIN_FORM_PAGE_HTML)
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is False
        assert not auth.is_logged_in()

    def test_missing_initial_cookie_fails_without_posting(self, credentials):
        http = handshake_http(initial_cookie=None)
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is False
        assert http.urls("POST") == []

    def test_unrecognized_sentinel_is_recorded(self, credentials):
        """Unknown login bodies fail the conjunction but are kept for calibration."""
        http = handshake_http(login_body="ok")
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is False
        assert auth.last_login_response == "ok"

    def test_app_markers_required(self, credentials):
        """A success sentinel with a blank page is not a login."""
        http = handshake_http(final_page="<html><body></body></html>")
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is False

    def test_login_http_error_fails(self, credentials):
        http = handshake_http()
        http.routes[1] = ("POST", "/app/client/login/", [FakeResponse("", status_code=500)])
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is False

    def test_network_error_returns_false(self, credentials):
        """Network errors are a failed login, not an exception."""
        http = FakeHttp().add("GET", "/app/client/index.php", requests.ConnectionError("boom"))
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        assert auth.authenticate(credentials) is False
        assert not auth.is_logged_in()

    def test_failed_login_resets_previous_session(self, credentials):
        http = handshake_http(login_body="0")
        auth = SessionAuthenticator("https://kimland.dz", http=http)
        auth.session = Session(is_authenticated=True, session_token="old")

        assert auth.authenticate(credentials) is False
        assert auth.session_token == ""


class TestSessionState:
    """Tests for logout() and ensure_authenticated()."""

    def test_logout_clears_session(self, logged_in_authenticator):
        logged_in_authenticator.logout()

        assert not logged_in_authenticator.is_logged_in()
        assert logged_in_authenticator.session.cookie_header() == {}

    def test_ensure_authenticated_skips_when_logged_in(self, logged_in_authenticator, credentials, fake_http):
        assert logged_in_authenticator.ensure_authenticated(credentials) is True
        assert fake_http.calls == []

    def test_ensure_authenticated_logs_in(self, credentials):
        auth = SessionAuthenticator("https://kimland.dz", http=handshake_http())

        assert auth.ensure_authenticated(credentials) is True
        assert auth.is_logged_in()

    def test_cookie_header(self):
        assert Session(True, "abc").cookie_header() == {"Cookie": "PHPSESSID=abc"}


class TestPageMarkers:
    """Tests for page classification helpers."""

    def test_authenticated_markers(self):
        assert page_is_authenticated(AUTHENTICATED_PAGE_HTML)
        assert not page_is_authenticated("<html><body>Bienvenue</body></html>")

    def test_login_form_markers(self):
        assert page_is_login_form(LOGIN_FORM_PAGE_HTML)

    def test_login_form_markers_mis_decoded(self):
        """The accented marker also matches its mis-decoded form."""
        page = LOGIN_FORM_PAGE_HTML.replace("accéder", "accÃ©der")
        assert page_is_login_form(page)

    @pytest.mark.parametrize("missing", ["Connecter a votre compte", "veuillez saisir l'adresse email"])
    def test_login_form_needs_all_markers(self, missing):
        assert not page_is_login_form(LOGIN_FORM_PAGE_HTML.replace(missing, ""))


# =============================================================================
# RE-LOGIN AGAINST A REAL COOKIE JAR
# =============================================================================

class PhpSessionHandler(BaseHTTPRequestHandler):
    """Behaves like PHP: Set-Cookie is only sent to clients without a known session."""

    def _known_session(self):
        cookie = SimpleCookie(self.headers.get("Cookie", ""))
        morsel = cookie.get("PHPSESSID")
        if morsel and morsel.value in self.server.sessions:
            return morsel.value
        return None

    def _reply(self, body, session_id, is_new):
        payload = body.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        if is_new:
            self.send_header("Set-Cookie", f"PHPSESSID={session_id}; path=/")
        self.end_headers()
        self.wfile.write(payload)

    def _session(self):
        session_id = self._known_session()
        if session_id:
            return session_id, False
        session_id = uuid.uuid4().hex
        self.server.sessions[session_id] = False
        return session_id, True

    def do_GET(self):
        session_id, is_new = self._session()
        page = AUTHENTICATED_PAGE_HTML if self.server.sessions[session_id] else LOGIN_FORM_PAGE_HTML
        self._reply(page, session_id, is_new)

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        session_id, is_new = self._session()
        self.server.sessions[session_id] = True
        self._reply("1", session_id, is_new)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def php_site():
    server = HTTPServer(("127.0.0.1", 0), PhpSessionHandler)
    server.sessions = {}
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}"
    server.shutdown()
    server.server_close()


class TestRelogin:
    """Tests for logging in again on the same requests.Session."""

    def test_login_after_logout(self, php_site, credentials):
        """Step 1 of the second handshake starts without the old cookie."""
        auth = SessionAuthenticator(php_site, timeout=5)

        assert auth.authenticate(credentials) is True
        first_token = auth.session_token
        auth.logout()

        assert len(auth.http.cookies) == 0
        assert auth.authenticate(credentials) is True
        assert auth.session_token != first_token

    def test_login_while_logged_in(self, php_site, credentials):
        """A forced re-login works without an explicit logout."""
        auth = SessionAuthenticator(php_site, timeout=5)

        assert auth.authenticate(credentials) is True
        assert auth.authenticate(credentials) is True
        assert auth.is_logged_in()


# =============================================================================
# SERIALISED HANDSHAKES
# =============================================================================

class SlowHttp(FakeHttp):
    """FakeHttp that takes a while to answer each request."""

    def _respond(self, method, url, **kwargs):
        time.sleep(0.05)
        return super()._respond(method, url, **kwargs)


def two_handshake_http():
    http = SlowHttp()
    http.add(
        "GET", "/app/client/index.php",
        FakeResponse("<html>login</html>", cookies={"PHPSESSID": "first"}),
        FakeResponse(AUTHENTICATED_PAGE_HTML),
        FakeResponse("<html>login</html>", cookies={"PHPSESSID": "second"}),
        FakeResponse(AUTHENTICATED_PAGE_HTML),
    )
    http.add("POST", "/app/client/login/", FakeResponse("1"))
    return http


def run_in_threads(target, count=2):
    results = []
    threads = [threading.Thread(target=lambda: results.append(target())) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return results


class TestConcurrentLogins:
    """Tests for serialised authentication across threads."""

    def test_handshakes_do_not_interleave(self, credentials):
        http = two_handshake_http()
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        results = run_in_threads(lambda: auth.authenticate(credentials))

        assert results == [True, True]
        assert [method for method, _, _ in http.calls] == ["GET", "POST", "GET"] * 2

    def test_ensure_authenticated_logs_in_once(self, credentials):
        http = two_handshake_http()
        auth = SessionAuthenticator("https://kimland.dz", http=http)

        results = run_in_threads(lambda: auth.ensure_authenticated(credentials))

        assert results == [True, True]
        assert [method for method, _, _ in http.calls] == ["GET", "POST", "GET"]
