"""
Kimland Stock Sync - Session Authenticator
Owns the cookie-based session against the Kimland back-office.

The site has no API and answers HTTP 200 whatever happens, so a login is
only trusted when three independent signals agree (see `_classify`).
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

import requests

from .models import Credentials

logger = logging.getLogger(__name__)

SESSION_COOKIE = "PHPSESSID"

INDEX_PATH = "/app/client/index.php"
LOGIN_PATH = "/app/client/login/"

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:142.0) Gecko/20100101 Firefox/142.0",
    "Accept-Language": "fr,fr-FR;q=0.8,en-US;q=0.5,en;q=0.3",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
}

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

# Raw bodies the login endpoint returns on success
LOGIN_SUCCESS_SENTINELS = frozenset({"1", "2", "success"})

# Only present once the client area has loaded for a logged-in user
AUTHENTICATED_MARKERS = (
    "getSessionData",
    "function(",
    "$(document).ready",
    "DataTable",
    "dashboard",
    "App/Content/views",
    ".InitialBlock",
)

# All three together mean we were bounced back to the login form.
# The accented one is matched both raw and mis-decoded (the site mixes charsets).
LOGIN_FORM_MARKERS = (
    ("Connecter a votre compte",),
    ("Pour accéder comme un", "Pour accÃ©der comme un"),
    ("veuillez saisir l'adresse email",),
)


@dataclass
class Session:
    """Authenticated state shared by every request the pipeline makes."""
    is_authenticated: bool = False
    session_token: str = ""

    def cookie_header(self) -> dict:
        if not self.session_token:
            return {}
        return {"Cookie": f"{SESSION_COOKIE}={self.session_token}"}


def extract_session_token(response) -> str:
    """Pull PHPSESSID out of a response's Set-Cookie headers."""
    token = response.cookies.get(SESSION_COOKIE) if response.cookies is not None else None
    return token or ""


def page_is_authenticated(html: str) -> bool:
    return any(marker in html for marker in AUTHENTICATED_MARKERS)


def page_is_login_form(html: str) -> bool:
    return all(any(variant in html for variant in group) for group in LOGIN_FORM_MARKERS)


class SessionAuthenticator:
    """
    Runs the Kimland login handshake and exposes the resulting session.

    One instance per set of credentials. Other components read
    `session` / `http` from it; only this class mutates the session.
    `authenticate()` calls are serialised with a lock because a second
    concurrent login would rotate the token under the first.
    """

    def __init__(
        self,
        base_url: str = "https://kimland.dz",
        timeout: float = 50.0,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        if http is None:
            self.http.headers.update(DEFAULT_HEADERS)
        self.session = Session()
        self.last_login_response: Optional[str] = None
        self._lock = threading.RLock()

    @property
    def session_token(self) -> str:
        return self.session.session_token

    def url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path.lstrip("/"))

    def is_logged_in(self) -> bool:
        return self.session.is_authenticated

    def logout(self):
        """Forget the session locally. The remote side is not notified."""
        with self._lock:
            self.session = Session()
            self.http.cookies.clear()
            logger.info("🔐 Kimland session cleared")

    def ensure_authenticated(self, credentials: Credentials) -> bool:
        """Log in unless already logged in; safe to call from several threads."""
        if self.is_logged_in():
            return True
        with self._lock:
            if self.is_logged_in():
                return True
            return self.authenticate(credentials)

    def authenticate(self, credentials: Credentials) -> bool:
        """
        Perform the 3-step handshake.

        Returns True only when the session is usable. Network errors and
        failed checks both return False; nothing is raised.
        """
        with self._lock:
            self.session = Session()
            # Step 1 must be anonymous: the site only issues PHPSESSID to unknown clients
            self.http.cookies.clear()
            try:
                return self._handshake(credentials)
            except requests.RequestException as e:
                logger.error(f"❌ Kimland authentication error: {e}")
                self.session = Session()
                return False

    def _handshake(self, credentials: Credentials) -> bool:
        logger.info(f"🔐 Kimland login as {credentials.login_id}")

        # Step 1: anonymous GET to obtain the first session cookie
        initial = self.http.get(
            self.url(INDEX_PATH),
            headers={
                "Accept": HTML_ACCEPT,
                "Upgrade-Insecure-Requests": "1",
                "Sec-Fetch-Dest": "document",
                "Sec-Fetch-Mode": "navigate",
                "Sec-Fetch-Site": "none",
                "Sec-Fetch-User": "?1",
            },
            timeout=self.timeout,
        )
        token = extract_session_token(initial)
        logger.debug(f"Step 1: status={initial.status_code} token={'yes' if token else 'no'}")
        if not token:
            logger.error("❌ No PHPSESSID in initial response")
            return False

        # Step 2: form-encoded credentials, XHR style
        login = self.http.post(
            self.url(LOGIN_PATH),
            data={
                "user": credentials.login_id,
                "password": credentials.secret,
                "username": credentials.username,
            },
            headers={
                "Cookie": f"{SESSION_COOKIE}={token}",
                "Accept": "*/*",
                "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
                "X-Requested-With": "XMLHttpRequest",
                "Origin": self.base_url,
                "Sec-Fetch-Dest": "empty",
                "Sec-Fetch-Mode": "cors",
                "Sec-Fetch-Site": "same-origin",
            },
            timeout=self.timeout,
        )
        login_body = (login.text or "").strip()
        self.last_login_response = login_body
        logger.debug(f"Step 2: status={login.status_code} body={login_body[:40]!r}")
        if login.status_code != 200:
            logger.error(f"❌ Login POST failed with status {login.status_code}")
            return False

        rotated = extract_session_token(login)
        if rotated:
            token = rotated

        # Step 3: authenticated GET of the same index page
        final = self.http.get(
            self.url(INDEX_PATH),
            headers={
                "Cookie": f"{SESSION_COOKIE}={token}",
                "Accept": HTML_ACCEPT,
                "Upgrade-Insecure-Requests": "1",
                "Sec-Fetch-Dest": "document",
                "Sec-Fetch-Mode": "navigate",
                "Sec-Fetch-Site": "same-origin",
                "Sec-Fetch-User": "?1",
            },
            timeout=self.timeout,
        )
        if final.status_code != 200:
            logger.error(f"❌ Index re-fetch failed with status {final.status_code}")
            return False

        if not self._classify(login_body, final.text or ""):
            logger.error("❌ Kimland authentication failed")
            return False

        self.session = Session(is_authenticated=True, session_token=token)
        logger.info("✅ Kimland authentication succeeded")
        return True

    def _classify(self, login_body: str, page: str) -> bool:
        """All three signals must hold; each alone has produced false positives."""
        sentinel_ok = login_body in LOGIN_SUCCESS_SENTINELS
        if not sentinel_ok:
            logger.warning(f"⚠️ Unrecognized login response {login_body[:40]!r} - recorded for calibration")
        has_app = page_is_authenticated(page)
        on_login_form = page_is_login_form(page)

        logger.info(
            f"🔍 Login check: sentinel={sentinel_ok} app_markers={has_app} login_form={on_login_form}"
        )
        return sentinel_ok and has_app and not on_login_form
