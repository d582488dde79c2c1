"""
Kimland Stock Sync - Test Fixtures
Shared fixtures and in-memory fakes for pytest tests.
"""

import pytest
import tempfile
from pathlib import Path

from requests.cookies import RequestsCookieJar

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.database import SyncDatabase
from src.exceptions import PlatformError
from src.models import (
    Credentials,
    LocalProduct,
    LocalVariant,
    PlatformContext,
    RemoteProduct,
    RemoteVariant,
)
from src.session import Session, SessionAuthenticator
from src.updater import UpdateExecutor


# =============================================================================
# HTML FIXTURES (trimmed copies of real Kimland pages)
# =============================================================================

FILLER = "<p class='footer-note'>KIMLAND grossiste chaussures et textile - livraison 58 wilayas.</p>" * 40

SEARCH_PAGE_HTML = f"""
<html><head><title>Kimland - Produits</title></head>
<body>
<div class="container">
  <div class="row">
    <div class="col-md-3 sidebar">
      <label><input type="checkbox" name="pointure" value="42"> 42</label>
      <label><input type="checkbox" name="categorie" value="3"> Claquettes</label>
    </div>
    <div class="product-item col-6">
      <div class="product-item-img">
        <a href="/index.php?page=product&id=4521"><img src="/uploads/cd6109.jpg"></a>
      </div>
      <div class="product-item-name">
        <a href="/index.php?page=product&id=4521">NIKE CALM SLIDE CD6109-200</a>
      </div>
      <span class="price">4500 DA</span>
      <span class="old-price">5200 DA</span>
    </div>
  </div>
</div>
{FILLER}
</body></html>
"""

DECOY_PAGE_HTML = f"""
<html><body>
<div class="row">
  <div class="product-item col-6">
    <a href="/index.php?page=product&id=99"><img src="/uploads/core.jpg"></a>
    <div class="product-item-name"><a href="/index.php?page=product&id=99">CORE SLIDE HI-TEC</a></div>
    <span class="price">3000 DA</span>
  </div>
  <div class="product-item col-6">
    <a href="/index.php?page=product&id=1"><img src="/uploads/vip.jpg"></a>
    <div class="product-item-name"><a href="/index.php?page=product&id=1">Produit VIP</a></div>
    <span class="price">0 DA</span>
  </div>
</div>
{FILLER}
</body></html>
"""

NOT_FOUND_PAGE_HTML = "<html><body><h1>Erreur 404</h1></body></html>"

DETAIL_PAGE_HTML = """
<html><body>
<h1>NIKE CALM SLIDE CD6109-200</h1>
<select name="categorie"><option>Toutes les catégories</option><option>12 - Claquettes</option></select>
<select name="pointure">
  <option value="">Choisir une pointure</option>
  <option value="41">41 - 5 piéce(s)</option>
  <option value="42">42 - 0 piéce(s)</option>
  <option value="43">43 - 2 piéce(s)</option>
</select>
</body></html>
"""

AUTHENTICATED_PAGE_HTML = """
<html><head><script>$(document).ready(function(){ getSessionData(); });</script></head>
<body><div class="InitialBlock">dashboard</div></body></html>
"""

LOGIN_FORM_PAGE_HTML = """
<html><body>
<h2>Connecter a votre compte</h2>
<p>Pour accéder comme un client, veuillez saisir l'adresse email et le mot de passe.</p>
<script>$(document).ready(function(){});</script>
</body></html>
"""


@pytest.fixture
def search_page_html() -> str:
    return SEARCH_PAGE_HTML


@pytest.fixture
def decoy_page_html() -> str:
    return DECOY_PAGE_HTML


@pytest.fixture
def detail_page_html() -> str:
    return DETAIL_PAGE_HTML


# =============================================================================
# HTTP FAKES
# =============================================================================

class FakeResponse:
    """Enough of requests.Response for the scraper and the Shopify client."""

    def __init__(self, text="", status_code=200, cookies=None, json_data=None, links=None):
        self.text = text
        self.status_code = status_code
        self.cookies = cookies or {}
        self._json = json_data
        self.links = links or {}

    def json(self):
        return self._json


class FakeHttp:
    """
    Route-based stand-in for requests.Session.

    Routes are (method, url substring) → responses; first registered
    route that matches wins. Several responses are served in order, the
    last one repeating. An Exception instance is raised instead of returned.
    """

    def __init__(self):
        self.routes = []
        self.calls = []
        self.headers = {}
        self.cookies = RequestsCookieJar()
        self.closed = False

    def add(self, method, fragment, *responses):
        self.routes.append((method.upper(), fragment, list(responses)))
        return self

    def _respond(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        for route_method, fragment, responses in self.routes:
            if route_method == method and fragment in url:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(NOT_FOUND_PAGE_HTML, status_code=404)

    def get(self, url, headers=None, timeout=None, **kwargs):
        return self._respond("GET", url, headers=headers or {}, **kwargs)

    def post(self, url, data=None, headers=None, timeout=None, **kwargs):
        return self._respond("POST", url, data=data, headers=headers or {}, **kwargs)

    def request(self, method, url, timeout=None, **kwargs):
        return self._respond(method.upper(), url, **kwargs)

    def urls(self, method="GET"):
        return [url for m, url, _ in self.calls if m == method]

    def close(self):
        self.closed = True


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(login_id="shop@example.com", username="boutique", secret="s3cret")


@pytest.fixture
def logged_in_authenticator(fake_http) -> SessionAuthenticator:
    """Authenticator whose session is already established."""
    authenticator = SessionAuthenticator("https://kimland.dz", timeout=5, http=fake_http)
    authenticator.session = Session(is_authenticated=True, session_token="tok123")
    return authenticator


# =============================================================================
# PLATFORM FAKES
# =============================================================================

class FakePlatformClient:
    """In-memory Shopify: records every SKU and quantity write."""

    def __init__(self, products=None, locations=None):
        self.products = {p.id: p for p in (products or [])}
        self.locations = locations if locations is not None else [{"id": 7, "name": "Entrepôt", "active": True}]
        self.modern_error = None
        self.legacy_error = None
        self.create_error = None
        self.sku_updates = []
        self.created = []  # (product_id, option_values, quantity, sku)
        self.writes = []  # (variant_id, quantity, method)
        self.location_calls = 0
        self.executor = UpdateExecutor(self)

    def get_product(self, product_id):
        return self.products.get(int(product_id))

    def get_all_products(self):
        return list(self.products.values())

    def update_variant_sku(self, variant_id, sku):
        self.sku_updates.append((variant_id, sku))

    def create_variant(self, product_id, option_values, quantity, sku=None):
        if self.create_error:
            raise self.create_error
        self.created.append((product_id, option_values, quantity, sku))
        return LocalVariant(id=900 + len(self.created), sku=sku, inventory_quantity=quantity, **option_values)

    def list_locations(self):
        self.location_calls += 1
        return self.locations

    def get_inventory_item_id(self, variant_id):
        if self.modern_error:
            raise self.modern_error
        return int(variant_id) + 1000

    def set_inventory_level(self, inventory_item_id, location_id, quantity):
        self.writes.append((inventory_item_id - 1000, quantity, "modern"))

    def set_variant_quantity(self, variant_id, quantity):
        if self.legacy_error:
            raise self.legacy_error
        self.writes.append((variant_id, quantity, "legacy"))

    def update_inventory(self, variant_id, quantity):
        return self.executor.apply(variant_id, quantity)

    def quantities(self):
        return {variant_id: quantity for variant_id, quantity, _ in self.writes}


@pytest.fixture
def local_product() -> LocalProduct:
    """Shopify product with sizes 41/42/43 in option1."""
    return LocalProduct(
        id=8001,
        title="Claquette Nike Calm",
        body_html="<p>Claquette homme.</p><p>Référence: CD6109-200</p>",
        variants=[
            LocalVariant(id=11, title="41", sku="CD6109-200", option1="41", inventory_quantity=2),
            LocalVariant(id=12, title="42", sku="CD6109-200", option1="42", inventory_quantity=0),
            LocalVariant(id=13, title="43", sku="CD6109-200", option1="43", inventory_quantity=3),
        ],
    )


@pytest.fixture
def remote_product() -> RemoteProduct:
    return RemoteProduct(
        id="4521",
        name="NIKE CALM SLIDE CD6109-200",
        url="https://kimland.dz/index.php?page=product&id=4521",
        price="4500 DA",
        variants=[RemoteVariant(size="41", stock=5), RemoteVariant(size="42", stock=0)],
    )


@pytest.fixture
def fake_platform(local_product) -> FakePlatformClient:
    return FakePlatformClient(products=[local_product])


@pytest.fixture
def platform_context() -> PlatformContext:
    return PlatformContext(shop="kimland-test.myshopify.com", access_token="shpat_test")


def permission_error() -> PlatformError:
    return PlatformError(
        "This action requires merchant approval for read_locations scope.",
        status_code=403,
    )


# =============================================================================
# PIPELINE FAKES
# =============================================================================

class FakeAuthenticator:
    """Counts logins; succeeds or not as configured."""

    def __init__(self, succeeds=True):
        self.succeeds = succeeds
        self.logged_in = False
        self.session_token = ""
        self.last_login_response = None
        self.logins = 0

    def is_logged_in(self):
        return self.logged_in

    def authenticate(self, credentials):
        self.logins += 1
        self.last_login_response = "1" if self.succeeds else "0"
        self.logged_in = self.succeeds
        self.session_token = "tok" if self.succeeds else ""
        return self.succeeds

    def ensure_authenticated(self, credentials):
        return self.logged_in or self.authenticate(credentials)

    def logout(self):
        self.logged_in = False
        self.session_token = ""


class FakeLocator:
    """identifier → RemoteProduct, None, or an exception to raise."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []

    def locate(self, identifier, display_name=None):
        self.calls.append(identifier)
        answer = self.answers.get(identifier)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeNotifier:
    def __init__(self):
        self.reports = []
        self.alerts = []

    def send_alert(self, title, message, is_error=False):
        self.alerts.append((title, message, is_error))

    def send_report(self, summary):
        self.reports.append(summary)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def temp_database():
    """Create a temporary SQLite database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    db = SyncDatabase(db_path)
    yield db

    # Cleanup
    db.close()
    db_path.unlink(missing_ok=True)
