# ------------------------------------------------------------------------
# File: conftest.py
# Location: tests/conftest.py
# Description:
#     Shared fixtures: an in-memory SQLite app with fake document and email
#     collaborators, API keys of each flavour and small PDF/image builders.
# ------------------------------------------------------------------------

import base64
import io

import jwt
import pytest
from PIL import Image
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from dealsign import create_app
from dealsign.core.guard import RateLimitGuard
from dealsign.core.ledger import ClientInfo, SignatureLedger
from dealsign.db.models import ApiKey, ApiKeyType, EntityKind
from dealsign.db.session import get_session
from dealsign.db.store import ApiKeyStore, SignatureStore
from dealsign.integrations.notifications import NotificationDispatcher

JWT_SECRET = "test-secret"


def make_pdf(pages=1, pagesize=letter) -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=pagesize)
    for number in range(pages):
        c.drawString(72, pagesize[1] - 72, f"Deal document page {number + 1}")
        c.showPage()
    c.save()
    return buffer.getvalue()


def make_image(fmt="PNG", size=(120, 40)) -> str:
    mode = "RGBA" if fmt == "PNG" else "RGB"
    img = Image.new(mode, size, (20, 20, 120, 255) if mode == "RGBA" else (20, 20, 120))
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    mime = "png" if fmt == "PNG" else "jpeg"
    return f"data:image/{mime};base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class FakeDocuments:
    def __init__(self, pdf_bytes=None):
        self.pdf_bytes = pdf_bytes or make_pdf()
        self.known = {"deal-1": {"vin": "1HGCM82633A004352", "stockNumber": "S-100",
                                 "vehicle": "2021 Porsche 911", "dealType": "wholesale"}}
        self.fetched = []
        self.resolved = []

    def fetch_document_bytes(self, url):
        self.fetched.append(url)
        return self.pdf_bytes

    def resolve_document(self, document_id):
        self.resolved.append(document_id)
        if document_id not in self.known:
            return {"exists": False, "displayFields": {}}
        return {"exists": True, "displayFields": dict(self.known[document_id])}


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.requests = []
        self.completions = []

    def send_signature_request(self, **kwargs):
        if self.fail:
            raise RuntimeError("email service down")
        self.requests.append(kwargs)
        return {"success": True}

    def send_completion_notice(self, **kwargs):
        if self.fail:
            raise RuntimeError("email service down")
        self.completions.append(kwargs)
        return {"success": True}


class FakeClock:
    """Monotonic seconds for limiters; advance() moves time forward."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def documents():
    return FakeDocuments()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def webhook_messages():
    return []


@pytest.fixture
def app(tmp_path, documents, notifier, webhook_messages):
    app = create_app(
        overrides={
            "TESTING": True,
            "DATABASE_URL": "sqlite://",
            "JWT_SECRET": JWT_SECRET,
            "SIGNED_DOCUMENT_DIR": str(tmp_path / "signed"),
            "NOTIFICATIONS_ASYNC": False,
            "RATE_LIMIT_REDIS_URL": "",
        },
        services={
            "documents": documents,
            "notifier": notifier,
            "dispatcher": NotificationDispatcher(run_async=False),
            "webhook": webhook_messages.append,
        },
    )
    with app.app_context():
        yield app
        get_session().rollback()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    return get_session()


def _add_key(session, name, key_type, permissions, **kwargs):
    record = ApiKey(
        key=ApiKey.generate_key(),
        name=name,
        type=key_type,
        entity_type=kwargs.pop("entity_type", EntityKind.User),
        entity_id=kwargs.pop("entity_id", "user-1"),
        **kwargs,
    )
    record.set_permissions(permissions)
    return ApiKeyStore(session).add(record)


@pytest.fixture
def internal_key(session):
    return _add_key(session, "Finance Desk", ApiKeyType.internal,
                    {"signAgreements": True, "viewDocuments": True, "createSignatures": True})


@pytest.fixture
def customer_key(session):
    return _add_key(session, "Jane Doe", ApiKeyType.customer,
                    {"signAgreements": True, "viewDocuments": True, "createSignatures": False},
                    entity_id="customer-7")


@pytest.fixture
def viewer_key(session):
    return _add_key(session, "Read Only", ApiKeyType.dealer,
                    {"signAgreements": False, "viewDocuments": True, "createSignatures": False},
                    entity_type=EntityKind.Dealer, entity_id="dealer-3")


@pytest.fixture
def admin_token():
    return jwt.encode({"sub": "admin-1", "email": "admin@dealsign.test", "role": "admin"}, JWT_SECRET, algorithm="HS256")


@pytest.fixture
def rate_guard(app):
    return RateLimitGuard.from_config(app.config)


@pytest.fixture
def ledger(app, session, documents, notifier, rate_guard, tmp_path, webhook_messages):
    return SignatureLedger(
        SignatureStore(session),
        documents=documents,
        notifier=notifier,
        dispatcher=NotificationDispatcher(run_async=False),
        rate_guard=rate_guard,
        signed_dir=str(tmp_path / "ledger-signed"),
        webhook=webhook_messages.append,
    )


@pytest.fixture
def browser():
    return ClientInfo(ip="203.0.113.9", user_agent="Mozilla/5.0 (Test)")
