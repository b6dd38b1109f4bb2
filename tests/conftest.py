from datetime import timedelta

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

from primemart.app import create_app
from primemart.config import utcnow
from primemart.errors import DependencyError, PaymentGatewayError, RenderError

ADMIN_EMAIL = "admin@primemart.com"
CUSTOMER_EMAIL = "asha@example.com"
OTHER_EMAIL = "ravi@example.com"


class FakeMailer:
    def __init__(self):
        self.calls = []
        self.fail = False

    def send(self, to, subject, html, attachment=None, filename="invoice.pdf"):
        self.calls.append(
            {"to": to, "subject": subject, "html": html, "attachment": attachment, "filename": filename}
        )
        if self.fail:
            return False, "mail outage"
        return True, None


class FakeRenderer:
    def __init__(self):
        self.calls = []
        self.fail = False

    def render(self, html):
        self.calls.append(html)
        if self.fail:
            raise RenderError("renderer unavailable")
        return b"%PDF-1.4 fake invoice"


class FakeBlobStore:
    def __init__(self):
        self.uploads = {}
        self.deleted = []
        self.fail = False

    def upload(self, content, filename):
        if self.fail:
            raise DependencyError("blob store unavailable")
        handle = f"{len(self.uploads) + len(self.deleted) + 1}-{filename}"
        self.uploads[handle] = content
        return {"url": f"https://files.test/{handle}", "handle": handle}

    def delete(self, handle):
        self.deleted.append(handle)
        self.uploads.pop(handle, None)


class FakeGateway:
    def __init__(self):
        self.sessions = {}
        self.created = []

    def create_checkout_session(self, line_items, success_url, cancel_url, metadata, customer_email=None):
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(
            {
                "line_items": line_items,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "customer_email": customer_email,
            }
        )
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.test/{session_id}",
            "payment_status": "unpaid",
            "payment_intent": f"pi_{session_id}",
            "metadata": dict(metadata),
        }
        return self.sessions[session_id]

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentGatewayError("No such checkout session")
        return self.sessions[session_id]

    def complete(self, session_id):
        self.sessions[session_id]["payment_status"] = "paid"


class SteppingClock:
    """Starts at the real current time so TTL-indexed records stay alive."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db():
    return mongomock.MongoClient().primemart_test


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(db, mailer, renderer, blob_store, gateway):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length",
            "TRUSTED_PROXY_HOPS": 0,
            "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
            "CLIENT_URL": "http://shop.test",
        },
        database=db,
        mailer=mailer,
        renderer=renderer,
        blob_store=blob_store,
        payment_gateway=gateway,
    )
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["primemart"]


@pytest.fixture
def lifecycle(services):
    return services["lifecycle"]


def insert_user(db, email, name, role="user", password="secret123", **extra):
    document = {
        "name": name,
        "email": email,
        "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
        "mobile": extra.pop("mobile", ""),
        "role": role,
        "shipping_address": extra.pop("shipping_address", {}),
        "created_at": utcnow(),
    }
    document.update(extra)
    document["_id"] = db.users.insert_one(document).inserted_id
    return document


@pytest.fixture
def customer(db):
    return insert_user(
        db,
        CUSTOMER_EMAIL,
        "Asha Rao",
        mobile="9876543210",
        shipping_address={
            "full_name": "Asha Rao",
            "phone": "9876543210",
            "street": "14 MG Road",
            "city": "Pune",
            "state": "Maharashtra",
            "pincode": "411001",
            "country": "India",
        },
    )


@pytest.fixture
def other_customer(db):
    return insert_user(db, OTHER_EMAIL, "Ravi Kumar")


@pytest.fixture
def admin(db):
    return insert_user(db, ADMIN_EMAIL, "Store Admin", role="admin")


def auth_headers(email):
    return {"Authorization": f"Bearer {create_access_token(identity=email)}"}


def widget_draft(**overrides):
    draft = {
        "items": [{"product_id": "", "name": "Widget", "price": 100.0, "quantity": 2, "image_url": ""}],
        "shipping_address": None,
        "total_amount": 236.0,
        "tax": 36.0,
        "payment_method": "cod",
    }
    draft.update(overrides)
    return draft
