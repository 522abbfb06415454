import pytest

from app import create_app
from cache import MemoryCache
from extensions import db
from identity import Identity
from models_activities import ACTIVITY_STATUS_ACTIVE, Activity
from models_users import ROLE_ADMIN, ROLE_USER, BankAccount, User


MUX_SECRET = "mux-test-secret"
TYPEFORM_SECRET = "typeform-test-secret"
# whsec_ + base64("identity-test-secret")
IDENTITY_SECRET = "whsec_aWRlbnRpdHktdGVzdC1zZWNyZXQ="


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, channel, event):
        self.events.append((channel, event))
        return True

    def channels(self):
        return [c for c, _ in self.events]


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_verification_requested(self, user_name, user_email, activity_title):
        self.sent.append(("verification_requested", user_email, activity_title))
        return True

    def send_verification_ready(self, to, user_name, verification_url):
        self.sent.append(("verification_ready", to, verification_url))
        return True


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def app(tmp_path, cache, publisher, mailer):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {},
            "RATELIMIT_ENABLED": False,
            "REDIS_URL": None,
            "SMTP_HOST": "",
            "MUX_WEBHOOK_SECRET": MUX_SECRET,
            "TYPEFORM_WEBHOOK_SECRET": TYPEFORM_SECRET,
            "IDENTITY_WEBHOOK_SECRET": IDENTITY_SECRET,
        },
        collaborators={"cache": cache, "publisher": publisher, "mailer": mailer},
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["employnet"]


@pytest.fixture
def ledger(services):
    return services["ledger"]


@pytest.fixture
def workflow(services):
    return services["workflow"]


@pytest.fixture
def stats(services):
    return services["stats"]


@pytest.fixture
def dispatcher(services):
    return services["dispatcher"]


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(points=0, role=ROLE_USER, email=None, name=None, bank=False):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            external_id=f"user_ext_{n}",
            email=email or f"user{n}@example.com",
            name=name or f"User {n}",
            role=role,
            points_balance=points,
        )
        db.session.add(user)
        db.session.flush()
        if bank:
            db.session.add(
                BankAccount(
                    user_id=user.id,
                    bank_name="Commonwealth Bank",
                    account_number="12345678",
                    bsb="062000",
                    account_type="savings",
                    account_holder_name="Test User",
                )
            )
        db.session.commit()
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(role=ROLE_ADMIN, email="admin@example.com", name="Admin")


@pytest.fixture
def make_activity(app):
    def _make(owner, points=200, type="video", status=ACTIVITY_STATUS_ACTIVE, is_template=False, title="Watch intro", external_id=None):
        activity = Activity(
            user_id=owner.id,
            type=type,
            title=title,
            points=points,
            status=status,
            is_template=is_template,
            external_id=external_id,
        )
        db.session.add(activity)
        db.session.commit()
        return activity

    return _make


def identity_for(user) -> Identity:
    return Identity(user_id=user.id, external_id=user.external_id, role=user.role)


@pytest.fixture
def auth_headers(services):
    def _headers(user):
        token = services["identity"].issue_token(user.external_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


def balance_of(user_id: int) -> int:
    db.session.expire_all()
    return db.session.get(User, user_id).points_balance
