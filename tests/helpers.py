import json
import os
import tempfile
import time

from authlib.jose import jwt

from config import Settings
from db_store import Database
from errors import InvalidSignature


JWT_SECRET = "test-jwt-secret"
PNG_DATA_URI = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="


def make_settings(temp_dir, **overrides):
    values = dict(
        environment="development",
        temp_dir=temp_dir,
        aggregator_api_key="agg-key",
        aggregator_base_url="https://gateway.test/v1",
        google_api_key="google-key",
        google_base_url="https://google.test",
        jwt_secret=JWT_SECRET,
    )
    values.update(overrides)
    return Settings(**values)


def make_database(temp_dir):
    db = Database("", os.path.join(temp_dir, "test.db"))
    db.init_db()
    return db


def make_token(user_id="user-1", email="user@example.com", expires_in=3600, secret=JWT_SECRET):
    payload = {"sub": user_id, "email": email, "exp": int(time.time()) + expires_in}
    token = jwt.encode({"alg": "HS256"}, payload, secret)
    return token.decode() if isinstance(token, bytes) else token


def auth_header(user_id="user-1", **kwargs):
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


class TempDirMixin:
    def make_temp_dir(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        return tmp.name


class FakeResponse:
    def __init__(self, status=200, json_data=None, text=None):
        self.status = status
        if text is None:
            text = json.dumps(json_data if json_data is not None else {})
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession. Responses are queued per test."""
    responses = []
    calls = []
    raise_on_post = None

    def __init__(self, timeout=None):
        self.timeout = timeout

    @classmethod
    def reset(cls):
        cls.responses = []
        cls.calls = []
        cls.raise_on_post = None

    @classmethod
    def queue(cls, response):
        cls.responses.append(response)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, headers=None, json=None):
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": self.timeout})
        if self.raise_on_post is not None:
            raise self.raise_on_post
        return self.responses.pop(0)


class FakeVerifier:
    """Accepts any delivery whose signature header is 'valid'."""

    def verify(self, raw_body, headers):
        if headers.get("webhook-signature") != "valid":
            raise InvalidSignature("Invalid signature")
        return json.loads(raw_body)


def aggregator_payload(images=("data:image/png;base64,AAAA",), content="", prompt=100, completion=200):
    return {
        "choices": [{
            "message": {
                "content": content,
                "images": [{"type": "image_url", "image_url": {"url": url}} for url in images],
            }
        }],
        "usage": {"prompt_tokens": prompt, "completion_tokens": completion},
    }


def payment_event(transaction_id="txn_1", user_id="user-1", tokens="100000", total_amount=500, event_type="payment.succeeded"):
    return {
        "type": event_type,
        "data": {
            "payment_id": transaction_id,
            "total_amount": total_amount,
            "metadata": {"user_id": user_id, "tokens": tokens, "package_id": "starter"},
            "customer": {"email": "user@example.com"},
        },
    }
