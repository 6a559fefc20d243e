import json
from collections import namedtuple

from .api import ApiError

TOKEN_KEY = "token"
USER_KEY = "user"

AuthDecision = namedtuple("AuthDecision", ["allowed", "redirect_to", "message"])


class SessionStore:
    """Authentication state for one visitor.

    ``storage`` is the durable key/value store the token and the serialized
    user live in (the signed session cookie inside the app, a plain dict in
    tests). Both entries are written together and removed together.
    ``api_factory`` builds the client for the auth endpoints on first use.
    """

    def __init__(self, storage, api=None, api_factory=None):
        self.storage = storage
        self.api = api
        self.api_factory = api_factory
        self.user = None
        self.token = None
        self.is_loading = False

    @property
    def is_authenticated(self):
        return self.user is not None and self.token is not None

    @property
    def is_admin(self):
        return self.is_authenticated and bool(self.user.get("is_admin"))

    def get_api(self):
        if self.api is None and self.api_factory is not None:
            self.api = self.api_factory()
        return self.api

    def login(self, email, password):
        return self._authenticate(self.get_api().login, email, password)

    def signup(self, email, password, name):
        return self._authenticate(self.get_api().signup, email, password, name)

    def _authenticate(self, call, *args):
        self.is_loading = True
        try:
            data = call(*args)
        finally:
            self.is_loading = False

        data = data if isinstance(data, dict) else {}
        token = data.get("token")
        user = data.get("user")
        if not token or not isinstance(user, dict):
            raise ApiError("Unexpected response from the server.")

        self.storage[TOKEN_KEY] = token
        self.storage[USER_KEY] = json.dumps(user)
        self.user = user
        self.token = token
        return user

    def logout(self):
        self.storage.pop(TOKEN_KEY, None)
        self.storage.pop(USER_KEY, None)
        self.user = None
        self.token = None

    def load_from_storage(self):
        token = self.storage.get(TOKEN_KEY)
        raw_user = self.storage.get(USER_KEY)
        if not token or not raw_user:
            return False
        try:
            user = json.loads(raw_user)
        except (TypeError, ValueError):
            return False
        if not isinstance(user, dict):
            return False

        self.user = user
        self.token = token
        return True


def require_auth(session, admin=False):
    if not session.is_authenticated:
        return AuthDecision(False, "login", None)
    if admin and not session.is_admin:
        return AuthDecision(False, "dashboard", "Admin access required")
    return AuthDecision(True, None, None)
