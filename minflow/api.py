import logging

import requests

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
DEFAULT_TIMEOUT = 10
MAX_PAGE_SIZE = 100


class ApiError(Exception):
    """Raised for any failed call to the MinFlow backend.

    ``server_message`` holds the envelope's ``error`` field when the backend
    sent one; views should show it in preference to their own fallback text.
    """

    def __init__(self, server_message=None, status_code=None, payload=None):
        super().__init__(server_message or GENERIC_ERROR_MESSAGE)
        self.server_message = server_message
        self.status_code = status_code
        self.payload = payload

    @property
    def message(self):
        return self.server_message or GENERIC_ERROR_MESSAGE


def error_message(exc, fallback=GENERIC_ERROR_MESSAGE):
    if isinstance(exc, ApiError) and exc.server_message:
        return exc.server_message
    return fallback


def clamp_page_size(value):
    if value is None:
        return None
    return max(1, min(int(value), MAX_PAGE_SIZE))


class ApiClient:
    def __init__(self, base_url, token=None, transport=None, timeout=DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.owns_transport = transport is None
        self.transport = requests.Session() if self.owns_transport else transport
        self.timeout = timeout

    def close(self):
        if self.owns_transport:
            self.transport.close()

    def build_url(self, path):
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(self, method, path, json=None, params=None):
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self.transport.request(
                method,
                self.build_url(path),
                headers=headers,
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("%s %s failed before a response arrived: %s", method, path, exc)
            raise ApiError() from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or body.get("success") is False:
            logger.info("%s %s returned %s: %s", method, path, response.status_code, body.get("error"))
            raise ApiError(body.get("error"), status_code=response.status_code, payload=body)
        return body.get("data")

    def get(self, path, params=None):
        return self.request("GET", path, params=params)

    def post(self, path, json=None):
        return self.request("POST", path, json=json)

    def delete(self, path):
        return self.request("DELETE", path)

    def login(self, email, password):
        return self.post("/auth/login", {"email": email, "password": password})

    def signup(self, email, password, name):
        return self.post("/auth/signup", {"email": email, "password": password, "name": name})

    def list_users(self):
        return self.get("/users") or []

    def delete_user(self, user_id):
        return self.delete(f"/users/{user_id}")

    def list_categories(self):
        return self.get("/categories") or []

    def create_category(self, name):
        return self.post("/categories", {"name": name})

    def list_expenses(self, limit=None, offset=None):
        params = {}
        if limit is not None:
            params["limit"] = clamp_page_size(limit)
        if offset is not None:
            params["offset"] = max(0, int(offset))
        return self.get("/expenses", params=params or None) or []

    def create_expense(self, payload):
        return self.post("/expenses", payload)

    def delete_expense(self, expense_id):
        return self.delete(f"/expenses/{expense_id}")

    def get_date_range(self):
        return self.get("/expenses/date-range")

    def get_analytics(self, start_date, end_date):
        return self.get("/expenses/analytics", params={"start_date": start_date, "end_date": end_date})
