import logging
import re
from datetime import datetime, timezone

import requests

from .analytics import parse_number
from .api import ApiError

logger = logging.getLogger(__name__)

DEFAULT_AI_EXPENSE_API_URL = "https://multi-service-chatbot.onrender.com/chat/expense_tracker/extract_expenses"
FALLBACK_CATEGORY_ID = 10
OTHER_CATEGORY_NAME = "Other"
CATEGORY_SYNONYMS = {
    "groceries": "Food & Dining",
    "grocery": "Food & Dining",
    "dining": "Food & Dining",
    "food": "Food & Dining",
    "restaurant": "Food & Dining",
    "restaurants": "Food & Dining",
    "utilities": "Bills & Utilities",
    "bills": "Bills & Utilities",
    "personal care": "Personal Care",
    "transport": "Transportation",
    "transportation": "Transportation",
    "health": "Healthcare",
    "healthcare": "Healthcare",
    "medical": "Healthcare",
}

MANUAL_ENTRY = "manual-entry"
AI_MODAL = "ai-modal"
EXTRACTED_REVIEW = "extracted-review"
FLOW_MODES = (MANUAL_ENTRY, AI_MODAL, EXTRACTED_REVIEW)


class InvalidTransition(ValueError):
    """Raised when an add-expense action does not apply to the current mode."""


def normalize_label(value):
    if value is None:
        return ""
    return " ".join(str(value).strip().lower().split())


def find_category_id(categories, name):
    wanted = normalize_label(name)
    if not wanted:
        return None
    for category in categories or []:
        if not isinstance(category, dict):
            continue
        if normalize_label(category.get("name")) == wanted and category.get("id") is not None:
            return category["id"]
    return None


def map_category_label(label, categories, fallback_id=FALLBACK_CATEGORY_ID):
    """Resolve a free-text category from the AI service to one of the user's ids.

    Never raises: unknown labels fall back to the "Other" category and then
    to ``fallback_id``.
    """
    normalized = normalize_label(label)
    mapped = CATEGORY_SYNONYMS.get(normalized, normalized)

    category_id = find_category_id(categories, mapped)
    if category_id is None:
        category_id = find_category_id(categories, OTHER_CATEGORY_NAME)
    if category_id is None:
        category_id = fallback_id
    return category_id


def build_extraction_payload(paragraph, categories):
    return {
        "input_data": {
            "paragraph": paragraph,
            "categories": [
                {
                    "category_id": f"cat_{category.get('id')}",
                    "name": (category.get("name") or "").lower(),
                    "is_default": bool(category.get("is_default")),
                }
                for category in categories or []
                if isinstance(category, dict)
            ],
        },
        "conversation_history": [],
    }


def extracted_items(body):
    if not isinstance(body, dict) or not body.get("success"):
        error = body.get("error") if isinstance(body, dict) else None
        raise ApiError(error or "Failed to extract expenses")
    output = body.get("output_data") or {}
    expenses = output.get("expenses") if isinstance(output, dict) else None
    if not isinstance(expenses, list):
        expenses = []
    return [item for item in expenses if isinstance(item, dict)]


def draft_from_extracted(item, categories, fallback_id=FALLBACK_CATEGORY_ID):
    amount = parse_number(item.get("amount"))
    name = str(item.get("description") or item.get("merchant") or "").strip() or "Expense"
    return {
        "name": name,
        "category_id": map_category_label(item.get("category"), categories, fallback_id),
        "unit": 1,
        "per_unit_cost": amount if amount is not None else 0.0,
        "expense_date": item.get("date") or None,
        "merchant": item.get("merchant"),
    }


def to_expense_timestamp(value=None):
    text = str(value or "").strip()
    if not text:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        return f"{text}T00:00:00Z"
    return text


def validate_expense_fields(name, category_id, unit, per_unit_cost):
    if not (name or "").strip() or not category_id or unit in (None, "") or per_unit_cost in (None, ""):
        return "Please fill in all fields"
    try:
        int(category_id)
    except (TypeError, ValueError):
        return "Please select a valid category"
    unit_value = parse_number(unit)
    cost_value = parse_number(per_unit_cost)
    if unit_value is None or cost_value is None or unit_value <= 0 or cost_value <= 0:
        return "Unit and per unit cost must be positive numbers"
    return None


def expense_payload(name, category_id, unit, per_unit_cost, expense_date=None):
    return {
        "name": name.strip(),
        "category_id": int(category_id),
        "unit": parse_number(unit),
        "per_unit_cost": parse_number(per_unit_cost),
        "expense_date": to_expense_timestamp(expense_date),
    }


def submit_drafts(api, drafts):
    """Create each draft in order, one request at a time.

    Failures are counted and collected, never rolled back, and do not stop
    the remaining drafts from being sent.
    """
    result = {"success_count": 0, "error_count": 0, "failed": [], "errors": []}
    for index, draft in enumerate(drafts):
        error = validate_expense_fields(
            draft.get("name"), draft.get("category_id"), draft.get("unit"), draft.get("per_unit_cost")
        )
        if error is None:
            try:
                api.create_expense(
                    expense_payload(
                        draft["name"],
                        draft["category_id"],
                        draft["unit"],
                        draft["per_unit_cost"],
                        draft.get("expense_date"),
                    )
                )
            except ApiError as exc:
                error = exc.message

        if error is None:
            result["success_count"] += 1
            continue

        logger.warning("Draft %s (%s) was not added: %s", index, draft.get("name"), error)
        result["error_count"] += 1
        result["failed"].append(draft)
        result["errors"].append(error)
    return result


def should_leave_after_submit(result):
    return result["error_count"] == 0 and result["success_count"] > 0


class AddExpenseFlow:
    """Mode and local state of the add-expense page."""

    def __init__(self, categories=None, mode=MANUAL_ENTRY, drafts=None, selected_category_id=None):
        if mode not in FLOW_MODES:
            mode = MANUAL_ENTRY
        self.categories = list(categories or [])
        self.mode = mode
        self.drafts = list(drafts or [])
        self.selected_category_id = selected_category_id

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            categories=data.get("categories"),
            mode=data.get("mode", MANUAL_ENTRY),
            drafts=data.get("drafts"),
            selected_category_id=data.get("selected_category_id"),
        )

    def to_dict(self):
        return {
            "categories": self.categories,
            "mode": self.mode,
            "drafts": self.drafts,
            "selected_category_id": self.selected_category_id,
        }

    def _expect(self, mode):
        if self.mode != mode:
            raise InvalidTransition(f"Action requires {mode}, flow is in {self.mode}")

    def add_category(self, category):
        self.categories.append(category)
        self.selected_category_id = category.get("id")

    def open_ai(self):
        self._expect(MANUAL_ENTRY)
        self.mode = AI_MODAL

    def cancel_ai(self):
        self._expect(AI_MODAL)
        self.mode = MANUAL_ENTRY

    def extraction_succeeded(self, items, fallback_id=FALLBACK_CATEGORY_ID):
        self._expect(AI_MODAL)
        drafts = [draft_from_extracted(item, self.categories, fallback_id) for item in items]
        if not drafts:
            return False
        self.drafts = drafts
        self.mode = EXTRACTED_REVIEW
        return True

    def update_draft(self, index, name=None, category_id=None, unit=None, per_unit_cost=None):
        self._expect(EXTRACTED_REVIEW)
        draft = self.drafts[index]
        if name is not None:
            draft["name"] = name
        if category_id is not None:
            try:
                draft["category_id"] = int(category_id)
            except (TypeError, ValueError):
                draft["category_id"] = None
        if unit is not None:
            draft["unit"] = unit
        if per_unit_cost is not None:
            draft["per_unit_cost"] = per_unit_cost

    def remove_draft(self, index):
        self._expect(EXTRACTED_REVIEW)
        del self.drafts[index]

    def cancel_all(self):
        self._expect(EXTRACTED_REVIEW)
        self.drafts = []
        self.mode = MANUAL_ENTRY

    def submit_all(self, api):
        self._expect(EXTRACTED_REVIEW)
        result = submit_drafts(api, self.drafts)
        if should_leave_after_submit(result):
            self.drafts = []
            self.mode = MANUAL_ENTRY
        else:
            self.drafts = list(result["failed"])
        return result


def forward_extraction(body, api_key, api_url=None, transport=None, timeout=60):
    """Send an extraction request to the AI service with the server-held key.

    Returns ``(payload, status_code)``; the upstream JSON and status are
    passed through unchanged.
    """
    if not api_key:
        logger.error("AI_EXPENSE_API_KEY is not configured")
        return {"success": False, "error": "API key not configured"}, 500

    input_data = body.get("input_data")
    if not isinstance(input_data, dict):
        input_data = {}
    paragraph = str(input_data.get("paragraph") or "")
    if not paragraph.strip():
        return {"success": False, "error": "Paragraph is required"}, 400

    url = api_url or DEFAULT_AI_EXPENSE_API_URL
    categories = input_data.get("categories") or []
    logger.info("AI extraction request, API key loaded (length %s)", len(api_key))
    logger.info("Forwarding to %s, paragraph length %s, categories %s", url, len(paragraph), len(categories))

    headers = {"Content-Type": "application/json", "X-API-Key": api_key}
    try:
        if transport is not None:
            response = transport.request("POST", url, json=body, headers=headers, timeout=timeout)
        else:
            with requests.Session() as sender:
                response = sender.request("POST", url, json=body, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        logger.error("Failed to connect to AI service: %s", exc)
        return {"success": False, "error": f"Failed to connect to AI service: {exc}"}, 500

    logger.info("AI service responded with status %s", response.status_code)
    try:
        payload = response.json()
    except ValueError:
        logger.error("Failed to parse AI response")
        return {"success": False, "error": "Failed to parse AI response"}, 500
    if not isinstance(payload, dict):
        logger.error("Failed to parse AI response: expected an object")
        return {"success": False, "error": "Failed to parse AI response"}, 500

    output = payload.get("output_data")
    if output is not None and not isinstance(output, dict):
        logger.error("Failed to parse AI response: output_data is not an object")
        return {"success": False, "error": "Failed to parse AI response"}, 500
    expenses = (output or {}).get("expenses") or []
    if not isinstance(expenses, list):
        logger.error("Failed to parse AI response: expenses is not a list")
        return {"success": False, "error": "Failed to parse AI response"}, 500
    logger.info("Returning AI response, success=%s, expenses=%s", payload.get("success"), len(expenses))
    if payload.get("success") and not expenses:
        logger.warning("AI service reported success but extracted no expenses")
    return payload, response.status_code
