import os
from functools import wraps

from dotenv import load_dotenv
from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)

from .analytics import (
    build_category_rows,
    category_percentage,
    category_pie_html,
    daily_bar_html,
    format_money,
    format_percentage,
    preview_total,
    sum_totals,
    to_date_input,
    validate_date_range,
)
from .api import ApiClient, ApiError, error_message
from .auth_store import SessionStore, require_auth
from .extraction import (
    AI_MODAL,
    DEFAULT_AI_EXPENSE_API_URL,
    FALLBACK_CATEGORY_ID,
    AddExpenseFlow,
    InvalidTransition,
    build_extraction_payload,
    expense_payload,
    extracted_items,
    forward_extraction,
    should_leave_after_submit,
    validate_expense_fields,
)

FLOW_SESSION_KEY = "add_expense_flow"
CONFIRM_VALUE = "yes"


def is_confirmed(form):
    return (form.get("confirm") or "").strip().lower() == CONFIRM_VALUE


def parse_page_arg(value):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None


def create_app(test_config=None):
    load_dotenv()
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        API_BASE_URL=os.environ.get("MINFLOW_API_URL", "http://localhost:8080/api/v1"),
        API_TIMEOUT=float(os.environ.get("API_TIMEOUT", "10")),
        API_TRANSPORT=None,
        AI_EXPENSE_API_KEY=os.environ.get("AI_EXPENSE_API_KEY") or None,
        AI_EXPENSE_API_URL=os.environ.get("AI_EXPENSE_API_URL") or DEFAULT_AI_EXPENSE_API_URL,
        FALLBACK_CATEGORY_ID=int(os.environ.get("FALLBACK_CATEGORY_ID", FALLBACK_CATEGORY_ID)),
    )

    if test_config is not None:
        app.config.update(test_config)

    app.jinja_env.filters["money"] = format_money
    app.jinja_env.filters["date_input"] = to_date_input

    def build_api_client(token=None):
        return ApiClient(
            app.config["API_BASE_URL"],
            token=token,
            transport=app.config.get("API_TRANSPORT"),
            timeout=app.config["API_TIMEOUT"],
        )

    def get_api():
        if "api" not in g:
            g.api = build_api_client(g.auth.token)
        return g.api

    def get_auth_api():
        if "auth_api" not in g:
            g.auth_api = build_api_client()
        return g.auth_api

    @app.teardown_appcontext
    def close_api(e=None):
        for key in ("api", "auth_api"):
            client = g.pop(key, None)
            if client is not None:
                client.close()

    @app.before_request
    def load_session():
        g.auth = SessionStore(session, api_factory=get_auth_api)
        g.auth.load_from_storage()
        g.user = g.auth.user

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            decision = require_auth(g.auth)
            if not decision.allowed:
                return redirect(url_for(decision.redirect_to))
            return view(**kwargs)

        return wrapped_view

    def admin_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            decision = require_auth(g.auth, admin=True)
            if not decision.allowed:
                if decision.message:
                    flash(decision.message)
                return redirect(url_for(decision.redirect_to))
            return view(**kwargs)

        return wrapped_view

    @app.route("/")
    def index():
        if g.auth.is_authenticated:
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/auth/login", methods=("GET", "POST"))
    def login():
        if request.method == "POST":
            email = (request.form.get("email") or "").strip()
            password = request.form.get("password") or ""
            error = None
            if not email:
                error = "Email is required."
            elif not password:
                error = "Password is required."

            if error is None:
                try:
                    g.auth.login(email, password)
                except ApiError as exc:
                    app.logger.info("Login failed for %s: %s", email, exc.message)
                    error = error_message(exc, "Login failed")
                else:
                    flash("Login successful!")
                    return redirect(url_for("dashboard"))

            flash(error)
        return render_template("login.html")

    @app.route("/auth/signup", methods=("GET", "POST"))
    def signup():
        if request.method == "POST":
            name = (request.form.get("name") or "").strip()
            email = (request.form.get("email") or "").strip()
            password = request.form.get("password") or ""
            error = None
            if not name:
                error = "Name is required."
            elif not email:
                error = "Email is required."
            elif not password:
                error = "Password is required."

            if error is None:
                try:
                    g.auth.signup(email, password, name)
                except ApiError as exc:
                    app.logger.info("Signup failed for %s: %s", email, exc.message)
                    error = error_message(exc, "Signup failed")
                else:
                    flash("Account created successfully!")
                    return redirect(url_for("dashboard"))

            flash(error)
        return render_template("signup.html")

    @app.route("/auth/logout", methods=("GET", "POST"))
    def logout():
        g.auth.logout()
        session.pop(FLOW_SESSION_KEY, None)
        return redirect(url_for("login"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        return render_template("dashboard.html", user=g.user)

    @app.get("/expenses")
    @login_required
    def expenses():
        limit = parse_page_arg(request.args.get("limit"))
        offset = parse_page_arg(request.args.get("offset"))
        try:
            items = get_api().list_expenses(limit=limit, offset=offset)
        except ApiError as exc:
            flash(error_message(exc, "Failed to load expenses"))
            items = []
        return render_template("expenses.html", expenses=items, total_amount=sum_totals(items))

    @app.route("/expenses/<int:expense_id>/delete", methods=("GET", "POST"))
    @login_required
    def delete_expense(expense_id):
        if request.method == "GET":
            return render_template(
                "confirm_delete.html",
                message="Are you sure you want to delete this expense?",
                action=url_for("delete_expense", expense_id=expense_id),
                cancel_url=url_for("expenses"),
            )

        if not is_confirmed(request.form):
            flash("Deletion cancelled.")
            return redirect(url_for("expenses"))

        try:
            get_api().delete_expense(expense_id)
        except ApiError as exc:
            app.logger.warning("Delete failed for expense_id=%s user_id=%s: %s", expense_id, g.user.get("id"), exc.message)
            flash(error_message(exc, "Failed to delete expense"))
            return redirect(url_for("expenses"))

        app.logger.info("Delete succeeded for expense_id=%s user_id=%s", expense_id, g.user.get("id"))
        flash("Expense deleted successfully")
        return redirect(url_for("expenses"))

    def load_flow(api):
        data = session.get(FLOW_SESSION_KEY)
        if data is not None:
            return AddExpenseFlow.from_dict(data)
        return start_flow(api)

    def start_flow(api):
        try:
            categories = api.list_categories()
        except ApiError as exc:
            flash(error_message(exc, "Failed to load categories"))
            categories = []
        return AddExpenseFlow(categories=categories)

    def save_flow(flow):
        session[FLOW_SESSION_KEY] = flow.to_dict()

    def render_add_expense(flow, form=None):
        form = form if form is not None else {}
        selected = form.get("category_id") or flow.selected_category_id or ""
        return render_template(
            "add_expense.html",
            flow=flow,
            form=form,
            selected_category_id=str(selected),
            preview_total=preview_total(form.get("unit"), form.get("per_unit_cost")),
        )

    def draft_index(form):
        try:
            return int(form.get("index", ""))
        except ValueError:
            return None

    @app.route("/expenses/add", methods=("GET", "POST"))
    @login_required
    def add_expense():
        api = get_api()
        if request.method == "GET":
            flow = start_flow(api)
            save_flow(flow)
            return render_add_expense(flow)

        flow = load_flow(api)
        action = (request.form.get("action") or "submit").strip()
        form = request.form

        try:
            if action == "submit":
                error = validate_expense_fields(
                    form.get("name"), form.get("category_id"), form.get("unit"), form.get("per_unit_cost")
                )
                if error:
                    flash(error)
                    return render_add_expense(flow, form)
                try:
                    api.create_expense(
                        expense_payload(form["name"], form["category_id"], form["unit"], form["per_unit_cost"])
                    )
                except ApiError as exc:
                    app.logger.warning("Create expense failed for user_id=%s: %s", g.user.get("id"), exc.message)
                    flash(error_message(exc, "Failed to add expense"))
                    return render_add_expense(flow, form)
                session.pop(FLOW_SESSION_KEY, None)
                flash("Expense added successfully!")
                return redirect(url_for("dashboard"))

            if action == "create_category":
                name = (form.get("new_category_name") or "").strip()
                if not name:
                    flash("Category name is required")
                    return render_add_expense(flow, form)
                try:
                    category = api.create_category(name)
                except ApiError as exc:
                    flash(error_message(exc, "Failed to create category"))
                    return render_add_expense(flow, form)
                flow.add_category(category or {})
                save_flow(flow)
                flash("Category created successfully")
                kept = {key: form.get(key, "") for key in ("name", "unit", "per_unit_cost")}
                kept["category_id"] = str(flow.selected_category_id or "")
                return render_add_expense(flow, kept)

            if action == "open_ai":
                flow.open_ai()
            elif action == "cancel_ai":
                flow.cancel_ai()
            elif action == "extract":
                if not extract_into(flow, (form.get("paragraph") or "").strip()):
                    save_flow(flow)
                    return render_add_expense(flow, {"paragraph": form.get("paragraph", "")})
            elif action == "update_draft":
                index = draft_index(form)
                if index is None or not 0 <= index < len(flow.drafts):
                    flash("Unknown expense row.")
                else:
                    flow.update_draft(
                        index,
                        name=form.get("name"),
                        category_id=form.get("category_id"),
                        unit=form.get("unit"),
                        per_unit_cost=form.get("per_unit_cost"),
                    )
            elif action == "remove_draft":
                index = draft_index(form)
                if index is None or not 0 <= index < len(flow.drafts):
                    flash("Unknown expense row.")
                else:
                    flow.remove_draft(index)
            elif action == "cancel_all":
                flow.cancel_all()
            elif action == "submit_all":
                if not flow.drafts:
                    flash("No expenses to add.")
                else:
                    result = flow.submit_all(api)
                    app.logger.info(
                        "Bulk add for user_id=%s: %s added, %s failed",
                        g.user.get("id"),
                        result["success_count"],
                        result["error_count"],
                    )
                    if result["success_count"]:
                        flash(f"{result['success_count']} expense(s) added successfully!")
                    if result["error_count"]:
                        flash(f"{result['error_count']} expense(s) failed to add")
                    if should_leave_after_submit(result):
                        session.pop(FLOW_SESSION_KEY, None)
                        return redirect(url_for("dashboard"))
            else:
                flash("Unknown action.")
        except InvalidTransition as exc:
            app.logger.info("Ignored add-expense action %s: %s", action, exc)
            flash("That action is not available right now.")

        save_flow(flow)
        return render_add_expense(flow)

    def extract_into(flow, paragraph):
        if flow.mode != AI_MODAL:
            raise InvalidTransition(f"Extraction requires {AI_MODAL}, flow is in {flow.mode}")
        if not paragraph:
            flash("Please describe your expenses first")
            return False

        payload, status = forward_extraction(
            build_extraction_payload(paragraph, flow.categories),
            api_key=app.config.get("AI_EXPENSE_API_KEY"),
            api_url=app.config.get("AI_EXPENSE_API_URL"),
            transport=app.config.get("API_TRANSPORT"),
        )
        try:
            if status >= 400:
                raise ApiError(payload.get("error"), status_code=status, payload=payload)
            items = extracted_items(payload)
        except ApiError as exc:
            flash(error_message(exc, "Failed to extract expenses"))
            return False

        if not flow.extraction_succeeded(items, app.config["FALLBACK_CATEGORY_ID"]):
            flash("No expenses could be extracted from that text")
            return False
        flash(f"Extracted {len(flow.drafts)} expense(s). Review them before adding.")
        return True

    @app.post("/api/extract-expenses")
    def extract_expenses_proxy():
        if not g.auth.is_authenticated:
            return jsonify({"success": False, "error": "Authentication required"}), 401

        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"success": False, "error": "Invalid request body"}), 400

        payload, status = forward_extraction(
            body,
            api_key=app.config.get("AI_EXPENSE_API_KEY"),
            api_url=app.config.get("AI_EXPENSE_API_URL"),
            transport=app.config.get("API_TRANSPORT"),
        )
        return jsonify(payload), status

    @app.get("/analytics")
    @login_required
    def analytics():
        api = get_api()
        generate = request.args.get("generate") == "1"
        start_date = (request.args.get("start_date") or "").strip()
        end_date = (request.args.get("end_date") or "").strip()
        min_date = (request.args.get("min_date") or "").strip()
        has_data = True

        if not generate:
            try:
                date_range = api.get_date_range() or {}
            except ApiError as exc:
                date_range = {}
                if exc.status_code == 404:
                    has_data = False
                    flash("No expenses found. Add some expenses first!")
                else:
                    flash(error_message(exc, "Failed to load date range"))
            min_date = to_date_input(date_range.get("start"))
            start_date = start_date or min_date
            end_date = end_date or to_date_input(date_range.get("end"))

        snapshot = None
        if generate:
            error = validate_date_range(start_date, end_date)
            if error:
                flash(error)
            else:
                try:
                    snapshot = api.get_analytics(start_date, end_date)
                except ApiError as exc:
                    flash(error_message(exc, "Failed to load analytics"))

        charts = {}
        category_rows = []
        if snapshot:
            category_rows = build_category_rows(snapshot)
            charts = {"by_category": category_pie_html(snapshot), "daily": daily_bar_html(snapshot)}

        return render_template(
            "analytics.html",
            start_date=start_date,
            end_date=end_date,
            min_date=min_date,
            has_data=has_data,
            snapshot=snapshot,
            category_rows=category_rows,
            charts=charts,
        )

    @app.get("/admin")
    @admin_required
    def admin():
        try:
            users = get_api().list_users()
        except ApiError as exc:
            flash(error_message(exc, "Failed to load users"))
            users = []
        return render_template("admin.html", users=users)

    @app.route("/admin/users/<int:user_id>/delete", methods=("GET", "POST"))
    @admin_required
    def delete_user(user_id):
        if request.method == "GET":
            return render_template(
                "confirm_delete.html",
                message="Are you sure you want to delete this user? This action cannot be undone.",
                action=url_for("delete_user", user_id=user_id),
                cancel_url=url_for("admin"),
            )

        if not is_confirmed(request.form):
            flash("Deletion cancelled.")
            return redirect(url_for("admin"))

        try:
            get_api().delete_user(user_id)
        except ApiError as exc:
            app.logger.warning("Delete failed for user_id=%s by admin_id=%s: %s", user_id, g.user.get("id"), exc.message)
            flash(error_message(exc, "Failed to delete user"))
            return redirect(url_for("admin"))

        app.logger.info("Delete succeeded for user_id=%s by admin_id=%s", user_id, g.user.get("id"))
        flash("User deleted successfully")
        return redirect(url_for("admin"))

    app.build_api_client = build_api_client
    return app

