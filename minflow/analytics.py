import math
from datetime import date, datetime

import plotly.graph_objects as go

CHART_COLORS = ["#0088FE", "#00C49F", "#FFBB28", "#FF8042", "#8884D8", "#82CA9D"]


def parse_number(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = str(value).strip().replace(",", "")
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def preview_total(unit, per_unit_cost):
    """Display-only total for the manual form; the backend computes the real one."""
    return (parse_number(unit) or 0.0) * (parse_number(per_unit_cost) or 0.0)


def sum_totals(expenses):
    return sum(parse_number(expense.get("total")) or 0.0 for expense in expenses)


def category_percentage(total, total_expenses):
    numerator = parse_number(total)
    denominator = parse_number(total_expenses)
    if numerator is None or not denominator:
        return None
    return numerator / denominator * 100


def format_percentage(value):
    if value is None:
        return "N/A"
    return f"{value:.1f}%"


def format_money(value):
    return f"{parse_number(value) or 0.0:.2f}"


def to_date_input(value):
    """Trim a backend timestamp such as ``2024-03-01T00:00:00Z`` to ``YYYY-MM-DD``."""
    text = (value or "").strip()
    if not text:
        return ""
    candidate = text[:10]
    try:
        datetime.strptime(candidate, "%Y-%m-%d")
    except ValueError:
        return ""
    return candidate


def validate_date_range(start_date, end_date, today=None):
    if not start_date or not end_date:
        return "Please select start and end dates"
    try:
        start = datetime.strptime(start_date, "%Y-%m-%d").date()
    except ValueError:
        return "Invalid start_date format (use YYYY-MM-DD)"
    try:
        end = datetime.strptime(end_date, "%Y-%m-%d").date()
    except ValueError:
        return "Invalid end_date format (use YYYY-MM-DD)"
    if end < start:
        return "end_date must be after start_date"
    if end > (today or date.today()):
        return "end_date cannot be in the future"
    return None


def build_category_rows(snapshot):
    total_expenses = snapshot.get("total_expenses")
    rows = []
    for item in snapshot.get("by_category") or []:
        percentage = category_percentage(item.get("total"), total_expenses)
        rows.append({
            "category_id": item.get("category_id"),
            "name": item.get("category_name") or "Uncategorized",
            "count": item.get("count") or 0,
            "total": parse_number(item.get("total")) or 0.0,
            "percentage": percentage,
            "percentage_label": format_percentage(percentage),
        })
    return rows


def _figure_html(figure):
    figure.update_layout(margin={"l": 20, "r": 20, "t": 20, "b": 20}, height=300)
    return figure.to_html(full_html=False, include_plotlyjs="cdn")


def category_pie_html(snapshot):
    rows = snapshot.get("by_category") or []
    if not rows:
        return None
    figure = go.Figure(
        go.Pie(
            labels=[row.get("category_name") for row in rows],
            values=[parse_number(row.get("total")) or 0.0 for row in rows],
            marker={"colors": CHART_COLORS},
        )
    )
    return _figure_html(figure)


def daily_bar_html(snapshot):
    rows = snapshot.get("daily_expenses") or []
    if not rows:
        return None
    figure = go.Figure(
        go.Bar(
            x=[to_date_input(row.get("date")) or row.get("date") for row in rows],
            y=[parse_number(row.get("total")) or 0.0 for row in rows],
            marker_color="#8884d8",
            name="total",
        )
    )
    return _figure_html(figure)
