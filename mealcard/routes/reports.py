from datetime import date
from flask import Blueprint, current_app, jsonify, request

from mealcard.errors import InvalidRequest
from mealcard.models.verification import MEAL_TYPES
from mealcard.services import report_service

reports_bp = Blueprint('reports', __name__)


def _today():
    return current_app.extensions['verification_engine'].now().date()


def _date_arg(name, default):
    value = request.args.get(name)
    if not value:
        return default
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidRequest(f"Invalid date for '{name}': {value!r}")


def _int_arg(name, default):
    value = request.args.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidRequest(f"Invalid integer for '{name}': {value!r}")


@reports_bp.errorhandler(InvalidRequest)
def handle_invalid(e):
    return jsonify({'error': str(e)}), 400


@reports_bp.route('/reports/meal-counts', methods=['GET'])
def meal_counts():
    """
    Verified meals per meal type over a date range
    ---
    tags:
      - Reports
    parameters:
      - name: from
        in: query
        type: string
        format: date
      - name: to
        in: query
        type: string
        format: date
    responses:
      200:
        description: Counts keyed by meal type
      400:
        description: Invalid date range
    """
    today = _today()
    start = _date_arg('from', today)
    end = _date_arg('to', start if request.args.get('from') else today)
    return jsonify({
        'from': start.isoformat(),
        'to': end.isoformat(),
        'counts': report_service.counts_by_meal(start, end),
    }), 200


@reports_bp.route('/reports/daily', methods=['GET'])
def daily():
    """
    Verified meals per day and meal type
    ---
    tags:
      - Reports
    parameters:
      - name: from
        in: query
        type: string
        format: date
      - name: to
        in: query
        type: string
        format: date
    responses:
      200:
        description: Counts keyed by ISO date, then meal type
      400:
        description: Invalid date range
    """
    today = _today()
    start = _date_arg('from', today.replace(day=1))
    end = _date_arg('to', today)
    return jsonify({'days': report_service.daily_counts(start, end)}), 200


@reports_bp.route('/reports/monthly', methods=['GET'])
def monthly():
    """
    Verified meals per month for a year
    ---
    tags:
      - Reports
    parameters:
      - name: year
        in: query
        type: integer
    responses:
      200:
        description: Counts keyed by month number, then meal type
    """
    year = _int_arg('year', _today().year)
    months = report_service.monthly_counts(year)
    return jsonify({'year': year, 'months': {str(m): c for m, c in months.items()}}), 200


@reports_bp.route('/reports/students/<token>/grid', methods=['GET'])
def student_grid(token):
    """
    Monthly attendance grid for one student
    ---
    tags:
      - Reports
    parameters:
      - name: token
        in: path
        type: string
        required: true
      - name: month
        in: query
        type: integer
      - name: year
        in: query
        type: integer
    responses:
      200:
        description: Status per day and meal type (null when absent)
      400:
        description: Invalid month or year
    """
    today = _today()
    month = _int_arg('month', today.month)
    year = _int_arg('year', today.year)

    start, end = report_service.month_bounds(month, year)
    grid = report_service.student_grid(token, month, year)
    days = {
        str(day): {meal: grid.get((day, meal)) for meal in MEAL_TYPES}
        for day in range(start.day, end.day + 1)
    }
    return jsonify({'token': token, 'month': month, 'year': year, 'days': days}), 200


@reports_bp.route('/statistics', methods=['GET'])
def statistics():
    """
    Dashboard statistics for one day
    ---
    tags:
      - Reports
    parameters:
      - name: date
        in: query
        type: string
        format: date
    responses:
      200:
        description: Verification totals, per-meal counts and active denials
    """
    on_date = _date_arg('date', _today())
    denials = current_app.extensions['verification_engine'].denials
    return jsonify({'success': True, 'stats': report_service.statistics(on_date, denials)}), 200
