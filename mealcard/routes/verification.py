from flask import Blueprint, current_app, jsonify, request

from mealcard.errors import InvalidRequest
from mealcard.services.scan_payload import parse_scan_payload, resolve_meal_type
from mealcard.services.verification_service import (
    DENIED,
    GRANTED,
    UNAVAILABLE,
    VerificationRequest,
)

verification_bp = Blueprint('verification', __name__)

STATUS_CODES = {GRANTED: 200, DENIED: 403, UNAVAILABLE: 503}


@verification_bp.route('/verify-meal', methods=['POST'])
def verify_meal():
    """
    Verify a scanned meal card for the current meal
    ---
    tags:
      - Verification
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            qrData:
              type: string
              description: JSON QR payload or plain university ID
            token:
              type: string
              description: Token taken from the RFID mailbox
            mealType:
              type: string
              enum: [breakfast, lunch, dinner]
    responses:
      200:
        description: Meal granted
      400:
        description: Malformed payload, unknown meal type or outside meal hours
      403:
        description: Denied (access denied, duplicate attempt or already served)
      503:
        description: Verification unavailable, try again
    """
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return jsonify({'success': False, 'error': 'JSON object body required'}), 400
    engine = current_app.extensions['verification_engine']
    now = engine.now()

    try:
        token, payload_date = parse_scan_payload(data.get('qrData') or data.get('token'))
        if payload_date and payload_date != now.date():
            raise InvalidRequest(f"Payload is for {payload_date.isoformat()}, not {now.date().isoformat()}")

        meal_type = data.get('mealType') or resolve_meal_type(now, current_app.config['MEAL_SCHEDULE'])
        outcome = engine.verify(VerificationRequest(token, meal_type, now))
    except InvalidRequest as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    record = outcome.record or {}
    return jsonify({
        'success': outcome.granted,
        'outcome': outcome.status,
        'reason': outcome.reason,
        'message': outcome.message,
        'token': token,
        'mealType': record.get('mealType', meal_type),
        'date': record.get('date', now.date().isoformat()),
        'verifiedAt': record.get('servedAt') if outcome.granted else None,
    }), STATUS_CODES[outcome.status]
