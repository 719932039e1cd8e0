from flask import Blueprint, current_app, jsonify

rfid_bp = Blueprint('rfid', __name__)


@rfid_bp.route('/latest', methods=['GET'])
def latest_token():
    """
    Take the most recent RFID scan (clears it)
    ---
    tags:
      - RFID
    responses:
      200:
        description: Latest unread token, or null when nothing new was scanned
    """
    mailbox = current_app.extensions['token_mailbox']
    return jsonify({'uid': mailbox.take_latest()}), 200


@rfid_bp.route('/status', methods=['GET'])
def reader_status():
    """
    RFID reader connection status
    ---
    tags:
      - RFID
    responses:
      200:
        description: Connection flag, last error and last scan time
    """
    mailbox = current_app.extensions['token_mailbox']
    return jsonify(mailbox.status()), 200
