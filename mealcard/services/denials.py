"""
Denial List — read-only "is token X actively denied" lookup.
Reads the local denied_students table, or an external access-control
service when DENIAL_SERVICE_URL is configured.
"""

import logging
import requests

from mealcard.errors import VerificationUnavailable
from mealcard.models.denial import DenialEntry

logger = logging.getLogger(__name__)

DEFAULT_DENIAL_REASON = "Access denied"


class DenialList:
    def __init__(self, service_url=None, timeout=2.0):
        self.service_url = service_url.rstrip("/") if service_url else None
        self.timeout = timeout

    def find_active(self, token, meal_type, on_date):
        """Reason string when an active denial covers this meal, else None."""
        if self.service_url:
            return self._find_remote(token, meal_type, on_date)

        entries = DenialEntry.query.filter_by(token=token, active=True).all()
        for entry in entries:
            if entry.covers(meal_type, on_date):
                return entry.reason or DEFAULT_DENIAL_REASON
        return None

    def _find_remote(self, token, meal_type, on_date):
        try:
            response = requests.get(
                f"{self.service_url}/denials/active",
                params={"token": token, "mealType": meal_type, "date": on_date.isoformat()},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Denial service unreachable: %s", e)
            raise VerificationUnavailable("Denial service unreachable") from e

        if response.status_code != 200:
            logger.warning("Denial service returned %s: %s", response.status_code, response.text)
            raise VerificationUnavailable(f"Denial service returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.warning("Denial service sent a non-JSON body: %s", response.text)
            raise VerificationUnavailable("Denial service sent a non-JSON body") from e
        if not isinstance(data, dict):
            logger.warning("Denial service sent an unexpected body: %r", data)
            raise VerificationUnavailable("Denial service sent an unexpected body")

        if data.get("denied"):
            return data.get("reason") or DEFAULT_DENIAL_REASON
        return None

    def count_active(self):
        return DenialEntry.query.filter_by(active=True).count()
