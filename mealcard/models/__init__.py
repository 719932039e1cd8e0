from mealcard.models.verification import VerificationRecord, VerificationAttempt
from mealcard.models.denial import DenialEntry
