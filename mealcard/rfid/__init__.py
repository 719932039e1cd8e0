from mealcard.rfid.mailbox import TokenMailbox
from mealcard.rfid.reader import SerialTokenReader
