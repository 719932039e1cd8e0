"""
Serial RFID reader — pumps newline-delimited frames from the reader into
the Token Mailbox on a daemon thread, reconnecting after the port drops.
Scans made while disconnected are lost, not replayed.
"""

import logging
import threading
import serial

logger = logging.getLogger(__name__)


class SerialTokenReader(threading.Thread):
    def __init__(self, mailbox, port, baudrate=9600, read_timeout=1.0,
                 reconnect_delay=2.0, serial_factory=None):
        super().__init__(name="rfid-reader", daemon=True)
        self.mailbox = mailbox
        self.port = port
        self.baudrate = baudrate
        self.read_timeout = read_timeout
        self.reconnect_delay = reconnect_delay
        self._serial_factory = serial_factory or serial.Serial
        self._stopped = threading.Event()

    def stop(self):
        self._stopped.set()

    def run(self):
        while not self._stopped.is_set():
            try:
                with self._serial_factory(self.port, self.baudrate, timeout=self.read_timeout) as conn:
                    self.mailbox.mark_connected()
                    logger.info("RFID reader connected on %s at %s baud", self.port, self.baudrate)
                    self._pump(conn)
            except (serial.SerialException, OSError) as e:
                self.mailbox.mark_disconnected(str(e))
                logger.warning("RFID reader on %s unavailable: %s", self.port, e)
            self._stopped.wait(self.reconnect_delay)

        self.mailbox.mark_disconnected()
        logger.info("RFID reader on %s stopped", self.port)

    def _pump(self, conn):
        while not self._stopped.is_set():
            line = conn.readline()
            if not line:
                continue
            self.mailbox.publish(line.decode("utf-8", errors="ignore"))
