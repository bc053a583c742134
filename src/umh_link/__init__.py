"""
UMH Link - host-side serial protocol and discovery for the UMH device

This package talks to a UMH device over a serial link using its fixed binary
frame format. It includes:

- **Frame codec** for encoding commands and validating received frames
- **Serial transport** with time-bounded open, read and write
- **Connection sessions** with a dedicated reader thread and ordered frame delivery
- **Port scanning** that races ping probes across every candidate port
- **Device control** with status tracking and periodic status polling

Wire format: ``AA 55 | type | length | payload | checksum | 0D 0A``.
"""

import logging
import os

logging.getLogger("umh_link").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Frame delimiters
FRAME_HEADER = b"\xAA\x55"
FRAME_TAIL = b"\x0D\x0A"
FRAME_OVERHEAD = 7        # header(2) + type(1) + length(1) + checksum(1) + tail(2)
MAX_PAYLOAD_LENGTH = 255

# Serial line settings.  The device only speaks 8N1 at one of these rates.
VALID_BAUD_RATES = (9600, 19200, 38400, 57600, 115200)
SERIAL_BAUD_RATE = int(os.environ.get("UMH_BAUD_RATE", "115200"))
SERIAL_BYTESIZE = 8       # 8 data bits
SERIAL_PARITY = "N"       # No parity
SERIAL_STOPBITS = 1       # 1 stop bit

# Port used by DeviceContext / CLI when set; empty means "scan for the device".
SERIAL_PORT = os.environ.get("UMH_PORT", "")

# Timeout settings (seconds)
SERIAL_OPEN_TIMEOUT_S = 0.2
SERIAL_WRITE_TIMEOUT_S = 0.3
SESSION_READ_TIMEOUT_S = 0.05  # per decode iteration; bounds dispose latency
SESSION_QUEUE_SIZE = 256       # frames buffered between reader and subscribers

# Port scanning
SCAN_OPEN_TIMEOUT_S = 0.1
SCAN_PING_WINDOW_S = 0.2
SCAN_POLL_INTERVAL_S = 0.01
SCAN_EXCLUDE_SUBSTRINGS = ("bluetooth",)

# Status polling
STATUS_POLL_INTERVAL_S = 1.0
STATUS_POLL_INITIAL_DELAY_S = 1.0
