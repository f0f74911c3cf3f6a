"""
BOOTSEL entry over a serial port.

Boards running Pico SDK stdio-USB (or the Arduino core) reset into BOOTSEL
when the host opens their CDC port at 1200 baud and drops DTR. This module
performs that "touch" so the PICOBOOT interface appears without pressing the
BOOTSEL button.
"""

import logging
import time
from typing import List

try:
    import serial
    import serial.tools.list_ports
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from .picoboot import RP2_VENDOR_ID

logger = logging.getLogger(__name__)

TOUCH_BAUDRATE = 1200
TOUCH_HOLD_SECONDS = 0.1


class BootselTouchError(Exception):
    """The serial port could not be opened for the 1200-baud touch"""
    pass


def list_pico_ports() -> List[str]:
    """
    List serial ports that belong to a Raspberry Pi RP2 device.

    Returns:
        Port device names (e.g. "/dev/ttyACM0", "COM5")
    """
    ports = [
        p.device
        for p in serial.tools.list_ports.comports()
        if p.vid == RP2_VENDOR_ID
    ]
    logger.debug(f"RP2 serial ports: {ports}")
    return ports


def enter_bootsel(port: str, hold: float = TOUCH_HOLD_SECONDS) -> None:
    """
    Ask the board on `port` to reboot into BOOTSEL mode.

    The board drops off the bus immediately, so nothing is read back. Poll
    for the BOOTSEL device afterwards.

    Args:
        port: Serial port of the running board
        hold: Seconds to keep the port open before closing it

    Raises:
        BootselTouchError: If the port cannot be opened
    """
    try:
        ser = serial.Serial(port=port, baudrate=TOUCH_BAUDRATE, timeout=0.5)
    except serial.SerialException as e:
        raise BootselTouchError(f"Cannot open port {port}: {e}")

    try:
        ser.dtr = True
        time.sleep(hold)
        ser.dtr = False
    except serial.SerialException as e:
        # The board may vanish while DTR is toggled; that is the expected outcome
        logger.debug(f"Port {port} went away during touch: {e}")
    finally:
        try:
            ser.close()
        except serial.SerialException as e:
            logger.debug(f"Close after touch failed: {e}")

    logger.info(f"Sent 1200-baud touch to {port}")
