#!/usr/bin/env python3
"""
Rigol DP800 Power Supply - Python API

Talks to the DP800 series (DP831, DP832, ...) over the LAN raw-socket SCPI
interface. Every command or query is one ASCII line terminated by ``\\n``;
every query answers with exactly one line.

See the DP800 Series Programming Guide for the full command reference.

Requires: pyserial (`pip install pyserial`)
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import serial

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_PORT = 5555  # DP800 raw-socket SCPI port
READ_TIMEOUT = 1.0  # seconds, applied to every read
ENCODING = "ascii"
TERMINATOR = "\n"

# Numeric values are sent with exactly this many decimals (wire contract)
DECIMALS = 3

# DP811, DP821, DP831/DP832: the digit after "DP8" is the output count
MODEL_CHANNELS = re.compile(r"DP8([1-3])")
DEFAULT_CHANNEL_COUNT = 3


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class DP800Error(Exception):
    """Base class for all DP800 protocol errors."""


class ConnectError(DP800Error, ConnectionError):
    """The instrument address could not be reached."""


class TransportError(DP800Error, IOError):
    """A write or read failed on an established connection."""


class QueryTimeout(DP800Error, TimeoutError):
    """No complete response line arrived before the read deadline."""


class ParseError(DP800Error, ValueError):
    """A response did not have the expected field count or type."""


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Measurement:
    """Output measurement returned by ``:MEAS:ALL?``."""

    voltage: float
    current: float
    power: float


@dataclass(frozen=True)
class Identify:
    """Identification strings returned by ``*IDN?``."""

    manufacturer: str
    model: str
    serial_number: str
    firmware_version: str

    @property
    def channel_count(self) -> int:
        """Number of outputs on this model; DEFAULT_CHANNEL_COUNT if unrecognized."""
        m = MODEL_CHANNELS.match(self.model)
        return int(m.group(1)) if m else DEFAULT_CHANNEL_COUNT


class Toggle(Enum):
    """ON/OFF token used by the output and protection state commands."""

    OFF = "OFF"
    ON = "ON"

    @classmethod
    def from_bool(cls, on: bool) -> "Toggle":
        return cls.ON if on else cls.OFF

    def __bool__(self) -> bool:
        return self is Toggle.ON

    def __str__(self) -> str:
        return self.value


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------
def format_value(value: float) -> str:
    """Format a number for the wire: fixed, exactly 3 decimals."""
    return f"{value:.{DECIMALS}f}"


def parse_number(text: str) -> float:
    """Parse a plain decimal response."""
    try:
        return float(text)
    except ValueError:
        raise ParseError(f"Expected a number, got {text!r}") from None


def parse_int(text: str) -> int:
    """Parse an integer response (channel numbers)."""
    try:
        return int(text)
    except ValueError:
        raise ParseError(f"Expected an integer, got {text!r}") from None


def parse_toggle(text: str) -> bool:
    """``ON`` -> True, ``OFF`` -> False; any other token is a ParseError."""
    try:
        return bool(Toggle(text))
    except ValueError:
        raise ParseError(f"Expected ON or OFF, got {text!r}") from None


def parse_measurement(text: str) -> Measurement:
    """Parse ``V,A,W`` into a Measurement."""
    fields = text.split(",")
    if len(fields) != 3:
        raise ParseError(f"Expected 3 measurement fields, got {len(fields)}: {text!r}")
    voltage, current, power = (parse_number(f) for f in fields)
    return Measurement(voltage, current, power)


def parse_identify(text: str) -> Identify:
    """Parse ``MFR,MODEL,SERIAL,VERSION`` into an Identify."""
    fields = text.split(",")
    if len(fields) != 4:
        raise ParseError(f"Expected 4 identification fields, got {len(fields)}: {text!r}")
    return Identify(*fields)


def socket_url(address: str) -> str:
    """Turn ``HOST[:PORT]`` into a pyserial ``socket://`` URL."""
    if "://" in address:
        return address
    host, sep, port = address.rpartition(":")
    if not sep:
        host, port = address, str(DEFAULT_PORT)
    if not host:
        raise ConnectError(f"Invalid address {address!r}")
    return f"socket://{host}:{port}"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class LineTransport(Protocol):
    """Anything that can exchange newline-terminated lines with the device."""

    def write_line(self, text: str) -> None:
        ...

    def read_line(self) -> str:
        """Return one line including its terminator, or a partial line on timeout."""
        ...

    def discard_input(self) -> None:
        """Drop anything already received, e.g. a reply that arrived after its timeout."""
        ...

    def close(self) -> None:
        ...


class SerialLineTransport:
    """pyserial ``socket://`` connection with a fixed read deadline."""

    def __init__(self, address: str, timeout: float = READ_TIMEOUT):
        url = socket_url(address)
        try:
            self._ser = serial.serial_for_url(url, timeout=timeout, write_timeout=timeout)
        except (serial.SerialException, OSError, ValueError) as e:
            raise ConnectError(f"Could not connect to {address}: {e}") from e

    def write_line(self, text: str):
        try:
            self._ser.write((text + TERMINATOR).encode(ENCODING))
            self._ser.flush()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Write failed: {e}") from e

    def read_line(self) -> str:
        try:
            data = self._ser.readline()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Read failed: {e}") from e
        return data.decode(ENCODING, errors="replace")

    def discard_input(self):
        try:
            self._ser.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Read failed: {e}") from e

    def close(self):
        if self._ser.is_open:
            self._ser.close()


# ---------------------------------------------------------------------------
# DP800 class
# ---------------------------------------------------------------------------
class DP800:
    """Python API for the Rigol DP800 programmable power supply.

    Channels are 1-indexed. Out-of-range channel numbers are sent as-is;
    the instrument answers them for its currently selected channel.

    The protocol allows a single outstanding request: every method returns
    only after its response was read (or timed out).

    Usage::

        with DP800("192.168.1.10:5555") as psu:
            print(psu.identify())
            psu.set_setpoint_voltage(1, 5.0)
    """

    def __init__(self, address: str, timeout: float = READ_TIMEOUT,
                 transport: Optional[LineTransport] = None):
        self._address = address
        self._timeout = timeout
        self._transport = transport

    @property
    def address(self) -> str:
        return self._address

    @property
    def connected(self) -> bool:
        return self._transport is not None

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        if self._transport is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -- Connection lifecycle ------------------------------------------------

    def connect(self):
        """Open the socket. Raises ConnectError if the address is unreachable."""
        logger.debug("Connecting to %s", self._address)
        self._transport = SerialLineTransport(self._address, self._timeout)
        logger.debug("Connected to %s", self._address)

    def close(self):
        """Close the socket. Safe to call more than once."""
        if self._transport is not None:
            self._transport.close()
        self._transport = None

    # -- Low-level I/O -------------------------------------------------------

    def _require_transport(self) -> LineTransport:
        if self._transport is None:
            raise TransportError("Not connected")
        return self._transport

    def command(self, text: str):
        """Send a command that has no response."""
        logger.debug("> %s", text)
        self._require_transport().write_line(text)

    def query(self, text: str) -> str:
        """Send a query and return its response line without the terminator."""
        transport = self._require_transport()
        # a late reply to an abandoned query must not be read as this one's answer
        transport.discard_input()
        logger.debug("> %s", text)
        transport.write_line(text)
        line = transport.read_line()
        if not line.endswith(TERMINATOR):
            raise QueryTimeout(f"No response to {text!r} within {self._timeout}s")
        line = line[: -len(TERMINATOR)]
        logger.debug("< %s", line)
        return line

    def _query_float(self, text: str) -> float:
        return parse_number(self.query(text))

    def _query_toggle(self, text: str) -> bool:
        return parse_toggle(self.query(text))

    # -- Identification ------------------------------------------------------

    def identify(self) -> Identify:
        """Identify the power supply."""
        return parse_identify(self.query("*IDN?"))

    # -- Output state --------------------------------------------------------

    def output_state(self, ch: int) -> bool:
        return self._query_toggle(f":OUTP? CH{ch}")

    def set_output_state(self, ch: int, on: bool):
        self.command(f":OUTP CH{ch},{Toggle.from_bool(on)}")

    # -- Channel selection ---------------------------------------------------

    def selected_channel(self) -> int:
        """Channel currently selected on the front panel."""
        return parse_int(self.query(":INST:NSEL?"))

    def select_channel(self, ch: int):
        self.command(f":INST:NSEL {ch}")

    # -- Setpoints -----------------------------------------------------------

    def setpoint_current(self, ch: int) -> float:
        """Current setpoint in amps."""
        return self._query_float(f":SOUR{ch}:CURR?")

    def set_setpoint_current(self, ch: int, amps: float):
        self.command(f":SOUR{ch}:CURR {format_value(amps)}")

    def setpoint_voltage(self, ch: int) -> float:
        """Voltage setpoint in volts."""
        return self._query_float(f":SOUR{ch}:VOLT?")

    def set_setpoint_voltage(self, ch: int, volts: float):
        self.command(f":SOUR{ch}:VOLT {format_value(volts)}")

    # -- Measurement ---------------------------------------------------------

    def measure_all(self, ch: int) -> Measurement:
        """Measured voltage, current and power."""
        return parse_measurement(self.query(f":MEAS:ALL? CH{ch}"))

    # -- Over-current protection ---------------------------------------------

    def ocp_limit(self, ch: int) -> float:
        """Over-current protection value in amps."""
        return self._query_float(f":OUTP:OCP:VAL? CH{ch}")

    def set_ocp_limit(self, ch: int, amps: float):
        self.command(f":OUTP:OCP:VAL CH{ch},{format_value(amps)}")

    def ocp_enabled(self, ch: int) -> bool:
        return self._query_toggle(f":OUTP:OCP:STAT? CH{ch}")

    def set_ocp_enabled(self, ch: int, on: bool):
        self.command(f":OUTP:OCP:STAT CH{ch},{Toggle.from_bool(on)}")

    # -- Over-voltage protection ---------------------------------------------

    def ovp_limit(self, ch: int) -> float:
        """Over-voltage protection value in volts."""
        return self._query_float(f":OUTP:OVP:VAL? CH{ch}")

    def set_ovp_limit(self, ch: int, volts: float):
        self.command(f":OUTP:OVP:VAL CH{ch},{format_value(volts)}")

    def ovp_enabled(self, ch: int) -> bool:
        return self._query_toggle(f":OUTP:OVP:STAT? CH{ch}")

    def set_ovp_enabled(self, ch: int, on: bool):
        self.command(f":OUTP:OVP:STAT CH{ch},{Toggle.from_bool(on)}")


def connect(address: str, timeout: float = READ_TIMEOUT) -> DP800:
    """Create a DP800 and open its connection."""
    psu = DP800(address, timeout)
    psu.connect()
    return psu


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _on_off(text: str) -> bool:
    import argparse

    try:
        return parse_toggle(text.upper())
    except ParseError:
        raise argparse.ArgumentTypeError("expected on or off") from None


def _cli():
    import argparse
    import dataclasses
    import json as _json
    import sys

    from dp832_config import ConfigError, load_settings
    from dp832_sampler import read_channel_state

    parser = argparse.ArgumentParser(
        prog="dp800",
        description="Rigol DP800 command-line interface",
    )
    parser.add_argument("-a", "--address", help="PSU address, HOST:PORT")
    parser.add_argument("-c", "--config", help="path to a YAML config file")
    sub = parser.add_subparsers(dest="command", required=True)

    # -- info / measure / state ----------------------------------------------
    sub.add_parser("info", help="show device identification")

    p = sub.add_parser("measure", help="measure V/A/W of a channel")
    p.add_argument("ch", type=int)

    p = sub.add_parser("state", help="read full channel state (JSON)")
    p.add_argument("ch", type=int)

    # -- channel -------------------------------------------------------------
    p = sub.add_parser("channel", help="get or select the active channel")
    p.add_argument("ch", type=int, nargs="?")

    # -- on / off ------------------------------------------------------------
    p = sub.add_parser("on", help="enable channel output")
    p.add_argument("ch", type=int)
    p = sub.add_parser("off", help="disable channel output")
    p.add_argument("ch", type=int)

    # -- setpoints -----------------------------------------------------------
    p = sub.add_parser("set-voltage", help="set voltage setpoint")
    p.add_argument("ch", type=int)
    p.add_argument("volts", type=float)

    p = sub.add_parser("set-current", help="set current setpoint")
    p.add_argument("ch", type=int)
    p.add_argument("amps", type=float)

    # -- protection ----------------------------------------------------------
    p = sub.add_parser("set-ovp", help="set over-voltage protection value")
    p.add_argument("ch", type=int)
    p.add_argument("volts", type=float)

    p = sub.add_parser("set-ocp", help="set over-current protection value")
    p.add_argument("ch", type=int)
    p.add_argument("amps", type=float)

    p = sub.add_parser("ovp", help="enable/disable over-voltage protection")
    p.add_argument("ch", type=int)
    p.add_argument("state", type=_on_off)

    p = sub.add_parser("ocp", help="enable/disable over-current protection")
    p.add_argument("ch", type=int)
    p.add_argument("state", type=_on_off)

    args = parser.parse_args()

    try:
        settings = load_settings(args.config, args.address)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        psu = connect(settings.address, settings.read_timeout)
    except ConnectError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        cmd = args.command

        if cmd == "info":
            idn = psu.identify()
            print(f"Manufacturer: {idn.manufacturer}")
            print(f"Model:        {idn.model}")
            print(f"Serial:       {idn.serial_number}")
            print(f"Firmware:     {idn.firmware_version}")

        elif cmd == "measure":
            m = psu.measure_all(args.ch)
            print(f"{m.voltage:.3f} V  {m.current:.3f} A  {m.power:.3f} W")
        elif cmd == "state":
            state = read_channel_state(psu, args.ch)
            print(_json.dumps(dataclasses.asdict(state), indent=2))

        elif cmd == "channel":
            if args.ch is None:
                print(psu.selected_channel())
            else:
                psu.select_channel(args.ch)
                print(f"Selected CH{args.ch}")

        elif cmd == "on":
            psu.set_output_state(args.ch, True)
            print(f"CH{args.ch} output ON")
        elif cmd == "off":
            psu.set_output_state(args.ch, False)
            print(f"CH{args.ch} output OFF")

        elif cmd == "set-voltage":
            psu.set_setpoint_voltage(args.ch, args.volts)
            print(f"CH{args.ch} voltage setpoint: {format_value(args.volts)} V")
        elif cmd == "set-current":
            psu.set_setpoint_current(args.ch, args.amps)
            print(f"CH{args.ch} current setpoint: {format_value(args.amps)} A")

        elif cmd == "set-ovp":
            psu.set_ovp_limit(args.ch, args.volts)
            print(f"CH{args.ch} OVP: {format_value(args.volts)} V")
        elif cmd == "set-ocp":
            psu.set_ocp_limit(args.ch, args.amps)
            print(f"CH{args.ch} OCP: {format_value(args.amps)} A")
        elif cmd == "ovp":
            psu.set_ovp_enabled(args.ch, args.state)
            print(f"CH{args.ch} OVP {Toggle.from_bool(args.state)}")
        elif cmd == "ocp":
            psu.set_ocp_enabled(args.ch, args.state)
            print(f"CH{args.ch} OCP {Toggle.from_bool(args.state)}")

    except DP800Error as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        psu.close()


if __name__ == "__main__":
    _cli()
