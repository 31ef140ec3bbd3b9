"""Shared fixtures for DP800 tests."""

import re

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dp800 import DP800, TERMINATOR, Toggle, format_value

IDN = "RIGOL TECHNOLOGIES,DP832,DP8C000000001,00.01.14"


class FakeTransport:
    """Scripted line transport.

    ``replies`` are returned by read_line in order. A reply without a
    trailing newline (e.g. "") behaves like a read timeout; an exception
    instance is raised instead of returned.

    Lines appended to ``received`` sit in the input buffer ahead of the
    script, like a reply that arrived after its query timed out.
    """

    def __init__(self, replies=()):
        self.replies = list(replies)
        self.received = []
        self.written = []
        self.discards = 0
        self.closed = False

    def write_line(self, text):
        self.written.append(text)

    def read_line(self):
        if self.received:
            return self.received.pop(0)
        if not self.replies:
            return ""
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def discard_input(self):
        self.discards += 1
        self.received.clear()

    def close(self):
        self.closed = True


class EmulatedDP800:
    """In-memory DP832 speaking the SCPI subset used by the client.

    Set ``drop_responses`` to make the next N queries time out. A dropped
    reply still arrives late and waits in the input buffer.
    """

    def __init__(self, channel_count=3, idn=IDN):
        self.channel_count = channel_count
        self.idn = idn
        self.selected = 1
        self.channels = {
            ch: {
                "output": False,
                "volt": 0.0,
                "curr": 0.0,
                "ovp": 33.0,
                "ocp": 3.3,
                "ovp_on": False,
                "ocp_on": False,
            }
            for ch in range(1, channel_count + 1)
        }
        self.written = []
        self.queries = 0
        self.drop_responses = 0
        self.closed = False
        self._pending = []

    # Out-of-range channels answer for the selected channel
    def _ch(self, text):
        ch = int(text)
        return ch if ch in self.channels else self.selected

    def _measure(self, ch):
        state = self.channels[ch]
        if not state["output"]:
            return "0.000,0.000,0.000"
        volts, amps = state["volt"], state["curr"] / 2
        return f"{format_value(volts)},{format_value(amps)},{format_value(volts * amps)}"

    def _respond(self, text):
        m = re.fullmatch(r"\*IDN\?", text)
        if m:
            return self.idn
        m = re.fullmatch(r":INST:NSEL\?", text)
        if m:
            return str(self.selected)
        m = re.fullmatch(r":INST:NSEL (\d+)", text)
        if m:
            ch = int(m.group(1))
            if ch in self.channels:
                self.selected = ch
            return None
        m = re.fullmatch(r":MEAS:ALL\? CH(\d+)", text)
        if m:
            return self._measure(self._ch(m.group(1)))
        m = re.fullmatch(r":OUTP\? CH(\d+)", text)
        if m:
            return str(Toggle.from_bool(self.channels[self._ch(m.group(1))]["output"]))
        m = re.fullmatch(r":OUTP CH(\d+),(ON|OFF)", text)
        if m:
            self.channels[self._ch(m.group(1))]["output"] = m.group(2) == "ON"
            return None
        m = re.fullmatch(r":SOUR(\d+):(VOLT|CURR)\?", text)
        if m:
            return format_value(self.channels[self._ch(m.group(1))][m.group(2).lower()])
        m = re.fullmatch(r":SOUR(\d+):(VOLT|CURR) ([\d.]+)", text)
        if m:
            self.channels[self._ch(m.group(1))][m.group(2).lower()] = float(m.group(3))
            return None
        m = re.fullmatch(r":OUTP:(OVP|OCP):VAL\? CH(\d+)", text)
        if m:
            return format_value(self.channels[self._ch(m.group(2))][m.group(1).lower()])
        m = re.fullmatch(r":OUTP:(OVP|OCP):VAL CH(\d+),([\d.]+)", text)
        if m:
            self.channels[self._ch(m.group(2))][m.group(1).lower()] = float(m.group(3))
            return None
        m = re.fullmatch(r":OUTP:(OVP|OCP):STAT\? CH(\d+)", text)
        if m:
            key = m.group(1).lower() + "_on"
            return str(Toggle.from_bool(self.channels[self._ch(m.group(2))][key]))
        m = re.fullmatch(r":OUTP:(OVP|OCP):STAT CH(\d+),(ON|OFF)", text)
        if m:
            key = m.group(1).lower() + "_on"
            self.channels[self._ch(m.group(2))][key] = m.group(3) == "ON"
            return None
        raise AssertionError(f"Emulator does not understand {text!r}")

    # -- LineTransport -------------------------------------------------------

    def write_line(self, text):
        self.written.append(text)
        response = self._respond(text)
        if response is None:
            return
        self.queries += 1
        if self.drop_responses > 0:
            self.drop_responses -= 1
            self._pending.extend(["", response + TERMINATOR])
        else:
            self._pending.append(response + TERMINATOR)

    def read_line(self):
        return self._pending.pop(0) if self._pending else ""

    def discard_input(self):
        self._pending.clear()

    def close(self):
        self.closed = True


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def emulator():
    return EmulatedDP800()


@pytest.fixture
def psu(emulator):
    """A DP800 connected to the in-memory emulator."""
    return DP800("emulated:5555", transport=emulator)


def make_psu(*replies):
    """A DP800 over a FakeTransport scripted with ``replies``."""
    transport = FakeTransport(replies)
    return DP800("fake:5555", transport=transport), transport
