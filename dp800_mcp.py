#!/usr/bin/env python3
"""
Rigol DP800 MCP Server

Exposes the DP800 power supply as MCP tools for LLM-driven control.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python dp800_mcp.py                      # stdio transport (default)
    dp800-mcp                                # installed entry point

Or configure in an MCP client's settings:
    {
        "mcpServers": {
            "dp800": {
                "command": "dp800-mcp"
            }
        }
    }
"""

import dataclasses
import json
from typing import Optional

from fastmcp import FastMCP

from dp800 import DP800, connect as connect_psu, format_value
from dp832_sampler import read_channel_state

mcp = FastMCP(
    "Rigol DP800 Power Supply",
    instructions=(
        "Controls a Rigol DP800 series (e.g. DP832) programmable DC power supply "
        "over its LAN SCPI socket. Channels are numbered from 1. Always connect() "
        "first, then use other tools. Setpoints only change the target values; "
        "use set_output() to switch a channel on or off. Over-voltage (OVP) and "
        "over-current (OCP) protection cut the output when their limit is exceeded."
    ),
)

# Global device handle, one connection at a time
_psu: Optional[DP800] = None


def tool(fn):
    """Register ``fn`` as an MCP tool and return it unchanged, so it stays callable."""
    mcp.tool()(fn)
    return fn


def _require_connection() -> DP800:
    if _psu is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _psu


def _fmt(value: float) -> float:
    """Round a float to wire precision for clean JSON output."""
    return float(format_value(value))


def _channel_json(psu: DP800, ch: int) -> dict:
    state = dataclasses.asdict(read_channel_state(psu, ch))
    for key, value in list(state.items()):
        if isinstance(value, float):
            state[key] = _fmt(value)
    state["measurement"] = {k: _fmt(v) for k, v in state["measurement"].items()}
    state["channel"] = ch
    return state


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@tool
def connect(address: str) -> str:
    """Connect to the DP800 power supply.

    Opens the SCPI socket and reads the identification string.

    Args:
        address: Instrument address as "HOST:PORT", e.g. "192.168.1.10:5555".
                 The port defaults to 5555 when omitted.
    """
    global _psu
    if _psu is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    psu = connect_psu(address)
    try:
        idn = psu.identify()
    except Exception:
        psu.close()
        raise
    _psu = psu

    return json.dumps({
        "status": "connected",
        "manufacturer": idn.manufacturer,
        "model": idn.model,
        "serial_number": idn.serial_number,
        "firmware": idn.firmware_version,
        "channels": idn.channel_count,
    })


@tool
def disconnect() -> str:
    """Disconnect from the DP800 power supply.

    Output states are left as they are.
    """
    global _psu
    if _psu is None:
        return json.dumps({"status": "already disconnected"})

    _psu.close()
    _psu = None
    return json.dumps({"status": "disconnected"})


@tool
def identify() -> str:
    """Read the manufacturer, model, serial number and firmware version."""
    psu = _require_connection()
    idn = psu.identify()
    return json.dumps({**dataclasses.asdict(idn), "channels": idn.channel_count})


@tool
def read_channel(channel: int) -> str:
    """Read the full state of one channel.

    Returns output state, measured voltage/current/power, voltage and
    current setpoints, and the OVP/OCP limit values and enabled flags.

    Args:
        channel: Channel number, 1-3.
    """
    psu = _require_connection()
    return json.dumps(_channel_json(psu, channel))


@tool
def read_all() -> str:
    """Read the full state of every channel.

    The number of channels follows the model reported by *IDN? (DP811: 1,
    DP821: 2, DP831/DP832: 3).
    """
    psu = _require_connection()
    count = psu.identify().channel_count
    return json.dumps({
        "channels": [_channel_json(psu, ch) for ch in range(1, count + 1)]
    })


@tool
def select_channel(channel: int) -> str:
    """Select the active channel on the front panel.

    Args:
        channel: Channel number, 1-3.
    """
    psu = _require_connection()
    psu.select_channel(channel)
    return json.dumps({"status": "ok", "selected_channel": channel})


@tool
def set_output(channel: int, on: bool) -> str:
    """Switch a channel's output on or off.

    Args:
        channel: Channel number, 1-3.
        on: True to enable the output, False to disable it.
    """
    psu = _require_connection()
    psu.set_output_state(channel, on)
    return json.dumps({"status": "ok", "channel": channel, "output": "on" if on else "off"})


@tool
def set_voltage(channel: int, volts: float) -> str:
    """Set a channel's voltage setpoint.

    The value is sent with 3 decimals. This only changes the setpoint;
    it does not enable the output.

    Args:
        channel: Channel number, 1-3.
        volts: Voltage setpoint in volts.
    """
    psu = _require_connection()
    psu.set_setpoint_voltage(channel, volts)
    return json.dumps({"status": "ok", "channel": channel, "setpoint_voltage": _fmt(volts)})


@tool
def set_current(channel: int, amps: float) -> str:
    """Set a channel's current setpoint.

    Args:
        channel: Channel number, 1-3.
        amps: Current setpoint in amps.
    """
    psu = _require_connection()
    psu.set_setpoint_current(channel, amps)
    return json.dumps({"status": "ok", "channel": channel, "setpoint_current": _fmt(amps)})


@tool
def set_ovp(channel: int, volts: float, enabled: Optional[bool] = None) -> str:
    """Set the over-voltage protection limit.

    When the output voltage exceeds this limit and OVP is enabled, the
    channel output is cut.

    Args:
        channel: Channel number, 1-3.
        volts: OVP limit in volts.
        enabled: Also enable (True) or disable (False) OVP; unchanged if omitted.
    """
    psu = _require_connection()
    psu.set_ovp_limit(channel, volts)
    result = {"status": "ok", "channel": channel, "ovp_limit": _fmt(volts)}
    if enabled is not None:
        psu.set_ovp_enabled(channel, enabled)
        result["ovp_enabled"] = enabled
    return json.dumps(result)


@tool
def set_ocp(channel: int, amps: float, enabled: Optional[bool] = None) -> str:
    """Set the over-current protection limit.

    When the output current exceeds this limit and OCP is enabled, the
    channel output is cut.

    Args:
        channel: Channel number, 1-3.
        amps: OCP limit in amps.
        enabled: Also enable (True) or disable (False) OCP; unchanged if omitted.
    """
    psu = _require_connection()
    psu.set_ocp_limit(channel, amps)
    result = {"status": "ok", "channel": channel, "ocp_limit": _fmt(amps)}
    if enabled is not None:
        psu.set_ocp_enabled(channel, enabled)
        result["ocp_enabled"] = enabled
    return json.dumps(result)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    mcp.run()


if __name__ == "__main__":
    main()
