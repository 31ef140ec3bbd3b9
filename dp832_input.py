"""Keyboard-driven navigation and text entry for the DP832 front-end.

Two modes: NAVIGATION moves the channel and field cursors and toggles
states; TEXT_ENTRY collects a number for one of the editable fields and
sends it on confirm.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from dp800 import DP800
from dp832_sampler import Snapshot

logger = logging.getLogger(__name__)

SETTLE_DELAY = 0.05  # seconds after a channel switch
INPUT_MAX_LEN = 16
INPUT_CHARS = frozenset("0123456789.")


class Field(Enum):
    """Field cursor, cycling in declaration order."""

    MEASURE = "measure"
    SET_VOLTAGE = "set_voltage"
    SET_CURRENT = "set_current"
    OVP_LIMIT = "ovp_limit"
    OCP_LIMIT = "ocp_limit"
    OVP_ENABLED = "ovp_enabled"
    OCP_ENABLED = "ocp_enabled"

    def next(self) -> "Field":
        return _NEXT[self]

    def prev(self) -> "Field":
        return _PREV[self]

    @property
    def index(self) -> int:
        return _ORDER.index(self)

    @property
    def editable(self) -> bool:
        return self in ENTRY_TITLES

    @property
    def toggle(self) -> bool:
        return self in (Field.OVP_ENABLED, Field.OCP_ENABLED)

    @property
    def list_index(self) -> Optional[int]:
        """Row of this field inside its panel list (None for MEASURE)."""
        return _LIST_INDEX[self]


_ORDER = list(Field)
_NEXT = {f: _ORDER[(i + 1) % len(_ORDER)] for i, f in enumerate(_ORDER)}
_PREV = {f: _ORDER[(i - 1) % len(_ORDER)] for i, f in enumerate(_ORDER)}
_LIST_INDEX = {
    Field.MEASURE: None,
    Field.SET_VOLTAGE: 0,
    Field.SET_CURRENT: 1,
    Field.OVP_LIMIT: 0,
    Field.OCP_LIMIT: 1,
    Field.OVP_ENABLED: 2,
    Field.OCP_ENABLED: 3,
}

ENTRY_TITLES = {
    Field.SET_VOLTAGE: "Voltage Setpoint (V)",
    Field.SET_CURRENT: "Current Setpoint (A)",
    Field.OVP_LIMIT: "Over Voltage Protection (V)",
    Field.OCP_LIMIT: "Over Current Protection (A)",
}


class Mode(Enum):
    NAVIGATION = "navigation"
    TEXT_ENTRY = "text_entry"


class Action(Enum):
    """Discrete input events other than typed characters."""

    CHANNEL_NEXT = "channel_next"
    CHANNEL_PREV = "channel_prev"
    FIELD_NEXT = "field_next"
    FIELD_PREV = "field_prev"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    BACKSPACE = "backspace"


@dataclass
class Selection:
    """Channel cursor (1-indexed, wrapping) and field cursor."""

    channel_count: int
    channel: int = 1
    field: Field = Field.MEASURE

    def __post_init__(self):
        if not 1 <= self.channel <= self.channel_count:
            raise ValueError(f"Channel {self.channel} out of range [1, {self.channel_count}]")

    def next_channel(self) -> int:
        self.channel = self.channel % self.channel_count + 1
        return self.channel

    def prev_channel(self) -> int:
        self.channel = (self.channel - 2) % self.channel_count + 1
        return self.channel


@dataclass
class InputBuffer:
    """Pending text entry for one editable field."""

    target: Field
    chars: str = ""
    invalid: bool = False

    @property
    def title(self) -> str:
        return ENTRY_TITLES[self.target]

    def value(self) -> Optional[float]:
        """The entered number, or None if the text is not a valid number."""
        try:
            return float(self.chars)
        except ValueError:
            return None


Event = Union[Action, str]


class InputStateMachine:
    """Turns input events into cursor moves and DP800 calls.

    Protocol calls run synchronously; errors from them propagate to the
    caller after the local state change has been applied.
    """

    def __init__(self, client: DP800, snapshot: Snapshot, selection: Selection,
                 settle_delay: float = SETTLE_DELAY,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.snapshot = snapshot
        self.selection = selection
        self.settle_delay = settle_delay
        self.buffer: Optional[InputBuffer] = None
        self._sleep = sleep

    @property
    def mode(self) -> Mode:
        return Mode.NAVIGATION if self.buffer is None else Mode.TEXT_ENTRY

    def handle(self, event: Event):
        """Dispatch one event: an Action or a single typed character."""
        if self.buffer is None:
            self._handle_navigation(event)
        else:
            self._handle_entry(event)

    # -- Navigation ----------------------------------------------------------

    def _handle_navigation(self, event: Event):
        if event is Action.CHANNEL_NEXT:
            self._switch_channel(self.selection.next_channel())
        elif event is Action.CHANNEL_PREV:
            self._switch_channel(self.selection.prev_channel())
        elif event is Action.FIELD_NEXT:
            self.selection.field = self.selection.field.next()
        elif event is Action.FIELD_PREV:
            self.selection.field = self.selection.field.prev()
        elif event is Action.CONFIRM:
            self._confirm_field()

    def _switch_channel(self, ch: int):
        self.client.select_channel(ch)
        # switching channels too quickly makes the PSU report invalid commands
        self._sleep(self.settle_delay)

    def _confirm_field(self):
        ch = self.selection.channel
        current = self.snapshot[ch]
        target = self.selection.field

        if target is Field.MEASURE:
            self.client.set_output_state(ch, not current.output_on)
        elif target.toggle:
            # toggle fields share their name with the ChannelState flag and the setter suffix
            enabled = getattr(current, target.value)
            getattr(self.client, f"set_{target.value}")(ch, not enabled)
        elif target.editable:
            self.buffer = InputBuffer(target)

    # -- Text entry ----------------------------------------------------------

    def _handle_entry(self, event: Event):
        buf = self.buffer
        if event is Action.CANCEL:
            self.buffer = None
        elif event is Action.BACKSPACE:
            buf.chars = buf.chars[:-1]
            buf.invalid = False
        elif event is Action.CONFIRM:
            self._submit()
        elif isinstance(event, str):
            if event in INPUT_CHARS and len(buf.chars) < INPUT_MAX_LEN:
                buf.chars += event
                buf.invalid = False

    def _submit(self):
        buf = self.buffer
        value = buf.value()
        if value is None:
            logger.debug("Rejected entry %r for %s", buf.chars, buf.target.name)
            buf.invalid = True
            return

        self.buffer = None
        ch = self.selection.channel
        if buf.target is Field.SET_VOLTAGE:
            self.client.set_setpoint_voltage(ch, value)
        elif buf.target is Field.SET_CURRENT:
            self.client.set_setpoint_current(ch, value)
        elif buf.target is Field.OVP_LIMIT:
            self.client.set_ovp_limit(ch, value)
        elif buf.target is Field.OCP_LIMIT:
            self.client.set_ocp_limit(ch, value)
