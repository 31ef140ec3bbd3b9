#!/usr/bin/env python3
"""
Rigol DP832 TUI

Interactive terminal front-end for a three-channel DP800 power supply.
Uses curses (standard library) for the terminal interface; samples every
channel once per tick and sends setpoint, limit and on/off changes as they
are entered.

Keys:
    Left/Right (h/l)   previous/next channel
    Up/Down (k/j)      previous/next field
    Enter              toggle output or protection, or edit a value
    Esc                discard input
    q                  quit

Run:
    dp832-tui --address 192.168.1.10:5555
    dp832-tui --config ~/bench.yaml --log-file dp832.log
"""

import argparse
import curses
import logging
import sys
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from dp800 import ConnectError, DP800, DP800Error, connect
from dp832_config import Config, ConfigError, load_settings
from dp832_input import Action, Event, Field, InputBuffer, InputStateMachine, Selection
from dp832_sampler import ChannelState, Sampler, Snapshot

logger = logging.getLogger(__name__)

QUIT_KEY = "q"
HELP_TEXT = "Navigate [←↓↑→] Select [⏎] Discard Input [Esc] Quit [q]"

COLOR_ON = 1
COLOR_ENTRY = 2
COLOR_ERROR = 3

# Panel heights: measure (3 lines), set list (2 lines), limit list (4 lines), plus borders
MEASURE_HEIGHT = 5
SET_HEIGHT = 4
LIMIT_HEIGHT = 6
ENTRY_HEIGHT = 3


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
class StatusLineHandler(logging.Handler):
    """Keeps the latest warning for display on the status line."""

    def __init__(self, level=logging.WARNING):
        super().__init__(level)
        self.setFormatter(logging.Formatter("%(message)s"))
        self.message: str = ""

    def emit(self, record):
        self.message = self.format(record)

    def clear(self):
        self.message = ""


def setup_logging(debug: bool = False, log_file: Optional[str] = None,
                  status: Optional[StatusLineHandler] = None):
    """
    Configure the root logger. Nothing is written to the terminal while
    curses owns it: records go to ``log_file`` and/or the status line.
    """
    handlers = []
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    if status is not None:
        handlers.append(status)
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class View:
    """Read-only state handed to the renderer each frame."""

    channels: list[ChannelState]
    channel: int
    field: Field
    buffer: Optional[InputBuffer]
    status: str = ""


def key_to_event(key: int) -> Optional[Event]:
    """Map a curses key code to an input event (None for unbound keys)."""
    if key in (curses.KEY_RIGHT, ord("l")):
        return Action.CHANNEL_NEXT
    if key in (curses.KEY_LEFT, ord("h")):
        return Action.CHANNEL_PREV
    if key in (curses.KEY_DOWN, ord("j")):
        return Action.FIELD_NEXT
    if key in (curses.KEY_UP, ord("k")):
        return Action.FIELD_PREV
    if key in (curses.KEY_ENTER, 10, 13):
        return Action.CONFIRM
    if key == 27:
        return Action.CANCEL
    if key in (curses.KEY_BACKSPACE, 127, 8):
        return Action.BACKSPACE
    if 32 <= key < 127:
        return chr(key)
    return None


def on_off(value: bool) -> str:
    return "On" if value else "Off"


def measure_lines(state: ChannelState) -> list[str]:
    m = state.measurement
    return [f"{m.voltage:>6.3f} V", f"{m.current:>6.3f} A", f"{m.power:>6.3f} W"]


def set_lines(state: ChannelState) -> list[str]:
    return [f"{state.setpoint_voltage:>6.3f} V", f"{state.setpoint_current:>6.3f} A"]


def limit_lines(state: ChannelState) -> list[str]:
    return [
        f"{state.ovp_limit:>6.3f} V",
        f"{state.ocp_limit:>6.3f} A",
        f"OVP: {on_off(state.ovp_enabled)}",
        f"OCP: {on_off(state.ocp_enabled)}",
    ]


# ---------------------------------------------------------------------------
# Curses screen
# ---------------------------------------------------------------------------
class CursesScreen:
    """Draws a View and reads keys; holds no control state of its own."""

    def __init__(self, stdscr):
        self.stdscr = stdscr
        curses.curs_set(0)
        curses.set_escdelay(25)
        stdscr.keypad(True)
        if curses.has_colors():
            curses.start_color()
            curses.use_default_colors()
            curses.init_pair(COLOR_ON, curses.COLOR_GREEN, -1)
            curses.init_pair(COLOR_ENTRY, curses.COLOR_YELLOW, -1)
            curses.init_pair(COLOR_ERROR, curses.COLOR_RED, -1)

    def read_event(self, timeout: float) -> Optional[Event]:
        """Wait up to ``timeout`` seconds for one key."""
        self.stdscr.timeout(max(0, int(timeout * 1000)))
        key = self.stdscr.getch()
        if key == -1:
            return None
        return key_to_event(key)

    def safe_addstr(self, y: int, x: int, text: str, attr: int = 0):
        max_y, max_x = self.stdscr.getmaxyx()
        if y < 0 or y >= max_y or x < 0 or x >= max_x:
            return
        try:
            self.stdscr.addstr(y, x, text[: max_x - x - 1], attr)
        except curses.error:
            pass

    def box(self, y: int, x: int, h: int, w: int, title: str,
            title_attr: int = 0, border_attr: int = 0):
        if h < 2 or w < 2:
            return
        self.safe_addstr(y, x, "┌" + "─" * (w - 2) + "┐", border_attr)
        for row in range(y + 1, y + h - 1):
            self.safe_addstr(row, x, "│", border_attr)
            self.safe_addstr(row, x + w - 1, "│", border_attr)
        self.safe_addstr(y + h - 1, x, "└" + "─" * (w - 2) + "┘", border_attr)
        self.safe_addstr(y, x + 1, title[: w - 2], title_attr)

    def list_panel(self, y: int, x: int, w: int, title: str, lines: list[str],
                   selected: Optional[int], focused: bool, title_attr: int,
                   dimmed: tuple = ()):
        border = 0 if focused else curses.A_DIM
        self.box(y, x, len(lines) + 2, w, title, title_attr, border)
        for i, line in enumerate(lines):
            marker = ">" if selected == i else " "
            attr = curses.A_DIM if i in dimmed else 0
            self.safe_addstr(y + 1 + i, x + 1, marker + line, attr)

    def draw(self, view: View):
        self.stdscr.erase()
        max_y, max_x = self.stdscr.getmaxyx()
        col_w = max(12, max_x // max(1, len(view.channels)))

        for idx, state in enumerate(view.channels):
            ch = idx + 1
            x = idx * col_w
            ch_selected = ch == view.channel
            title_attr = curses.A_BOLD
            if state.output_on:
                title_attr |= curses.color_pair(COLOR_ON)

            # measurement panel
            focused = ch_selected and view.field is Field.MEASURE
            self.box(0, x, MEASURE_HEIGHT, col_w, f"CH{ch} - {on_off(state.output_on)}",
                     title_attr, 0 if focused else curses.A_DIM)
            value_attr = curses.A_BOLD if state.output_on else curses.A_BOLD | curses.A_DIM
            for i, line in enumerate(measure_lines(state)):
                self.safe_addstr(1 + i, x + 2, line, value_attr)

            # setpoints
            in_set = ch_selected and view.field in (Field.SET_VOLTAGE, Field.SET_CURRENT)
            self.list_panel(MEASURE_HEIGHT, x, col_w, "Set", set_lines(state),
                            view.field.list_index if in_set else None, in_set, title_attr)

            # limits
            in_limit = ch_selected and view.field in (
                Field.OVP_LIMIT, Field.OCP_LIMIT, Field.OVP_ENABLED, Field.OCP_ENABLED)
            dimmed = tuple(i for i, on in enumerate((state.ovp_enabled, state.ocp_enabled)) if not on)
            self.list_panel(MEASURE_HEIGHT + SET_HEIGHT, x, col_w, "Limit", limit_lines(state),
                            view.field.list_index if in_limit else None, in_limit,
                            title_attr, dimmed)

        row = MEASURE_HEIGHT + SET_HEIGHT + LIMIT_HEIGHT
        if view.buffer is not None:
            title = view.buffer.title
            if view.buffer.invalid:
                title += " - invalid number"
            self.box(row, 0, ENTRY_HEIGHT, max_x, title, curses.A_BOLD,
                     curses.color_pair(COLOR_ENTRY))
            self.safe_addstr(row + 1, 1, view.buffer.chars)
            row += ENTRY_HEIGHT

        self.safe_addstr(row, 0, HELP_TEXT)
        if view.status:
            self.safe_addstr(row + 1, 0, view.status, curses.color_pair(COLOR_ERROR))
        self.stdscr.refresh()


# ---------------------------------------------------------------------------
# Control loop
# ---------------------------------------------------------------------------
class ControlLoop:
    """Alternates between one input event and, once per tick, a sampling pass.

    ``draw`` receives a View each iteration; ``read_event`` waits up to the
    given number of seconds and returns an event or None.
    """

    def __init__(self, sampler: Sampler, machine: InputStateMachine,
                 draw: Callable[[View], None],
                 read_event: Callable[[float], Optional[Event]],
                 tick_interval: float,
                 status: Optional[StatusLineHandler] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.sampler = sampler
        self.machine = machine
        self.tick_interval = tick_interval
        self.status = status
        self._draw = draw
        self._read_event = read_event
        self._clock = clock

    def view(self) -> View:
        selection = self.machine.selection
        buffer = self.machine.buffer
        return View(
            channels=self.sampler.snapshot.channels(),
            channel=selection.channel,
            field=selection.field,
            buffer=replace(buffer) if buffer is not None else None,
            status=self.status.message if self.status is not None else "",
        )

    def run(self):
        """Run until quit. SamplingFailed and sampling errors propagate."""
        self.sampler.sample()
        last_tick = self._clock()

        while True:
            self._draw(self.view())

            remaining = max(0.0, self.tick_interval - (self._clock() - last_tick))
            event = self._read_event(remaining)
            if event == QUIT_KEY:
                return
            if event is not None:
                self._dispatch(event)

            if self._clock() - last_tick >= self.tick_interval:
                self.sampler.sample()
                last_tick = self._clock()

    def _dispatch(self, event: Event):
        if self.status is not None:
            self.status.clear()
        try:
            self.machine.handle(event)
        except DP800Error as e:
            logger.warning("Command failed: %s", e)


def initial_channel(psu: DP800, channel_count: int) -> int:
    """The channel selected on the instrument, or 1 if it is out of range."""
    ch = psu.selected_channel()
    if not 1 <= ch <= channel_count:
        logger.debug("Selected channel %d out of range, using 1", ch)
        return 1
    return ch


def run_tui(stdscr, psu: DP800, settings: Config, status: StatusLineHandler):
    screen = CursesScreen(stdscr)
    snapshot = Snapshot(settings.channel_count)
    selection = Selection(settings.channel_count, initial_channel(psu, settings.channel_count))
    sampler = Sampler(psu, snapshot, settings.sample_timeout, settings.sample_attempts)
    machine = InputStateMachine(psu, snapshot, selection, settings.settle_delay)
    loop = ControlLoop(sampler, machine, screen.draw, screen.read_event,
                       settings.tick_interval, status)
    loop.run()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dp832-tui",
        description="Rigol DP832 terminal front-end",
    )
    parser.add_argument(
        "-c", "--config",
        help="path to a config file; overrides the user configuration file",
    )
    parser.add_argument(
        "-a", "--address",
        help="PSU address, in the form of IP:PORT; overrides all configuration",
    )
    parser.add_argument("--log-file", help="write log records to this file")
    parser.add_argument("-d", "--debug", action="store_true", help="debug logging")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    status = StatusLineHandler()
    setup_logging(args.debug, args.log_file, status)

    try:
        settings = load_settings(args.config, args.address)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        psu = connect(settings.address, settings.read_timeout)
    except ConnectError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        curses.wrapper(run_tui, psu, settings, status)
    except DP800Error as e:
        logger.error("Exiting: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        psu.close()
    return 0


def _cli():
    sys.exit(main())


if __name__ == "__main__":
    _cli()
