"""Periodic sampling of every DP832 channel.

A pass reads each channel with eight sequential queries and replaces that
channel's slot in the snapshot only once all eight succeeded. Passes that
time out are retried a bounded number of times before giving up.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from dp800 import DP800, DP800Error, Measurement, QueryTimeout

logger = logging.getLogger(__name__)

SAMPLE_TIMEOUT = 0.25  # seconds per attempt, also the backoff between attempts
SAMPLE_ATTEMPTS = 3


class SamplingFailed(DP800Error):
    """Every sampling attempt timed out."""


@dataclass(frozen=True)
class ChannelState:
    """Everything observable about one channel."""

    output_on: bool = False
    measurement: Measurement = field(default_factory=lambda: Measurement(0.0, 0.0, 0.0))
    setpoint_voltage: float = 0.0
    setpoint_current: float = 0.0
    ovp_limit: float = 0.0
    ocp_limit: float = 0.0
    ovp_enabled: bool = False
    ocp_enabled: bool = False


# Query order for one channel: (ChannelState field, DP800 method)
CHANNEL_QUERIES: list[tuple[str, str]] = [
    ("measurement", "measure_all"),
    ("output_on", "output_state"),
    ("setpoint_voltage", "setpoint_voltage"),
    ("setpoint_current", "setpoint_current"),
    ("ovp_limit", "ovp_limit"),
    ("ocp_limit", "ocp_limit"),
    ("ovp_enabled", "ovp_enabled"),
    ("ocp_enabled", "ocp_enabled"),
]


def read_channel_state(client: DP800, ch: int,
                       before_query: Callable[[], None] = lambda: None) -> ChannelState:
    """Run every channel query in order and assemble a ChannelState.

    ``before_query`` runs ahead of each query; it may raise to abort.
    """
    values = {}
    for name, method in CHANNEL_QUERIES:
        before_query()
        values[name] = getattr(client, method)(ch)
    return ChannelState(**values)


class Snapshot:
    """Latest sampled state of each channel, indexed 1..channel_count."""

    def __init__(self, channel_count: int):
        if channel_count < 1:
            raise ValueError(f"channel_count must be at least 1, got {channel_count}")
        self._channels = [ChannelState() for _ in range(channel_count)]

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def _index(self, ch: int) -> int:
        if not 1 <= ch <= len(self._channels):
            raise IndexError(f"Channel {ch} out of range [1, {len(self._channels)}]")
        return ch - 1

    def __getitem__(self, ch: int) -> ChannelState:
        return self._channels[self._index(ch)]

    def replace(self, ch: int, state: ChannelState):
        self._channels[self._index(ch)] = state

    def channels(self) -> list[ChannelState]:
        """Copy of the channel states, channel 1 first."""
        return list(self._channels)

    def __len__(self):
        return len(self._channels)

    def __iter__(self):
        return iter(self.channels())


class Sampler:
    """Refreshes a Snapshot through a DP800 client.

    Args:
        client: The single protocol client; never used concurrently.
        snapshot: Snapshot owned by the control loop.
        timeout: Per-attempt deadline in seconds; also the backoff between attempts.
        attempts: Total attempts per tick before the failure becomes fatal.
        sleep, clock: Injectable for tests.
    """

    def __init__(self, client: DP800, snapshot: Snapshot,
                 timeout: float = SAMPLE_TIMEOUT, attempts: int = SAMPLE_ATTEMPTS,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        if attempts < 1:
            raise ValueError(f"attempts must be at least 1, got {attempts}")
        self.client = client
        self.snapshot = snapshot
        self.timeout = timeout
        self.attempts = attempts
        self._sleep = sleep
        self._clock = clock

    def on_tick(self, deadline: Optional[float] = None):
        """One pass over every channel.

        The deadline is checked before each query; passing it raises
        QueryTimeout. Channels read completely before a failure keep their
        new values; the failing channel keeps its previous one.
        """
        def check_deadline():
            if deadline is not None and self._clock() >= deadline:
                raise QueryTimeout(f"Sample pass exceeded {self.timeout}s")

        for ch in range(1, self.snapshot.channel_count + 1):
            state = read_channel_state(self.client, ch, check_deadline)
            self.snapshot.replace(ch, state)

    def sample(self):
        """Run on_tick with bounded retry.

        Only timeouts are retried. Raises SamplingFailed once every attempt
        timed out; other protocol errors propagate immediately.
        """
        for attempt in range(1, self.attempts + 1):
            try:
                self.on_tick(deadline=self._clock() + self.timeout)
                return
            except QueryTimeout as e:
                if attempt == self.attempts:
                    logger.error("Sample timeout after %d attempts", self.attempts)
                    raise SamplingFailed(
                        f"DP832 sample timeout after {self.attempts} attempts"
                    ) from e
                logger.warning("Sample timeout attempt %d/%d: %s", attempt, self.attempts, e)
                self._sleep(self.timeout)
