"""
Playback synchronizer: keeps a local video widget in line with the room's
shared video state.
"""
import logging
import math
import time
from typing import Callable, Optional, Protocol

import config
from room_models import SnapshotEvent, VideoState

logger = logging.getLogger(__name__)


class VideoWidget(Protocol):
    """The player being driven. It reports user actions back through
    ``on_play``/``on_pause``/``on_seek``/``on_progress``/``on_ready``."""

    def render(self, url: str, is_playing: bool, seek_to: Optional[float] = None) -> None: ...

    def current_position(self) -> float: ...


class PlaybackSynchronizer:
    """
    Reconciles local playback with the authoritative video state.

    Programmatic seeks open a short guard window during which the widget's
    own play/pause/seek/progress reports are not broadcast, so a seek is
    never echoed back to the room as a user action.
    """

    def __init__(
        self,
        session,
        widget: VideoWidget,
        clock: Callable[[], float] = time.monotonic,
        seek_drift_threshold: float = config.SEEK_DRIFT_THRESHOLD,
        seek_guard_seconds: float = config.SEEK_GUARD_SECONDS,
        progress_drift_threshold: float = config.PROGRESS_DRIFT_THRESHOLD,
        progress_broadcast_interval: float = config.PROGRESS_BROADCAST_INTERVAL,
    ):
        self.session = session
        self.widget = widget
        self._clock = clock
        self.seek_drift_threshold = seek_drift_threshold
        self.seek_guard_seconds = seek_guard_seconds
        self.progress_drift_threshold = progress_drift_threshold
        self.progress_broadcast_interval = progress_broadcast_interval

        self.state: Optional[VideoState] = session.video_state
        self.url = self.state.url if self.state else ""
        self.ready = False
        self._guard_until = 0.0
        self._last_broadcast: Optional[float] = None

        session.on("snapshot", self._on_snapshot)
        session.on("video_state", self.apply_state)
        self._listening = True

    @property
    def is_playing(self) -> bool:
        return self.state is not None and self.state.is_playing

    @property
    def suppressed(self) -> bool:
        return self._clock() < self._guard_until

    def close(self):
        if not self._listening:
            return
        self._listening = False
        self.session.remove_listener("snapshot", self._on_snapshot)
        self.session.remove_listener("video_state", self.apply_state)

    def _on_snapshot(self, event: SnapshotEvent):
        self.apply_state(event.video_state)

    def _guarded_seek(self, position: float):
        self._guard_until = self._clock() + self.seek_guard_seconds
        self.widget.render(self.url, self.is_playing, seek_to=position)

    def apply_state(self, state: VideoState):
        """Take an authoritative state from the room."""
        self.state = state
        from_self = state.last_updated_by == self.session.participant_id

        if not from_self and state.url and state.url != self.url:
            # New video; on_ready will line it up
            self.url = state.url
            self.ready = False

        if not self.ready or from_self:
            self.widget.render(self.url, state.is_playing)
            return

        current = self.widget.current_position()
        if abs(current - state.position_seconds) > self.seek_drift_threshold:
            logger.info(f"[Sync] Seeking from {current:.2f}s to {state.position_seconds:.2f}s "
                        f"(updated by {state.last_updated_by})")
            self._guarded_seek(state.position_seconds)
        else:
            self.widget.render(self.url, state.is_playing)

    async def _broadcast(self, **changes):
        await self.session.update_video_state(**changes)
        self._last_broadcast = self._clock()

    # ============ WIDGET EVENTS ============

    async def on_play(self, position: float):
        if not self.suppressed:
            await self._broadcast(is_playing=True, position_seconds=position)

    async def on_pause(self, position: float):
        if not self.suppressed:
            await self._broadcast(is_playing=False, position_seconds=position)

    async def on_seek(self, position: float):
        if not self.suppressed:
            logger.debug(f"[Event] User seeked to {position:.2f}s")
            await self._broadcast(position_seconds=position, is_playing=self.is_playing)

    async def on_progress(self, position: float):
        """Periodic position report while playing."""
        if self.suppressed or not self.is_playing:
            return
        drift = abs(position - self.state.position_seconds)
        if self._last_broadcast is None:
            since_last = math.inf
        else:
            since_last = self._clock() - self._last_broadcast

        if drift > self.progress_drift_threshold or since_last > self.progress_broadcast_interval:
            logger.debug(f"[Progress] Broadcasting position: {position:.2f}s (drift: {drift:.2f}s)")
            await self._broadcast(position_seconds=position)

    def on_ready(self):
        self.ready = True
        if self.state is not None:
            logger.info(f"[Ready] Seeking to {self.state.position_seconds:.2f}s")
            self._guarded_seek(self.state.position_seconds)

    async def change_url(self, url: str):
        """Switch the room to a new video, from the start, playing."""
        url = (url or "").strip()
        if not url:
            return
        self.url = url
        self.ready = False
        await self._broadcast(url=url, is_playing=True, position_seconds=0.0)
