"""
Local capture tracks with in-place enable/disable.
"""
import logging
from typing import Callable, List, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

import config

logger = logging.getLogger(__name__)


class MediaAcquisitionError(Exception):
    """Camera or microphone could not be opened."""


def _blank_like(frame):
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height)
    for p in blank.planes:
        p.update(bytes(p.buffer_size))
    blank.pts = frame.pts
    if frame.time_base is not None:
        blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """
    Relays a capture track. While disabled it sends silence or blank frames
    with the source timing, so the peer connection never renegotiates.
    """

    def __init__(self, source: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = enabled
        source.on("ended", self.stop)

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return _blank_like(frame)

    def stop(self):
        super().stop()
        self.source.stop()


def open_capture_devices() -> Tuple[Optional[MediaStreamTrack], Optional[MediaStreamTrack]]:
    """Open the configured microphone and camera through ffmpeg."""
    try:
        camera = MediaPlayer(
            config.MEDIA_VIDEO_DEVICE,
            format=config.MEDIA_FORMAT,
            options={"video_size": "1280x720"},
        )
        microphone = MediaPlayer(config.MEDIA_AUDIO_DEVICE, format=config.MEDIA_AUDIO_FORMAT)
    except Exception as exc:
        raise MediaAcquisitionError(f"Error accessing media: {exc}") from exc
    return microphone.audio, camera.video


class LocalMedia:
    """The participant's own audio and video tracks."""

    def __init__(self, acquire: Callable[[], Tuple[Optional[MediaStreamTrack], Optional[MediaStreamTrack]]] = open_capture_devices):
        self._acquire = acquire
        self.audio: Optional[ToggleableTrack] = None
        self.video: Optional[ToggleableTrack] = None

    @property
    def tracks(self) -> List[ToggleableTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    @property
    def ready(self) -> bool:
        return any(t.readyState == "live" for t in self.tracks)

    @property
    def has_ended_tracks(self) -> bool:
        return any(t.readyState == "ended" for t in self.tracks)

    @property
    def audio_enabled(self) -> bool:
        return self.audio is not None and self.audio.enabled

    @property
    def video_enabled(self) -> bool:
        return self.video is not None and self.video.enabled

    def track(self, kind: str) -> Optional[ToggleableTrack]:
        return self.audio if kind == "audio" else self.video if kind == "video" else None

    def acquire(self):
        """
        Open capture tracks, replacing any previous ones.
        Enabled flags carry over to the new tracks.

        Raises:
            MediaAcquisitionError: If no device could be opened
        """
        audio, video = self._acquire()
        if audio is None and video is None:
            raise MediaAcquisitionError("No camera or microphone available")

        audio_enabled = self.audio.enabled if self.audio else True
        video_enabled = self.video.enabled if self.video else True
        self.stop()

        self.audio = ToggleableTrack(audio, audio_enabled) if audio else None
        self.video = ToggleableTrack(video, video_enabled) if video else None
        logger.info(f"Local media acquired: {[t.kind for t in self.tracks]}")

    def toggle(self, kind: str) -> bool:
        track = self.track(kind)
        if track is None:
            return False
        track.enabled = not track.enabled
        return track.enabled

    def stop(self):
        for track in self.tracks:
            track.stop()
