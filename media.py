"""Local and remote media for a call.

A media source's ``acquire()`` opens the camera and microphone (or synthetic
test sources) and returns a MediaHandle. Muting swaps outgoing frames for
silence or a blank picture without touching the peer connection.
"""
import logging, platform
from typing import List, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from av import AudioFrame, VideoFrame

log = logging.getLogger(__name__)


class MediaAccessError(Exception):
    """Camera or microphone could not be opened (no device, no permission)."""


def blank_frame(frame):
    """Return a silent / blank copy of ``frame`` with the same timing."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height)
    for p in blank.planes:
        p.update(bytes(p.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleTrack(MediaStreamTrack):
    """Relays a source track; while disabled it sends blank frames instead."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        return frame if self.enabled else blank_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class MediaHandle:
    def __init__(self, audio: Optional[MediaStreamTrack] = None,
                 video: Optional[MediaStreamTrack] = None):
        self.audio = ToggleTrack(audio) if audio is not None else None
        self.video = ToggleTrack(video) if video is not None else None
        self.stopped = False

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    @property
    def audio_enabled(self) -> bool:
        return self.audio is not None and self.audio.enabled

    @property
    def video_enabled(self) -> bool:
        return self.video is not None and self.video.enabled

    def set_audio_enabled(self, enabled: bool):
        if self.audio is not None:
            self.audio.enabled = enabled

    def set_video_enabled(self, enabled: bool):
        if self.video is not None:
            self.video.enabled = enabled

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()
        log.debug('local media stopped')


class SyntheticMediaSource:
    """Test pattern video and silent audio; needs no devices."""

    def __init__(self, audio=True, video=True):
        self.audio = audio
        self.video = video

    async def acquire(self) -> MediaHandle:
        return MediaHandle(audio=AudioStreamTrack() if self.audio else None,
                           video=VideoStreamTrack() if self.video else None)


def default_devices():
    """(video file, video format, audio file, audio format) for this platform."""
    system = platform.system()
    if system == 'Darwin':
        return 'default:none', 'avfoundation', 'none:default', 'avfoundation'
    if system == 'Windows':
        return 'video=Integrated Camera', 'dshow', 'audio=Microphone', 'dshow'
    return '/dev/video0', 'v4l2', 'default', 'pulse'


class DeviceMediaSource:
    """Opens the local camera and microphone through libav.

    With ``use_camera`` / ``use_mic`` off, the matching synthetic track is used
    instead, so a call can run on a machine with only one of the two.
    """

    def __init__(self, use_camera=True, use_mic=True, video_size='640x480', framerate='30',
                 devices=None):
        self.use_camera = use_camera
        self.use_mic = use_mic
        self.options = {'video_size': video_size, 'framerate': framerate}
        self.devices = devices or default_devices()

    def _open(self, file, fmt, options=None) -> MediaPlayer:
        try:
            return MediaPlayer(file, format=fmt, options=options or {})
        except (av.error.FFmpegError, OSError) as e:
            raise MediaAccessError(f'could not open {file} ({fmt}): {e}') from e

    async def acquire(self) -> MediaHandle:
        video_file, video_fmt, audio_file, audio_fmt = self.devices
        video = audio = None
        try:
            if self.use_camera:
                video = self._open(video_file, video_fmt, self.options).video
                if video is None:
                    raise MediaAccessError(f'{video_file} has no video stream')
            if self.use_mic:
                audio = self._open(audio_file, audio_fmt).audio
                if audio is None:
                    raise MediaAccessError(f'{audio_file} has no audio stream')
        except MediaAccessError:
            if video is not None:
                video.stop()
            raise
        log.info('local media ready: camera=%s mic=%s', self.use_camera, self.use_mic)
        return MediaHandle(audio=audio if audio is not None else AudioStreamTrack(),
                           video=video if video is not None else VideoStreamTrack())


class RemoteMedia:
    """Tracks received from the other side of the call."""

    def __init__(self):
        self.tracks: List[MediaStreamTrack] = []

    def add(self, track: MediaStreamTrack):
        self.tracks.append(track)

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self.tracks if t.kind == 'audio'), None)

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self.tracks if t.kind == 'video'), None)
