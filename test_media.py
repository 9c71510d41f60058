"""Mute and video-off toggles on local media."""
from fractions import Fraction

from av import AudioFrame, VideoFrame

from conftest import FakeTrack
from media import MediaHandle, RemoteMedia, SyntheticMediaSource, blank_frame


def test_blank_video_keeps_size_and_timing():
    frame = VideoFrame(width=64, height=48, format='yuv420p')
    for p in frame.planes:
        p.update(b'\x7f' * p.buffer_size)
    frame.pts, frame.time_base = 3000, Fraction(1, 90000)

    blank = blank_frame(frame)
    assert (blank.width, blank.height) == (64, 48)
    assert (blank.pts, blank.time_base) == (3000, Fraction(1, 90000))
    assert not any(bytes(blank.planes[0]))


def test_blank_audio_is_silence():
    frame = AudioFrame(format='s16', layout='mono', samples=160)
    frame.planes[0].update(b'\x01' * frame.planes[0].buffer_size)
    frame.sample_rate = 8000
    frame.pts, frame.time_base = 160, Fraction(1, 8000)

    blank = blank_frame(frame)
    assert (blank.samples, blank.sample_rate) == (160, 8000)
    assert blank.pts == 160
    assert not any(bytes(blank.planes[0]))


def test_toggles_and_idempotent_stop():
    audio, video = FakeTrack('audio'), FakeTrack('video')
    handle = MediaHandle(audio=audio, video=video)
    assert handle.audio_enabled and handle.video_enabled
    handle.set_audio_enabled(False)
    assert not handle.audio_enabled and handle.video_enabled
    assert [t.kind for t in handle.tracks] == ['audio', 'video']

    handle.stop()
    handle.stop()
    assert audio.stopped and video.stopped and handle.stopped


async def test_muted_track_sends_silence():
    handle = await SyntheticMediaSource().acquire()
    handle.set_audio_enabled(False)
    frame = await handle.audio.recv()
    assert not any(bytes(frame.planes[0]))
    handle.stop()


def test_remote_media_by_kind():
    remote = RemoteMedia()
    assert remote.audio is None
    remote.add(FakeTrack('video'))
    remote.add(FakeTrack('audio'))
    assert remote.video.kind == 'video'
    assert remote.audio.kind == 'audio'
