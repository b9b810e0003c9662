import numpy as np

from relay_voice.segmenter import (
    VAD_MODES,
    Segment,
    VADMode,
    VoiceActivitySegmenter,
    rms,
)

FRAME_SAMPLES = 320  # 20 ms at 16 kHz
FRAME_BYTES = FRAME_SAMPLES * 2


def _voiced(amplitude: int = 8000) -> bytes:
    return np.full(FRAME_SAMPLES, amplitude, dtype="<i2").tobytes()


def _silent() -> bytes:
    return np.zeros(FRAME_SAMPLES, dtype="<i2").tobytes()


def _run(segmenter: VoiceActivitySegmenter, frames) -> list:
    segments = []
    for frame in frames:
        segment = segmenter.process(frame)
        if segment is not None:
            segments.append(segment)
    return segments


def test_rms_of_silence_and_constant_signal():
    assert rms(b"") == 0.0
    assert rms(_silent()) == 0.0
    assert abs(rms(np.full(100, 16384, dtype="<i2").tobytes()) - 0.5) < 1e-9


def test_exact_entry_threshold_produces_one_segment():
    mode = VAD_MODES["NORMAL"]
    segmenter = VoiceActivitySegmenter(mode=mode, min_segment_bytes=FRAME_BYTES)

    frames = [_voiced()] * mode.speech_frames_required + [_silent()] * (mode.silence_frames_required + 5)
    segments = _run(segmenter, frames)

    assert len(segments) == 1
    # Entry frame plus the silences before the one that ended the segment
    assert len(segments[0].audio) == mode.silence_frames_required * FRAME_BYTES
    assert segments[0].forced is False
    assert not segmenter.is_speaking


def test_one_frame_short_of_entry_produces_nothing():
    mode = VAD_MODES["NORMAL"]
    segmenter = VoiceActivitySegmenter(mode=mode, min_segment_bytes=FRAME_BYTES)

    frames = [_voiced()] * (mode.speech_frames_required - 1) + [_silent()] * (mode.silence_frames_required + 5)
    assert _run(segmenter, frames) == []
    assert segmenter.frames_processed == len(frames)


def test_short_pause_does_not_end_segment():
    segmenter = VoiceActivitySegmenter(mode=VAD_MODES["NORMAL"], min_segment_bytes=FRAME_BYTES)

    frames = [_silent()] * 5 + [_voiced()] * 10 + [_silent()] * 5
    assert _run(segmenter, frames) == []
    assert segmenter.is_speaking
    assert segmenter.buffered_bytes == (8 + 5) * FRAME_BYTES


def test_hard_cap_forces_emission_and_restarts():
    mode = VADMode(energy_threshold=0.01, speech_frames_required=3, silence_frames_required=30)
    cap = 10 * FRAME_BYTES
    segmenter = VoiceActivitySegmenter(mode=mode, max_segment_bytes=cap, min_segment_bytes=FRAME_BYTES)

    segments = _run(segmenter, [_voiced()] * 12)
    assert len(segments) == 1
    assert segments[0].forced is True
    assert len(segments[0].audio) == cap
    assert not segmenter.is_speaking

    # Counters were reset, so entry needs a full run of voiced frames again
    _run(segmenter, [_voiced()] * 2)
    assert not segmenter.is_speaking
    _run(segmenter, [_voiced()])
    assert segmenter.is_speaking


def test_continuous_speech_never_exceeds_cap():
    mode = VADMode(energy_threshold=0.01, speech_frames_required=3, silence_frames_required=30)
    cap = 10 * FRAME_BYTES
    segmenter = VoiceActivitySegmenter(mode=mode, max_segment_bytes=cap, min_segment_bytes=FRAME_BYTES)

    segments = _run(segmenter, [_voiced()] * 50)
    assert len(segments) == 4
    assert all(segment.forced for segment in segments)
    assert all(len(segment.audio) <= cap for segment in segments)


def test_short_segments_are_discarded():
    mode = VAD_MODES["VERY_AGGRESSIVE"]
    segmenter = VoiceActivitySegmenter(mode=mode)

    frames = [_voiced()] * 3 + [_silent()] * mode.silence_frames_required
    assert _run(segmenter, frames) == []
    assert segmenter.segments_discarded == 1
    assert segmenter.segments_emitted == 0


def test_on_segment_callback_receives_segment():
    received = []
    mode = VAD_MODES["AGGRESSIVE"]
    segmenter = VoiceActivitySegmenter(mode=mode, min_segment_bytes=FRAME_BYTES, on_segment=received.append)

    frames = [_voiced()] * 40 + [_silent()] * mode.silence_frames_required
    segments = _run(segmenter, frames)

    assert received == segments
    assert isinstance(received[0], Segment)
    assert abs(received[0].duration - (39 + 19) * 0.02) < 1e-9


def test_reset_returns_to_silence():
    segmenter = VoiceActivitySegmenter(mode=VAD_MODES["NORMAL"], min_segment_bytes=FRAME_BYTES)
    _run(segmenter, [_voiced()] * 5)
    assert segmenter.is_speaking

    segmenter.reset()
    assert not segmenter.is_speaking
    assert segmenter.buffered_bytes == 0
    stats = segmenter.get_statistics()
    assert stats["frames_processed"] == 5
    assert stats["is_speaking"] is False
