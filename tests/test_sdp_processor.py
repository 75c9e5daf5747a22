"""Tests for the low-latency SDP mutation policy."""

from aiortc import RTCSessionDescription

from webrtcpi.core.sdp_processor import (
    CONTENT_MAIN,
    TRANSPORT_CC,
    SDPProcessor,
    extract_sdp_info,
    format_sdp_for_logging,
)

from fakes import AUDIO_SECTION, VIDEO_SDP


def video_lines(sdp):
    lines = sdp.split("\r\n")
    start = next(i for i, line in enumerate(lines) if line.startswith("m=video"))
    end = next(
        (i for i, line in enumerate(lines[start + 1:], start=start + 1) if line.startswith("m=")),
        len(lines)
    )
    return lines[start:end]


def test_video_section_gets_policy_directives():
    patched = SDPProcessor().optimize_sdp(VIDEO_SDP)
    lines = video_lines(patched)

    assert CONTENT_MAIN in lines
    assert TRANSPORT_CC in lines
    assert "b=AS:2500" in lines
    assert lines.index(CONTENT_MAIN) < lines.index(TRANSPORT_CC)


def test_bitrate_cap_follows_connection_line():
    lines = video_lines(SDPProcessor(max_bitrate=1200).optimize_sdp(VIDEO_SDP))

    assert lines.index("b=AS:1200") == lines.index("c=IN IP4 0.0.0.0") + 1


def test_existing_feedback_is_stripped_before_transport_cc():
    lines = video_lines(SDPProcessor().optimize_sdp(VIDEO_SDP))

    feedback = [line for line in lines if line.startswith("a=rtcp-fb")]
    assert feedback == [TRANSPORT_CC]


def test_feedback_kept_when_stripping_disabled():
    lines = video_lines(SDPProcessor(strip_feedback=False).optimize_sdp(VIDEO_SDP))

    assert "a=rtcp-fb:96 nack pli" in lines
    assert lines.count(TRANSPORT_CC) == 1


def test_existing_bitrate_line_is_replaced():
    sdp = VIDEO_SDP.replace("c=IN IP4 0.0.0.0\r\n", "c=IN IP4 0.0.0.0\r\nb=AS:8000\r\n")

    lines = video_lines(SDPProcessor().optimize_sdp(sdp))

    assert "b=AS:8000" not in lines
    assert lines.count("b=AS:2500") == 1


def test_audio_section_is_untouched():
    sdp = VIDEO_SDP + AUDIO_SECTION

    patched = SDPProcessor().optimize_sdp(sdp)

    assert patched.endswith(AUDIO_SECTION)
    assert patched.startswith("v=0\r\n")


def test_policy_is_idempotent():
    processor = SDPProcessor()
    once = processor.optimize_sdp(VIDEO_SDP + AUDIO_SECTION)

    assert processor.optimize_sdp(once) == once


def test_line_endings_are_preserved():
    unix_sdp = VIDEO_SDP.replace("\r\n", "\n")

    patched = SDPProcessor().optimize_sdp(unix_sdp)

    assert "\r\n" not in patched
    assert patched.endswith("\n")
    assert "b=AS:2500\n" in patched


def test_sdp_without_video_is_unchanged():
    sdp = "v=0\r\ns=-\r\nt=0 0\r\n" + AUDIO_SECTION

    assert SDPProcessor().optimize_sdp(sdp) == sdp
    assert SDPProcessor().optimize_sdp("") == ""


def test_mutate_accepts_wire_dictionary():
    description = SDPProcessor().mutate({"type": "answer", "sdp": VIDEO_SDP})

    assert isinstance(description, RTCSessionDescription)
    assert description.type == "answer"
    assert CONTENT_MAIN in description.sdp


def test_mutate_does_not_modify_its_input():
    original = RTCSessionDescription(sdp=VIDEO_SDP, type="offer")

    SDPProcessor().mutate(original)

    assert original.sdp == VIDEO_SDP


def test_validate_sdp_reports_policy_presence():
    processor = SDPProcessor()

    assert not any(
        value for key, value in processor.validate_sdp(VIDEO_SDP).items() if key != "has_video_media"
    )
    assert all(processor.validate_sdp(processor.optimize_sdp(VIDEO_SDP)).values())


def test_extract_sdp_info():
    info = extract_sdp_info(SDPProcessor().optimize_sdp(VIDEO_SDP + AUDIO_SECTION))

    assert info["video_sections"] == 1
    assert info["audio_sections"] == 1
    assert info["video_codecs"] == ["VP8", "H264"]
    assert info["video_bitrate"] == 2500
    assert info["video_direction"] == "sendrecv"


def test_format_sdp_for_logging_truncates():
    formatted = format_sdp_for_logging(VIDEO_SDP, max_lines=3)

    assert formatted.splitlines()[:3] == VIDEO_SDP.splitlines()[:3]
    assert formatted.endswith("more lines)")
    assert format_sdp_for_logging(None) == "<empty>"
