"""
SDP Processor for Low-Latency Streaming

Best-effort text patching of negotiated session descriptions to bias the
peer transport towards low latency. The patch is advisory: the remote side
is free to ignore directives it does not support.

Applied to every video media section, in order:
1. Tag the section as main content (a=content:main)
2. Request transport-wide congestion control feedback (a=rtcp-fb:* transport-cc)
3. Cap the advertised bitrate (b=AS:<kbps>)

When feedback stripping is enabled, existing a=rtcp-fb lines of the video
section are removed before transport-cc is added back, so the section never
carries duplicate or conflicting feedback declarations.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from aiortc import RTCSessionDescription

logger = logging.getLogger(__name__)

CONTENT_MAIN = "a=content:main"
TRANSPORT_CC = "a=rtcp-fb:* transport-cc"
DEFAULT_MAX_BITRATE = 2500  # kbps

_BANDWIDTH_AS = re.compile(r"^b=AS:(\d+)$")


class SDPProcessor:
    """
    Apply the low-latency mutation policy to SDP offers and answers.

    The same policy is applied by whichever side produces a description.
    The processor is stateless apart from its policy parameters, so one
    instance can be shared by every Peer Session of a client.
    """

    def __init__(
        self,
        max_bitrate: int = DEFAULT_MAX_BITRATE,
        strip_feedback: bool = True
    ):
        """
        Initialize SDP processor.

        Args:
            max_bitrate: Advertised video bitrate ceiling in kbps (b=AS)
            strip_feedback: Remove existing a=rtcp-fb lines before adding transport-cc
        """
        self.max_bitrate = max_bitrate
        self.strip_feedback = strip_feedback

    def mutate(self, description: Any, role: Any = None) -> RTCSessionDescription:
        """
        Return a copy of a session description with the policy applied.

        Args:
            description: RTCSessionDescription or {"type", "sdp"} dictionary
            role: Side producing the description (only used for logging)

        Returns:
            New RTCSessionDescription with the patched SDP
        """
        if isinstance(description, dict):
            sdp = description.get("sdp") or ""
            sdp_type = description.get("type")
        else:
            sdp = description.sdp or ""
            sdp_type = description.type

        patched = self.optimize_sdp(sdp)

        role_name = getattr(role, "value", role) or "peer"
        logger.debug(f"Applied low-latency SDP policy to {sdp_type} ({role_name})")

        return RTCSessionDescription(sdp=patched, type=sdp_type)

    def optimize_sdp(self, sdp: str) -> str:
        """
        Apply the low-latency policy to raw SDP text.

        Only video media sections are touched; session-level lines and other
        media sections are passed through unchanged. Applying the policy to
        its own output yields the same text.

        Args:
            sdp: SDP text

        Returns:
            Patched SDP text
        """
        if not sdp:
            return sdp

        line_ending = "\r\n" if "\r\n" in sdp else "\n"
        lines = sdp.split(line_ending)
        trailing = lines and lines[-1] == ""
        if trailing:
            lines = lines[:-1]

        result: List[str] = []
        section: List[str] = []

        for line in lines:
            if line.startswith("m="):
                result.extend(self._patch_section(section))
                section = [line]
            else:
                section.append(line)
        result.extend(self._patch_section(section))

        patched = line_ending.join(result)
        if trailing:
            patched += line_ending
        return patched

    def _patch_section(self, section: List[str]) -> List[str]:
        """Patch one media section (or the session header, left untouched)"""
        if not section or not section[0].startswith("m=video"):
            return section

        lines = []
        for line in section:
            if self.strip_feedback and line.startswith("a=rtcp-fb"):
                continue
            if _BANDWIDTH_AS.match(line):
                continue
            lines.append(line)

        # Step 1: tag as main content
        if CONTENT_MAIN not in lines:
            lines.append(CONTENT_MAIN)

        # Step 2: transport-wide congestion control
        if TRANSPORT_CC not in lines:
            lines.append(TRANSPORT_CC)

        # Step 3: bitrate cap, placed where SDP expects b= (after m=/i=/c=)
        insert_at = 1
        for index, line in enumerate(lines[1:], start=1):
            if line.startswith(("i=", "c=")):
                insert_at = index + 1
            elif not line.startswith("b="):
                break
        lines.insert(insert_at, f"b=AS:{self.max_bitrate}")

        return lines

    def validate_sdp(self, sdp: str) -> Dict[str, bool]:
        """
        Check that the policy directives are present in an SDP.

        Args:
            sdp: SDP to validate

        Returns:
            Dictionary with validation results
        """
        info = extract_sdp_info(sdp)
        checks = {
            "has_video_media": info["video_sections"] > 0,
            "has_content_main": CONTENT_MAIN in sdp,
            "has_transport_cc": "transport-cc" in sdp,
            "has_bitrate_cap": info["video_bitrate"] == self.max_bitrate,
        }

        if all(checks.values()):
            logger.debug("✅ SDP low-latency policy present")
        else:
            failed = [k for k, v in checks.items() if not v]
            logger.debug(f"⚠️ SDP low-latency policy incomplete: {failed}")

        return checks


# ============================================================================
# Utility functions
# ============================================================================

def extract_sdp_info(sdp: str) -> Dict[str, Any]:
    """
    Extract useful information from SDP.

    Args:
        sdp: SDP string

    Returns:
        Dictionary with extracted info
    """
    info = {
        "video_sections": 0,
        "audio_sections": 0,
        "video_codecs": [],
        "video_bitrate": None,
        "video_direction": None,
    }

    in_video = False
    for line in sdp.splitlines():
        if line.startswith("m="):
            in_video = line.startswith("m=video")
            if in_video:
                info["video_sections"] += 1
            elif line.startswith("m=audio"):
                info["audio_sections"] += 1
            continue

        if not in_video:
            continue

        if line.startswith("a=rtpmap:"):
            parts = line.split(" ", 1)
            if len(parts) == 2:
                codec = parts[1].split("/")[0]
                if codec not in info["video_codecs"]:
                    info["video_codecs"].append(codec)
        elif _BANDWIDTH_AS.match(line):
            info["video_bitrate"] = int(_BANDWIDTH_AS.match(line).group(1))
        elif line in ("a=sendrecv", "a=sendonly", "a=recvonly", "a=inactive"):
            info["video_direction"] = line[2:]

    return info


def format_sdp_for_logging(sdp: Optional[str], max_lines: int = 20) -> str:
    """
    Format SDP for logging (truncate if too long).

    Args:
        sdp: SDP string
        max_lines: Maximum lines to show

    Returns:
        Formatted SDP string
    """
    if not sdp:
        return "<empty>"

    lines = sdp.splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)

    truncated = lines[:max_lines]
    truncated.append(f"... ({len(lines) - max_lines} more lines)")
    return "\n".join(truncated)
