"""
Network Tuning

Best-effort kernel TCP settings for low-latency signaling on the sender
device. Applied with sysctl -w; nothing is persisted across reboots.
"""

import logging
import shutil
import subprocess
import sys
from typing import Callable, Dict

logger = logging.getLogger(__name__)

LOW_LATENCY_SYSCTLS = {
    "net.ipv4.tcp_fastopen": "3",
    "net.ipv4.tcp_low_latency": "1",
    "net.ipv4.tcp_notsent_lowat": "16384",
}


class NetworkTuningError(Exception):
    """Raised when a sysctl setting cannot be applied"""
    pass


def apply_sysctl(key: str, value: str, runner: Callable = subprocess.run) -> None:
    """
    Apply one sysctl setting.

    Raises:
        NetworkTuningError: If sysctl is missing or rejects the setting
    """
    try:
        runner(['sysctl', '-w', f'{key}={value}'], check=True, capture_output=True)
    except FileNotFoundError as e:
        raise NetworkTuningError("sysctl not available") from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else str(e)
        raise NetworkTuningError(f"{key}={value}: {stderr}") from e


def apply_low_latency_tuning(
    settings: Dict[str, str] = None,
    runner: Callable = subprocess.run
) -> Dict[str, bool]:
    """
    Apply the low-latency TCP settings, logging failures as warnings.

    Args:
        settings: sysctl key → value (default LOW_LATENCY_SYSCTLS)
        runner: subprocess.run compatible callable

    Returns:
        Dictionary of key → whether it was applied
    """
    settings = settings or LOW_LATENCY_SYSCTLS
    results = {key: False for key in settings}

    if not sys.platform.startswith("linux") or (runner is subprocess.run and shutil.which("sysctl") is None):
        logger.warning("⚠️ Network tuning skipped: sysctl unavailable on this platform")
        return results

    for key, value in settings.items():
        try:
            apply_sysctl(key, value, runner=runner)
        except NetworkTuningError as e:
            logger.warning(f"⚠️ Could not apply {e}")
            continue
        results[key] = True
        logger.info(f"✅ Applied {key}={value}")

    applied = sum(results.values())
    logger.info(f"Network tuning: {applied}/{len(results)} settings applied")
    return results
