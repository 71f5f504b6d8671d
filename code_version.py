"""
Build version reporting for the health endpoint.

The container build writes the short commit hash into CLIPDECK_CODE_VERSION.
Local checkouts fall back to asking git.
"""

import os
import subprocess

CODE_VERSION = os.environ.get("CLIPDECK_CODE_VERSION", "dev")

BUILD_TIMESTAMP = os.environ.get("CLIPDECK_BUILD_TIMESTAMP", "")

if CODE_VERSION == "dev":
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=os.path.dirname(os.path.abspath(__file__)),
        )
        if result.returncode == 0 and result.stdout.strip():
            CODE_VERSION = result.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass  # No git available, stay on "dev"


def get_version_info() -> dict:
    """Version fields included in /api/health."""
    return {
        "code_version": CODE_VERSION,
        "build_timestamp": BUILD_TIMESTAMP or "unknown",
    }
