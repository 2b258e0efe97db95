"""Version information for the support chat core."""

import os

__version__ = "0.4.0"

# Stamped into the container image by the release pipeline.
__build_date__ = os.getenv("SUPPORTCHAT_BUILD_DATE") or None
__commit_sha__ = os.getenv("SUPPORTCHAT_COMMIT_SHA") or None
