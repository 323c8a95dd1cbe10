"""
nexpatch  ─  rootless APK repackaging engine
════════════════════════════════════════════════════════════════════
Takes an installed app's package archives, relocates the original code,
injects a bootstrap loader (and optionally embedded modules), rewrites the
binary manifest and re-signs the result with v1 / v2 / v3 signatures.
"""

from nexpatch.constants import VERSION_CODE, VERSION_NAME

__version__ = VERSION_NAME

__all__ = ["VERSION_CODE", "VERSION_NAME", "__version__"]
