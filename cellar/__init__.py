"""
cellar - formula-driven installer for prebuilt application bundles.

Downloads a formula's source archive, verifies its SHA-256 digest, extracts
it, installs it into a versioned prefix and writes launcher scripts into a
shared bin directory.
"""

__version__ = "0.1.0"
