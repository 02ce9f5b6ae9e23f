"""mpv STT build orchestrator.

This package cross-compiles the native media libraries that libmpv depends
on for Android ABIs, then drives the plugin/server build matrix across
platforms and features and packages the results into a dist tree.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
