__version_label__ = "0.3.0"
__release_date__ = "2026-10-18"
