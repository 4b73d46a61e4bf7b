"""listing_farm — site profiling + incremental inventory crawl engine."""

__all__ = [
    "content_hash",
    "discovery",
    "drivers",
    "errors",
    "events",
    "extract",
    "jobs",
    "keying",
    "pattern_learn",
    "probe",
    "prod_run",
    "settings",
    "site_profile",
    "storage_sqlite",
    "vertical",
]

__version__ = "0.1.0"
