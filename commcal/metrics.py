"""Prometheus metrics for CommCal.

All custom metrics use the 'commcal_' prefix to avoid conflicts
with other applications in a shared observability stack.
"""

from prometheus_client import Counter, Histogram, Info

# Application info
APP_INFO = Info(
    "commcal_app",
    "CommCal application info"
)
APP_INFO.info({"version": "1.0.0", "name": "commcal"})

# Import metrics
IMPORT_DURATION_SECONDS = Histogram(
    "commcal_import_duration_seconds",
    "Duration of source imports in seconds",
    ["parser"],
    buckets=[0.5, 1, 5, 10, 30, 60, 120],
)

IMPORTS_TOTAL = Counter(
    "commcal_imports_total",
    "Total number of imports by outcome",
    ["status"],  # completed, or the failure code (unreachable, no_parser, ...)
)

IMPORT_EVENTS_TOTAL = Counter(
    "commcal_import_events_total",
    "Imported event records by reconciliation status",
    ["status"],  # created, reused, skipped_old, failed
)

# Venue metrics
VENUE_MATCH_TOTAL = Counter(
    "commcal_venue_matches_total",
    "Venue match outcomes by type",
    ["match_type"],  # exact, machine_tag, new
)

# Data quality
PARSER_ERRORS_TOTAL = Counter(
    "commcal_parser_errors_total",
    "Parser failures during dispatch",
    ["parser", "error_type"],
)
