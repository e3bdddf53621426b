"""Prometheus metrics for session lifecycle, timeline caching and media."""

from prometheus_client import Counter, Gauge

# Session lifecycle
session_state = Gauge(
    "roomsync_session_state",
    "Session lifecycle state (0=needs_credentials, 1=not_started, 2=starting, 3=started)",
)

session_starts_total = Counter(
    "roomsync_session_starts_total",
    "Total session start attempts",
    ["result"],  # success, store_attach_failure, session_start_failure
)

logouts_total = Counter(
    "roomsync_logouts_total",
    "Total logouts by remote result",
    ["result"],  # success, failure, skipped
)

# Sync loop
sync_iterations_total = Counter(
    "roomsync_sync_iterations_total",
    "Total /sync long-poll iterations",
    ["result"],  # success, failure
)

# Timeline cache
timeline_events_total = Counter(
    "roomsync_timeline_events_total",
    "Timeline events delivered to the cache by outcome",
    ["outcome"],  # cached, no_room, filtered_type, duplicate, retention
)

paginations_total = Counter(
    "roomsync_paginations_total",
    "Backward pagination requests",
    ["source", "result"],  # source: server, store; result: success, failure
)

cached_rooms = Gauge(
    "roomsync_cached_rooms",
    "Number of rooms with an event cache sequence",
)

# Media
media_requests_total = Counter(
    "roomsync_media_requests_total",
    "Avatar/media resolution requests",
    ["result"],  # cache_hit, downloaded, failure, cancelled, unresolvable
)
