"""
Foodhub - Prometheus counters for the notification fan-out
"""
from prometheus_client import Counter

notification_attempts_total = Counter(
    "foodhub_notification_attempts_total",
    "Notification delivery attempts by transport and outcome.",
    ["transport", "outcome"],
)

live_channel_dropped_frames_total = Counter(
    "foodhub_live_channel_dropped_frames_total",
    "Frames dropped from a full dashboard outbound queue.",
)

live_channels_terminated_total = Counter(
    "foodhub_live_channels_terminated_total",
    "Dashboard channels removed by reason.",
    ["reason"],
)
