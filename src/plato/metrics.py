from prometheus_client import Counter

invitation_outcomes_total = Counter(
    "plato_invitation_outcomes_total",
    "Invitation acceptance runs by terminal state",
    ["state"]
)

invitation_backend_failures_total = Counter(
    "plato_invitation_backend_failures_total",
    "Failed calls to the Plato backend during invitation acceptance",
    ["operation", "reason"]
)

pending_invitations_purged_total = Counter(
    "plato_pending_invitations_purged_total",
    "Pending invitation records discarded on read",
    ["reason"]
)
