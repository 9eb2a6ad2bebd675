"""Email processing engines.

This package provides the core processing engines:
- Participant extraction for thread views
- Conversation threading for inbound and outbound mail
- Routing of inbound mail to endpoints
- Operator-triggered delivery retries
"""

from mailrelay.engine.participants import (
    ParseIssue,
    ParticipantExtractor,
    ParticipantResult,
    extract_participants,
    format_participant,
)
from mailrelay.engine.retry import DeliveryRetryCoordinator, RetryResult
from mailrelay.engine.router import DeliveryOutcome, EmailRouter, RoutingResult
from mailrelay.engine.threader import (
    EmailThreader,
    ThreadingResult,
    clean_message_id,
    normalize_subject,
)

__all__ = [
    # Participants
    "ParseIssue",
    "ParticipantExtractor",
    "ParticipantResult",
    "extract_participants",
    "format_participant",
    # Threading
    "EmailThreader",
    "ThreadingResult",
    "clean_message_id",
    "normalize_subject",
    # Routing
    "DeliveryOutcome",
    "EmailRouter",
    "RoutingResult",
    # Retry
    "DeliveryRetryCoordinator",
    "RetryResult",
]
