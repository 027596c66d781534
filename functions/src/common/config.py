# FILE: functions/src/common/config.py
import os

# Runtime settings. Everything comes from the function's environment; the
# defaults match production behaviour so local runs need no extra setup.

GOOGLE_CLOUD_PROJECT = os.environ.get("GOOGLE_CLOUD_PROJECT", "")

# Max outbox records drained per scheduled processor run.
OUTBOX_BATCH_LIMIT = int(os.environ.get("OUTBOX_BATCH_LIMIT", "50"))

INVITATION_TTL_DAYS = int(os.environ.get("INVITATION_TTL_DAYS", "7"))

OUTBOX_PROCESSOR_ID_PREFIX = os.environ.get("OUTBOX_PROCESSOR_ID_PREFIX", "processor")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Largest JSON-encoded domain event payload accepted by the emitter, in bytes.
DOMAIN_EVENT_MAX_PAYLOAD_BYTES = int(os.environ.get("DOMAIN_EVENT_MAX_PAYLOAD_BYTES", "10000"))

# A `processing` outbox record whose lock is older than this is considered
# abandoned and may be claimed again.
OUTBOX_LOCK_LEASE_MINUTES = int(os.environ.get("OUTBOX_LOCK_LEASE_MINUTES", "10"))
