"""Engine-wide defaults."""

CREDIT_COST_PER_EMAIL = 1
DUE_CONTACTS_BATCH = 80
MAX_WORKFLOWS_PER_TICK = 40
ENROLL_LIMIT_PER_RUN = 400
MANUAL_ENROLL_LIMIT = 1000
INGEST_BATCH_SIZE = 40

STALE_LEASE_MINUTES = 15
WAIT_DEFAULT_MINUTES = 60
SEND_RETRY_MINUTES = 15
CONDITION_RETRY_MINUTES = 15
CREDIT_RETRY_MINUTES = 60
WEBHOOK_RETRY_MINUTES = 10
GUARD_RETRY_MINUTES = 1

WEBHOOK_DEFAULT_TIMEOUT_MS = 12000
WEBHOOK_MIN_TIMEOUT_MS = 1000
WEBHOOK_MAX_TIMEOUT_MS = 30000
WEBHOOK_MAX_BODY_CHARS = 2000

GRAPH_STEP_LIMIT = 12
LEGACY_STEP_LIMIT = 8

MAILER_NAME = "Nurture Automation Runner"
