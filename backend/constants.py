"""Centralized constants for Cosmos DB containers and engine settings."""
from typing import Dict
import os

from dotenv import load_dotenv

load_dotenv()

# ===== Integrity Settings =====

# Client request ids must fall inside this length bound
REQUEST_ID_MIN_LENGTH = int(os.getenv("REQUEST_ID_MIN_LENGTH", "8"))
REQUEST_ID_MAX_LENGTH = int(os.getenv("REQUEST_ID_MAX_LENGTH", "128"))

# Attempt nonces are url-safe tokens; 16 random bytes -> 22 characters
NONCE_BYTES = int(os.getenv("NONCE_BYTES", "16"))
NONCE_PATTERN = r"^[A-Za-z0-9_-]{16,128}$"

# ===== Rate Limiting Settings =====
# Fixed request budget per rolling window, per actor

SUBMIT_RATE_LIMIT_MAX = int(os.getenv("SUBMIT_RATE_LIMIT_MAX", "10"))
SUBMIT_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("SUBMIT_RATE_LIMIT_WINDOW_SECONDS", "60"))
PROCTOR_RATE_LIMIT_MAX = int(os.getenv("PROCTOR_RATE_LIMIT_MAX", "120"))
PROCTOR_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("PROCTOR_RATE_LIMIT_WINDOW_SECONDS", "60"))

# ===== Submission Settings =====

# SUBMIT_GRACE_PERIOD_SECONDS: accept submits shortly after the exam end to absorb network delay
SUBMIT_GRACE_PERIOD_SECONDS = int(os.getenv("SUBMIT_GRACE_PERIOD_SECONDS", "60"))

# AUTO_ENQUEUE_ON_SUBMIT: schedule automatic grading of open-ended answers right after submit
AUTO_ENQUEUE_ON_SUBMIT = os.getenv("AUTO_ENQUEUE_ON_SUBMIT", "true").lower() == "true"

# Bounded re-read/re-decide loop for ETag conflicts on contended documents
WRITE_CONFLICT_RETRIES = int(os.getenv("WRITE_CONFLICT_RETRIES", "5"))

# ===== Scoring Settings =====

# Scores are stored with this many decimal places
SCORE_PRECISION = 2

# ===== Grading Queue Settings =====

GRADING_QUEUE_NAME = os.getenv("GRADING_QUEUE_NAME", "ai-grading")
AWS_REGION = os.getenv("AWS_REGION", "eu-west-1")
QUEUE_WAIT_TIME_SECONDS = int(os.getenv("QUEUE_WAIT_TIME_SECONDS", "20"))
# SQS accepts at most 10 entries per SendMessageBatch call
QUEUE_BATCH_SIZE = 10

# ===== External Scorer Settings =====

AZURE_OPENAI_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT", "")
AZURE_OPENAI_API_KEY = os.getenv("AZURE_OPENAI_API_KEY", "")
AZURE_OPENAI_API_VERSION = os.getenv("AZURE_OPENAI_API_VERSION", "2024-08-01-preview")
AZURE_OPENAI_DEPLOYMENT = (
    os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME")
    or os.getenv("AZURE_OPENAI_DEPLOYMENT")
    or ""
)
LLM_HTTP_TIMEOUT = float(os.getenv("LLM_HTTP_TIMEOUT", "30.0"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "2"))

# ===== Proctoring Settings =====

FOCUS_WINDOW_SECONDS = int(os.getenv("FOCUS_WINDOW_SECONDS", "30"))
SUSPICIOUS_RATIO = 0.6
HIGHLY_SUSPICIOUS_RATIO = 0.8

# ===== Identity Settings =====

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# ===== Container Definitions =====

# Container definitions with intended partition key fields (logical keys, not paths)
COLLECTIONS: Dict[str, Dict[str, str]] = {
    "EXAMS": {"name": "exams", "pk_field": "id"},
    # Attempt, answers, grades and idempotency records share one partition per attempt
    "ATTEMPTS": {"name": "attempts", "pk_field": "attempt_id"},
    "PROCTOR_EVENTS": {"name": "proctor_events", "pk_field": "attempt_id"},
}

# Convenience single-source names
CONTAINER = {k: v["name"] for k, v in COLLECTIONS.items()}

# Document discriminators inside the attempts container
DOC_ATTEMPT = "attempt"
DOC_ANSWER = "answer"
DOC_GRADE = "grade"
DOC_IDEMPOTENCY = "idempotency"
