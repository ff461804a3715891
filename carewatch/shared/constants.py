from enum import Enum


class Role(str, Enum):
    PATIENT = "PATIENT"
    CAREGIVER = "CAREGIVER"
    ADMIN = "ADMIN"
    SERVICE = "SERVICE"  # cron jobs and other internal callers


WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"
